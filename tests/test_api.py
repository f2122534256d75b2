"""Tests for the HTTP engine channel and the live-sync adapter."""
import json

import httpx
import pytest

from xui_sync.api import HttpEngineAPI
from xui_sync.errors import EngineError
from xui_sync.live import LiveBatch, LiveSync


def envelope(success=True, msg="", obj=None):
    return {"success": success, "msg": msg, "obj": obj}


def make_api(handler, base_path=""):
    return HttpEngineAPI("127.0.0.1", 62789, base_path, transport=httpx.MockTransport(handler))


class TestHttpEngineAPI:
    """Test suite for HttpEngineAPI."""

    @pytest.mark.asyncio
    async def test_add_user_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json=envelope())

        async with make_api(handler, "engine") as api:
            await api.add_user("vless", "inbound-443", {"email": "a@x", "id": "uuid"})

        assert seen == [("/engine/user/add", {
            "protocol": "vless", "tag": "inbound-443", "user": {"email": "a@x", "id": "uuid"},
        })]

    @pytest.mark.asyncio
    async def test_failed_envelope_raises_with_message(self):
        def handler(request):
            return httpx.Response(200, json=envelope(False, "User a@x not found."))

        async with make_api(handler) as api:
            with pytest.raises(EngineError, match="User a@x not found."):
                await api.remove_user("inbound-443", "a@x")

    @pytest.mark.asyncio
    async def test_bad_status_raises(self):
        async with make_api(lambda request: httpx.Response(502)) as api:
            with pytest.raises(EngineError):
                await api.remove_inbound("inbound-443")

    @pytest.mark.asyncio
    async def test_not_an_envelope_raises(self):
        async with make_api(lambda request: httpx.Response(200, json=[1, 2])) as api:
            with pytest.raises(EngineError):
                await api.add_inbound({"tag": "inbound-443"})

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_api(handler) as api:
            with pytest.raises(EngineError):
                await api.remove_inbound("inbound-443")

    @pytest.mark.asyncio
    async def test_requires_connect(self):
        api = make_api(lambda request: httpx.Response(200, json=envelope()))
        with pytest.raises(EngineError):
            await api.remove_inbound("inbound-443")

    @pytest.mark.asyncio
    async def test_query_traffic(self):
        def handler(request):
            assert json.loads(request.content) == {"reset": True}
            return httpx.Response(200, json=envelope(obj={
                "inbounds": [{"tag": "inbound-443", "up": 1, "down": 2, "isInbound": True}],
                "clients": [{"email": "a@x", "up": 3, "down": 4}],
            }))

        async with make_api(handler) as api:
            inbounds, clients = await api.query_traffic()

        assert (inbounds[0].tag, inbounds[0].up, inbounds[0].down) == ("inbound-443", 1, 2)
        assert (clients[0].email, clients[0].down) == ("a@x", 4)

    @pytest.mark.asyncio
    async def test_malformed_traffic(self):
        def handler(request):
            return httpx.Response(200, json=envelope(obj={"clients": [{"up": 1}]}))

        async with make_api(handler) as api:
            with pytest.raises(EngineError):
                await api.query_traffic()


class TestLiveSync:
    """Test suite for LiveSync."""

    @pytest.mark.asyncio
    async def test_apply_runs_calls_in_one_acquisition(self, engine):
        batch = LiveBatch()
        batch.remove_inbound("inbound-443")
        batch.add_inbound({"tag": "inbound-8443"})
        batch.add_user("vless", "inbound-8443", {"email": "a@x"})

        assert await LiveSync(engine).apply(batch) is False
        assert engine.names() == ["remove_inbound", "add_inbound", "add_user"]
        assert (engine.connects, engine.disconnects) == (1, 1)

    @pytest.mark.asyncio
    async def test_empty_batch_does_not_connect(self, engine):
        batch = LiveBatch()
        batch.mark_drift("client without email")
        assert await LiveSync(engine).apply(batch) is True
        assert engine.connects == 0

    @pytest.mark.asyncio
    async def test_failure_continues_with_remaining_calls(self, engine):
        engine.failing.add("add_inbound")
        batch = LiveBatch()
        batch.add_inbound({"tag": "inbound-443"})
        batch.add_user("vless", "inbound-443", {"email": "a@x"})

        assert await LiveSync(engine).apply(batch) is True
        assert engine.names() == ["add_inbound", "add_user"]

    @pytest.mark.asyncio
    async def test_optional_call_failure_is_not_drift(self, engine):
        engine.failing.add("remove_inbound")
        batch = LiveBatch()
        batch.remove_inbound("inbound-443", required=False)
        assert await LiveSync(engine).apply(batch) is False

    @pytest.mark.asyncio
    async def test_user_not_found_counts_as_removed(self, engine):
        engine.unknown_users.add("a@x")
        async with LiveSync(engine).channel() as channel:
            assert await channel.remove_user("inbound-443", "a@x") is True

    @pytest.mark.asyncio
    async def test_refused_connect_fails_every_call(self, engine):
        engine.refuse_connect = True
        async with LiveSync(engine).channel() as channel:
            assert channel.connected is False
            assert await channel.add_inbound({"tag": "inbound-443"}) is False
            assert await channel.remove_user("inbound-443", "a@x") is False
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_channel_released_on_error(self, engine):
        with pytest.raises(RuntimeError):
            async with LiveSync(engine).channel():
                raise RuntimeError("boom")
        assert engine.disconnects == 1
        assert engine.connected is False
