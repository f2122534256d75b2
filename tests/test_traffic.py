"""Tests for the accounting tick."""
import pytest
from sqlalchemy.exc import OperationalError

from xui_sync.models import ClientTrafficDelta, Traffic
from xui_sync.util import DAY_MS

from factories import (
    assert_ledger_consistent,
    ledger_rows,
    make_inbound,
    set_row,
    stored_clients,
    stored_record,
    vless_client,
)

NOW = 1_700_000_000_000


async def add(service, engine, port=443, **client_fields):
    inbound = make_inbound(port, clients=[vless_client(f"user-{port}@example.com", **client_fields)])
    added = (await service.add_inbound(inbound)).value
    engine.calls.clear()
    return added


class TestAccounting:
    """Inbound and client deltas."""

    @pytest.mark.asyncio
    async def test_inbound_deltas_by_tag(self, service, traffic, engine, db):
        added = await add(service, engine)
        report = await traffic.add_traffic([
            Traffic(tag="inbound-443", up=10, down=20),
            Traffic(tag="inbound-443", up=1, down=2),
            Traffic(tag="direct", up=500, down=500, isInbound=False),
            Traffic(tag="inbound-9999", up=5, down=5),
        ], [], now=NOW)

        record = await stored_record(db, added.id)
        assert (record.up, record.down) == (11, 22)
        assert report.inbound_traffics == 2

    @pytest.mark.asyncio
    async def test_client_deltas_and_online(self, service, traffic, engine, db, presence):
        await add(service, engine, 443)
        await add(service, engine, 444)

        report = await traffic.add_traffic([], [
            ClientTrafficDelta(email="user-443@example.com", up=100, down=200),
            ClientTrafficDelta(email="user-444@example.com", up=0, down=0),
            ClientTrafficDelta(email="ghost@example.com", up=7, down=7),
        ], now=NOW)

        rows = await ledger_rows(db)
        assert (rows["user-443@example.com"].up, rows["user-443@example.com"].down) == (100, 200)
        assert (rows["user-444@example.com"].up, rows["user-444@example.com"].down) == (0, 0)
        assert "ghost@example.com" not in rows
        assert report.online == ["user-443@example.com"]
        assert presence.get_online_clients() == ["user-443@example.com"]

        await traffic.add_traffic([], [], now=NOW)
        assert presence.get_online_clients() == []

    @pytest.mark.asyncio
    async def test_pending_expiry_starts_on_first_traffic(self, service, traffic, engine, db):
        added = await add(service, engine, expiryTime=-3 * DAY_MS)

        await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com")], now=NOW)
        assert (await ledger_rows(db))["user-443@example.com"].expiry_time == -3 * DAY_MS

        report = await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", up=1)], now=NOW)
        assert report.activated == 1
        assert (await ledger_rows(db))["user-443@example.com"].expiry_time == NOW + 3 * DAY_MS
        assert (await stored_clients(db, added.id))[0].expiry_time == NOW + 3 * DAY_MS

        await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", up=1)], now=NOW + 1)
        assert (await ledger_rows(db))["user-443@example.com"].expiry_time == NOW + 3 * DAY_MS
        await assert_ledger_consistent(db)


class TestRenewal:
    """Auto-renew of clients with a reset period."""

    @pytest.mark.asyncio
    async def test_renews_disabled_client(self, service, traffic, engine, db):
        added = await add(service, engine, reset=30, expiryTime=NOW - 5 * DAY_MS)
        await set_row(db, "user-443@example.com", up=10, down=20, enable=False)

        report = await traffic.add_traffic([], [], now=NOW)

        row = (await ledger_rows(db))["user-443@example.com"]
        assert row.expiry_time > NOW
        assert row.expiry_time == NOW + 25 * DAY_MS
        assert (row.up, row.down, row.enable) == (0, 0, True)
        assert engine.calls == [("add_user", "inbound-443", "user-443@example.com")]
        assert report.renewed.count == 1
        assert not report.needs_restart
        assert (await stored_clients(db, added.id))[0].expiry_time == row.expiry_time

    @pytest.mark.asyncio
    async def test_skips_several_periods(self, service, traffic, engine, db):
        await add(service, engine, reset=1, expiryTime=NOW - 3 * DAY_MS)
        await traffic.add_traffic([], [], now=NOW)
        row = (await ledger_rows(db))["user-443@example.com"]
        assert row.expiry_time == NOW + DAY_MS
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_expiry_exactly_now_is_renewed(self, service, traffic, engine, db):
        await add(service, engine, reset=7, expiryTime=NOW)
        await traffic.add_traffic([], [], now=NOW)
        row = (await ledger_rows(db))["user-443@example.com"]
        assert row.expiry_time == NOW + 7 * DAY_MS
        assert row.enable

    @pytest.mark.asyncio
    async def test_failed_add_user_drifts(self, service, traffic, engine, db):
        await add(service, engine, reset=30, expiryTime=NOW - DAY_MS)
        await set_row(db, "user-443@example.com", enable=False)
        engine.failing.add("add_user")

        report = await traffic.add_traffic([], [], now=NOW)
        assert report.renewed.needs_restart
        assert report.needs_restart


class TestInvalidation:
    """Quota and expiry enforcement."""

    @pytest.mark.asyncio
    async def test_quota_disables_client(self, service, traffic, engine, db):
        await add(service, engine, totalGB=1000)
        await set_row(db, "user-443@example.com", up=600, down=300)

        report = await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", down=200)], now=NOW)

        assert not (await ledger_rows(db))["user-443@example.com"].enable
        assert engine.calls == [("remove_user", "inbound-443", "user-443@example.com")]
        assert report.disabled_clients.count == 1

        await traffic.add_traffic([], [], now=NOW)
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_expiry_disables_client(self, service, traffic, engine, db):
        await add(service, engine, expiryTime=NOW - 1)
        report = await traffic.add_traffic([], [], now=NOW)
        assert not (await ledger_rows(db))["user-443@example.com"].enable
        assert report.disabled_clients.count == 1

    @pytest.mark.asyncio
    async def test_unlimited_client_stays(self, service, traffic, engine, db):
        await add(service, engine)
        await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", up=10 ** 12)], now=NOW)
        assert (await ledger_rows(db))["user-443@example.com"].enable
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_failed_remove_user_drifts(self, service, traffic, engine, db):
        await add(service, engine, totalGB=10)
        engine.failing.add("remove_user")
        report = await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", up=10)], now=NOW)
        assert report.disabled_clients.needs_restart
        assert report.needs_restart

    @pytest.mark.asyncio
    async def test_already_removed_user_is_not_drift(self, service, traffic, engine, db):
        await add(service, engine, totalGB=10)
        engine.unknown_users.add("user-443@example.com")
        report = await traffic.add_traffic([], [ClientTrafficDelta(email="user-443@example.com", up=10)], now=NOW)
        assert not report.needs_restart

    @pytest.mark.asyncio
    async def test_quota_disables_inbound(self, service, traffic, engine, db):
        added = (await service.add_inbound(make_inbound(443, total=1000))).value
        engine.calls.clear()

        report = await traffic.add_traffic([Traffic(tag="inbound-443", up=400, down=600)], [], now=NOW)

        assert (await stored_record(db, added.id)).enable is False
        assert engine.calls == [("remove_inbound", "inbound-443")]
        assert report.disabled_inbounds.count == 1

    @pytest.mark.asyncio
    async def test_expired_inbound(self, service, traffic, engine, db):
        added = (await service.add_inbound(make_inbound(443, expiryTime=NOW - 1))).value
        engine.calls.clear()
        await traffic.add_traffic([], [], now=NOW)
        assert (await stored_record(db, added.id)).enable is False


class TestAtomicity:
    """A failing step rolls the whole tick back."""

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back(self, service, traffic, engine, db, presence, monkeypatch):
        await add(service, engine)
        presence.set_online_clients(["before@example.com"])

        async def broken(*args, **kwargs):
            raise OperationalError("UPDATE client_traffics", {}, Exception("disk I/O error"))

        monkeypatch.setattr(traffic, "_auto_renew_clients", broken)
        with pytest.raises(OperationalError):
            await traffic.add_traffic([Traffic(tag="inbound-443", up=5)],
                                      [ClientTrafficDelta(email="user-443@example.com", up=5)], now=NOW)

        assert (await ledger_rows(db))["user-443@example.com"].up == 0
        assert presence.get_online_clients() == ["before@example.com"]
        assert engine.calls == []
