import logging
from typing import Any, Dict, List, Protocol, Self, Tuple

import httpx
import pydantic
from httpx import AsyncClient, Response

from xui_sync import util
from xui_sync.errors import EngineError
from xui_sync.models import ClientTrafficDelta, Traffic
from xui_sync.util import JsonType

logger = logging.getLogger(__name__)


class EngineAPI(Protocol):
    """Control channel of the running proxy engine.

    Every method raises ``EngineError`` when the engine refuses or cannot
    be reached.
    """

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def add_inbound(self, config: Dict[str, Any]) -> None: ...

    async def remove_inbound(self, tag: str) -> None: ...

    async def add_user(self, protocol: str, tag: str, user: Dict[str, Any]) -> None: ...

    async def remove_user(self, tag: str, email: str) -> None: ...

    async def query_traffic(self, reset: bool = True) -> Tuple[List[Traffic], List[ClientTrafficDelta]]: ...


class HttpEngineAPI:
    """Engine control channel spoken as JSON over HTTP.

    Every endpoint answers with a ``{"success", "msg", "obj"}`` envelope.
    The client does not retry: a failed call is reported to the caller,
    which decides whether the engine needs a restart.
    """

    def __init__(self, host: str, port: int, base_path: str = "",
                 *, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.session: AsyncClient | None = None
        self.host: str = host
        self.port: int = port
        self.base_path: str = base_path.strip("/")
        self.base_url: str = f"http://{self.host}:{self.port}/{self.base_path}".rstrip("/")
        self.timeout: float = timeout
        self.transport = transport

    async def connect(self) -> None:
        if self.session is not None:
            return
        self.session = AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def disconnect(self) -> None:
        if self.session is None:
            return
        session, self.session = self.session, None
        await session.aclose()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def safe_post(self, url: str, *, json: Any | None = None) -> JsonType | None:
        """POST to the engine and unwrap the response envelope.

        Args:
            url: Endpoint path relative to the base URL.
            json: Request body.

        Returns:
            The ``obj`` field of the envelope.

        Raises:
            EngineError: If the channel is closed, the request fails, the
                status is not 200 or the envelope reports failure.
        """
        if self.session is None:
            raise EngineError("Engine API session is not connected")

        try:
            resp: Response = await self.session.post(url, json=json)
        except httpx.HTTPError as exc:
            raise EngineError(f"Engine API request to {url} failed: {exc}") from exc
        if resp.status_code != 200:
            raise EngineError(f"Engine API returned status code {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise EngineError(f"Engine API returned invalid JSON: {exc}") from exc
        if util.check_response_validity(body) != "OK":
            raise EngineError(str(body.get("msg") or "engine call failed"))
        return body.get("obj")

    async def add_inbound(self, config: Dict[str, Any]) -> None:
        await self.safe_post("/inbound/add", json={"inbound": config})

    async def remove_inbound(self, tag: str) -> None:
        await self.safe_post("/inbound/del", json={"tag": tag})

    async def add_user(self, protocol: str, tag: str, user: Dict[str, Any]) -> None:
        await self.safe_post("/user/add", json={"protocol": protocol, "tag": tag, "user": user})

    async def remove_user(self, tag: str, email: str) -> None:
        await self.safe_post("/user/del", json={"tag": tag, "email": email})

    async def query_traffic(self, reset: bool = True) -> Tuple[List[Traffic], List[ClientTrafficDelta]]:
        """Read the traffic counters accumulated since the last reset.

        Returns:
            Inbound level and client level deltas.
        """
        obj = await self.safe_post("/stats/query", json={"reset": reset}) or {}
        if not isinstance(obj, dict):
            raise EngineError(f"Unexpected traffic payload: {obj!r}")
        try:
            traffics = Traffic.from_list(obj.get("inbounds") or [])
            client_traffics = ClientTrafficDelta.from_list(obj.get("clients") or [])
        except pydantic.ValidationError as exc:
            raise EngineError(f"Malformed traffic payload: {exc}") from exc
        logger.debug("Engine reported %d inbound and %d client deltas", len(traffics), len(client_traffics))
        return traffics, client_traffics
