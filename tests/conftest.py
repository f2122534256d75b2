"""
Shared pytest fixtures: an in-memory store and a recording engine channel.
"""
from typing import Any, Dict, List, Set, Tuple

import pytest

from xui_sync.db import Database
from xui_sync.errors import EngineError
from xui_sync.inbounds import InboundService
from xui_sync.live import LiveSync
from xui_sync.maintenance import MaintenanceService
from xui_sync.models import ClientTrafficDelta, Traffic
from xui_sync.presence import OnlineClients
from xui_sync.traffic import TrafficService


class FakeEngineAPI:
    """Engine channel double that records every call.

    Methods listed in ``failing`` raise ``EngineError``; emails in
    ``unknown_users`` make ``remove_user`` answer "User <email> not found.".
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.failing: Set[str] = set()
        self.unknown_users: Set[str] = set()
        self.refuse_connect = False
        self.connected = False
        self.connects = 0
        self.disconnects = 0
        self.inbound_traffics: List[Traffic] = []
        self.client_traffics: List[ClientTrafficDelta] = []

    async def connect(self) -> None:
        if self.refuse_connect:
            raise EngineError("connection refused")
        self.connects += 1
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def _record(self, *call: Any) -> None:
        assert self.connected, f"{call[0]} called on a released channel"
        self.calls.append(call)
        if call[0] in self.failing:
            raise EngineError(f"{call[0]} failed")

    async def add_inbound(self, config: Dict[str, Any]) -> None:
        self._record("add_inbound", config["tag"])

    async def remove_inbound(self, tag: str) -> None:
        self._record("remove_inbound", tag)

    async def add_user(self, protocol: str, tag: str, user: Dict[str, Any]) -> None:
        self._record("add_user", tag, user["email"])

    async def remove_user(self, tag: str, email: str) -> None:
        if email in self.unknown_users:
            self.calls.append(("remove_user", tag, email))
            raise EngineError(f"rpc error: code = Unknown desc = User {email} not found.")
        self._record("remove_user", tag, email)

    async def query_traffic(self, reset: bool = True):
        self._record("query_traffic", reset)
        return self.inbound_traffics, self.client_traffics

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
async def db():
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def engine() -> FakeEngineAPI:
    return FakeEngineAPI()


@pytest.fixture
def live(engine) -> LiveSync:
    return LiveSync(engine)


@pytest.fixture
def presence() -> OnlineClients:
    return OnlineClients()


@pytest.fixture
def service(db, live, presence) -> InboundService:
    return InboundService(db, live, presence)


@pytest.fixture
def traffic(db, live, presence) -> TrafficService:
    return TrafficService(db, live, presence)


@pytest.fixture
def maintenance(db) -> MaintenanceService:
    return MaintenanceService(db)
