"""Propagation of configuration changes to the running engine.

The stored configuration is the source of truth. Live calls are best
effort: a failure is logged at debug level and reported as drift, which
is resolved by restarting the engine, never by retrying the call.
"""

import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, TypeVar

from xui_sync.api import EngineAPI
from xui_sync.errors import EngineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_user_not_found(error: Exception, email: str) -> bool:
    return f"User {email} not found." in str(error)


class Outcome(enum.Enum):
    APPLIED = "applied"
    APPLIED_WITH_DRIFT = "applied_with_drift"


@dataclass
class SyncResult(Generic[T]):
    """Result of a committed mutation.

    A rejected mutation raises instead of returning. ``APPLIED_WITH_DRIFT``
    means the store is updated but the engine could not follow; it has to
    be restarted to converge.
    """
    outcome: Outcome
    value: T | None = None

    @classmethod
    def of(cls, value: T | None, needs_restart: bool) -> "SyncResult[T]":
        outcome = Outcome.APPLIED_WITH_DRIFT if needs_restart else Outcome.APPLIED
        return cls(outcome=outcome, value=value)

    @property
    def needs_restart(self) -> bool:
        return self.outcome is Outcome.APPLIED_WITH_DRIFT


class LiveChannel:
    """An acquired engine channel; every call reports success as a bool."""

    def __init__(self, api: EngineAPI, connected: bool) -> None:
        self.api = api
        self.connected = connected

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any) -> bool:
        if not self.connected:
            return False
        try:
            await fn(*args)
        except EngineError as exc:
            logger.debug("Unable to %s by api: %s", what, exc)
            return False
        logger.debug("%s by api: %s", what.capitalize(), args[-1] if args else "")
        return True

    async def add_inbound(self, config: Dict[str, Any]) -> bool:
        return await self._call("add inbound", self.api.add_inbound, config)

    async def remove_inbound(self, tag: str) -> bool:
        return await self._call("remove inbound", self.api.remove_inbound, tag)

    async def add_user(self, protocol: str, tag: str, user: Dict[str, Any]) -> bool:
        return await self._call("add user", self.api.add_user, protocol, tag, user)

    async def remove_user(self, tag: str, email: str) -> bool:
        """Remove a user; a user the engine no longer knows counts as removed."""
        if not self.connected:
            return False
        try:
            await self.api.remove_user(tag, email)
        except EngineError as exc:
            if is_user_not_found(exc, email):
                logger.debug("User %s is already removed. Nothing to do more...", email)
                return True
            logger.debug("Unable to remove user by api: %s", exc)
            return False
        logger.debug("Remove user by api: %s", email)
        return True


@dataclass
class _Op:
    method: str
    args: tuple
    required: bool = True


@dataclass
class LiveBatch:
    """Live calls queued while a transaction is open, applied after commit.

    ``drift`` is set when a change cannot be expressed as live calls at all
    (for example a client without email), so only a restart converges.
    """
    ops: List[_Op] = field(default_factory=list)
    drift: bool = False

    def add_inbound(self, config: Dict[str, Any]) -> None:
        self.ops.append(_Op("add_inbound", (config,)))

    def remove_inbound(self, tag: str, *, required: bool = True) -> None:
        self.ops.append(_Op("remove_inbound", (tag,), required))

    def add_user(self, protocol: str, tag: str, user: Dict[str, Any]) -> None:
        self.ops.append(_Op("add_user", (protocol, tag, user)))

    def remove_user(self, tag: str, email: str) -> None:
        self.ops.append(_Op("remove_user", (tag, email)))

    def mark_drift(self, reason: str) -> None:
        logger.debug("Engine drift: %s", reason)
        self.drift = True

    def __len__(self) -> int:
        return len(self.ops)


class LiveSync:
    """Live-sync adapter around an ``EngineAPI``."""

    def __init__(self, api: EngineAPI) -> None:
        self.api = api

    @asynccontextmanager
    async def channel(self) -> AsyncIterator[LiveChannel]:
        """Acquire the engine channel for one call sequence.

        The channel is released on every exit path. If connecting fails the
        yielded channel reports every call as failed.
        """
        connected = True
        try:
            await self.api.connect()
        except EngineError as exc:
            logger.debug("Unable to connect to engine api: %s", exc)
            connected = False
        try:
            yield LiveChannel(self.api, connected)
        finally:
            try:
                await self.api.disconnect()
            except EngineError as exc:
                logger.debug("Unable to close engine api: %s", exc)

    async def apply(self, batch: LiveBatch) -> bool:
        """Run the queued calls in order within one acquisition.

        Returns:
            True if the engine needs a restart to converge.
        """
        needs_restart = batch.drift
        if not batch.ops:
            return needs_restart
        async with self.channel() as live:
            for op in batch.ops:
                ok = await getattr(live, op.method)(*op.args)
                if not ok and op.required:
                    needs_restart = True
        return needs_restart
