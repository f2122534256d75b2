import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from xui_sync.errors import EngineError
from xui_sync.live import LiveSync
from xui_sync.traffic import TickReport, TrafficService

logger = logging.getLogger(__name__)


class TrafficJob:
    """Periodically pulls engine counters and runs the accounting tick.

    ``restart_pending`` latches once a tick reports drift and stays set
    until the owner restarts the engine and calls ``clear_restart``.
    """

    def __init__(self, live: LiveSync, traffic: TrafficService, interval: float = 10.0) -> None:
        self.live = live
        self.traffic = traffic
        self.interval = interval
        self.restart_pending = False
        self._stopped = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def run_once(self) -> TickReport | None:
        """Run a single tick.

        Returns:
            The tick report, or None when the counters could not be fetched
            or stored.
        """
        async with self.live.channel() as channel:
            if not channel.connected:
                logger.warning("Engine api is unreachable, skipping traffic tick")
                return None
            try:
                inbound_traffics, client_traffics = await channel.api.query_traffic(reset=True)
            except EngineError as exc:
                logger.warning("Get traffic from engine failed: %s", exc)
                return None

        try:
            report = await self.traffic.add_traffic(inbound_traffics, client_traffics)
        except SQLAlchemyError as exc:
            logger.warning("Add traffic failed: %s", exc)
            return None

        if report.needs_restart and not self.restart_pending:
            logger.info("Engine restart required to converge")
            self.restart_pending = True
        logger.debug("Traffic tick done: %s", report)
        return report

    def clear_restart(self) -> None:
        self.restart_pending = False

    async def run_forever(self) -> None:
        logger.info("Traffic job started, interval %ss", self.interval)
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Traffic tick failed")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Traffic job stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped.clear()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
