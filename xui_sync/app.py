import asyncio
import logging
from dataclasses import dataclass

from xui_sync import config
from xui_sync.api import EngineAPI, HttpEngineAPI
from xui_sync.db import Database
from xui_sync.inbounds import InboundService
from xui_sync.job import TrafficJob
from xui_sync.live import LiveSync
from xui_sync.maintenance import MaintenanceService
from xui_sync.presence import OnlineClients
from xui_sync.traffic import TrafficService

logger = logging.getLogger(__name__)


@dataclass
class App:
    """Every collaborator of the service, wired together."""
    db: Database
    live: LiveSync
    presence: OnlineClients
    inbounds: InboundService
    traffic: TrafficService
    maintenance: MaintenanceService
    job: TrafficJob

    async def start(self) -> None:
        await self.db.init()
        await self.maintenance.migrate_db()
        self.job.start()

    async def close(self) -> None:
        await self.job.stop()
        await self.db.close()


def build_app(database_url: str = config.DATABASE_URL, api: EngineAPI | None = None,
              interval: float = config.TRAFFIC_INTERVAL) -> App:
    if api is None:
        api = HttpEngineAPI(config.ENGINE_API_HOST, config.ENGINE_API_PORT, config.ENGINE_API_PATH,
                            timeout=config.ENGINE_API_TIMEOUT)
    db = Database(database_url)
    live = LiveSync(api)
    presence = OnlineClients()
    traffic = TrafficService(db, live, presence)
    return App(
        db=db,
        live=live,
        presence=presence,
        inbounds=InboundService(db, live, presence),
        traffic=traffic,
        maintenance=MaintenanceService(db),
        job=TrafficJob(live, traffic, interval),
    )


async def serve(app: App) -> None:
    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.close()


def run() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = build_app()
    try:
        asyncio.run(serve(app))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
