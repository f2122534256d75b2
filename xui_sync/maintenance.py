"""Drift repair and normalization of legacy stored data.

Both sweeps are idempotent: running them again on their own output
changes nothing.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Set

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from xui_sync import codec, ledger
from xui_sync.db import ClientTraffic, Database, InboundRecord
from xui_sync.errors import DecodeError
from xui_sync.inbounds import decode_record

logger = logging.getLogger(__name__)

LEGACY_PROTOCOLS = ("vmess", "vless", "trojan")
DEPRECATED_FLOW = "xtls-rprx-direct"


@dataclass
class MigrationReport:
    normalized_inbounds: int = 0
    created_stats: int = 0
    removed_unbound_stats: int = 0
    migrated_external_proxies: int = 0
    removed_orphans: int = 0


def migrate_external_proxy(stream: Dict[str, Any], port: int) -> bool:
    """Move legacy ``tlsSettings.settings.domains`` to ``externalProxy``.

    Returns:
        True if ``stream`` was modified in place.
    """
    if stream.get("security") != "tls":
        return False
    tls_settings = stream.get("tlsSettings")
    if not isinstance(tls_settings, dict):
        return False
    settings = tls_settings.get("settings")
    if not isinstance(settings, dict) or settings.get("domains") is None:
        return False

    domains = settings.pop("domains")
    if isinstance(domains, list):
        for domain in domains:
            if isinstance(domain, dict):
                domain["forceTls"] = "same"
                domain["port"] = port
                domain["dest"] = domain.pop("domain", "")
    stream["externalProxy"] = domains
    return True


class MaintenanceService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def remove_orphaned_traffics(self) -> int:
        """Delete ledger rows whose email belongs to no client of any inbound.

        Nothing is deleted when an inbound's settings cannot be decoded,
        since its clients are unknown.

        Returns:
            The number of deleted rows.
        """
        async with self.db.transaction() as session:
            emails: Set[str] = set()
            for record in (await session.execute(select(InboundRecord))).scalars():
                try:
                    clients = decode_record(record).clients
                except DecodeError as exc:
                    logger.warning("Orphan sweep skipped, inbound %s is undecodable: %s", record.id, exc)
                    return 0
                emails.update(client.email for client in clients if client.email)

            result = await session.execute(
                delete(ClientTraffic)
                .where(ClientTraffic.email.not_in(emails))
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount

        if removed:
            logger.info("Removed %d orphaned client traffics", removed)
        return removed

    async def _normalize_clients(self, session: AsyncSession, report: MigrationReport) -> None:
        records = await session.execute(
            select(InboundRecord).where(InboundRecord.protocol.in_(LEGACY_PROTOCOLS))
        )
        for record in records.scalars():
            try:
                settings = decode_record(record)
            except DecodeError as exc:
                logger.warning("Cannot normalize inbound %s: %s", record.id, exc)
                continue

            changed = False
            for client in settings.clients:
                if "email" not in client.model_fields_set:
                    client.email = ""
                    changed = True
                if getattr(client, "flow", "") == DEPRECATED_FLOW:
                    client.flow = ""
                    changed = True
            if changed:
                record.settings = codec.encode_settings(settings)
                report.normalized_inbounds += 1

            for client in settings.clients:
                if not client.email:
                    continue
                count = await session.scalar(
                    select(func.count()).select_from(ClientTraffic).where(ClientTraffic.email == client.email)
                )
                if not count:
                    await ledger.add_client_stat(session, record.id, client)
                    report.created_stats += 1

    async def _migrate_external_proxies(self, session: AsyncSession, report: MigrationReport) -> None:
        records = await session.execute(
            select(InboundRecord).where(InboundRecord.protocol.in_(LEGACY_PROTOCOLS))
        )
        for record in records.scalars():
            if not record.stream_settings:
                continue
            try:
                stream = json.loads(record.stream_settings)
            except ValueError:
                logger.warning("Inbound %s has invalid stream settings", record.id)
                continue
            if isinstance(stream, dict) and migrate_external_proxy(stream, record.port):
                record.stream_settings = json.dumps(stream, ensure_ascii=False, indent=2)
                report.migrated_external_proxies += 1

    async def migration_requirements(self) -> MigrationReport:
        """Bring stored data written by older releases to the current shape.

        Back-fills missing client emails, clears the deprecated
        ``xtls-rprx-direct`` flow, creates the missing ledger row of every
        emailed client, drops rows bound to no inbound and moves legacy TLS
        domains to ``externalProxy``.
        """
        report = MigrationReport()
        async with self.db.transaction() as session:
            await self._normalize_clients(session, report)
            result = await session.execute(
                delete(ClientTraffic)
                .where(ClientTraffic.inbound_id == 0)
                .execution_options(synchronize_session=False)
            )
            report.removed_unbound_stats = result.rowcount
            await self._migrate_external_proxies(session, report)
        return report

    async def migrate_db(self) -> MigrationReport:
        report = await self.migration_requirements()
        report.removed_orphans = await self.remove_orphaned_traffics()
        logger.info("Database migration done: %s", report)
        return report
