"""Inbound and client mutations, kept consistent with the traffic ledger.

Every mutation runs in one storage transaction and is validated before
anything is written. Engine calls are queued on a ``LiveBatch`` and sent
only after the transaction commits.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xui_sync import codec, ledger
from xui_sync.db import ClientTraffic, Database, InboundRecord
from xui_sync.errors import (
    ClientNotFound,
    DecodeError,
    DuplicateEmail,
    InboundNotFound,
    LastClientError,
    PortConflict,
)
from xui_sync.live import LiveBatch, LiveSync, SyncResult
from xui_sync.models import Client, ClientStats, Inbound, InboundSettings
from xui_sync.presence import OnlineClients, Presence
from xui_sync.util import DAY_MS, listens_collide, now_millis

logger = logging.getLogger(__name__)

ALL_INBOUNDS = -1
DEPLETED_GRACE_MS = 30 * DAY_MS


def engine_user(protocol: str, settings: InboundSettings, client: Client) -> Dict[str, Any]:
    cipher = settings.cipher if protocol == "shadowsocks" else ""
    return client.engine_user(cipher)


def decode_record(record: InboundRecord) -> InboundSettings:
    return codec.decode_settings(record.settings, record.protocol)


async def get_record(session: AsyncSession, inbound_id: int) -> InboundRecord:
    record = await session.get(InboundRecord, inbound_id)
    if record is None:
        raise InboundNotFound(inbound_id)
    return record


async def queue_user_additions(session: AsyncSession, batch: LiveBatch,
                               rows: Iterable[ClientTraffic]) -> int:
    """Queue an add-user call for every re-enabled row whose client is enabled.

    Clients of disabled inbounds are skipped, the engine does not serve
    them. An inbound whose settings cannot be decoded marks drift.

    Returns:
        The number of queued calls.
    """
    by_inbound: Dict[int, Set[str]] = defaultdict(set)
    for row in rows:
        by_inbound[row.inbound_id].add(row.email)

    queued = 0
    for inbound_id, emails in by_inbound.items():
        record = await session.get(InboundRecord, inbound_id)
        if record is None or not record.enable:
            continue
        try:
            settings = decode_record(record)
        except DecodeError as exc:
            batch.mark_drift(f"cannot decode inbound {inbound_id}: {exc}")
            continue
        for client in settings.clients:
            if client.email in emails and client.enable:
                batch.add_user(record.protocol, record.tag, engine_user(record.protocol, settings, client))
                queued += 1
    return queued


class InboundService:
    """Mutation API for inbounds and their embedded clients.

    Args:
        db: The configuration store.
        live: Adapter that propagates committed changes to the engine.
        presence: Holder of the online client set.
    """

    def __init__(self, db: Database, live: LiveSync, presence: Presence | None = None) -> None:
        self.db = db
        self.live = live
        self.presence: Presence = presence if presence is not None else OnlineClients()

    async def _commit_live(self, batch: LiveBatch, value: Any) -> SyncResult:
        needs_restart = await self.live.apply(batch)
        if needs_restart:
            logger.info("Engine did not follow the change, restart required")
        return SyncResult.of(value, needs_restart)

    async def _check_port(self, session: AsyncSession, listen: str, port: int, ignore_id: int = 0) -> None:
        stmt = select(InboundRecord.listen).where(InboundRecord.port == port)
        if ignore_id:
            stmt = stmt.where(InboundRecord.id != ignore_id)
        for other in (await session.execute(stmt)).scalars():
            if listens_collide(listen, other):
                raise PortConflict(listen, port)

    async def _all_emails(self, session: AsyncSession, exclude_inbound_id: int = 0) -> Set[str]:
        """Lower-cased emails of every stored client and ledger row."""
        emails: Set[str] = set()
        stmt = select(InboundRecord)
        if exclude_inbound_id:
            stmt = stmt.where(InboundRecord.id != exclude_inbound_id)
        for record in (await session.execute(stmt)).scalars():
            try:
                clients = decode_record(record).clients
            except DecodeError as exc:
                logger.warning("Skipping undecodable inbound %s: %s", record.id, exc)
                continue
            emails.update(client.email.lower() for client in clients if client.email)

        stmt = select(ClientTraffic.email)
        if exclude_inbound_id:
            stmt = stmt.where(ClientTraffic.inbound_id != exclude_inbound_id)
        emails.update(email.lower() for email in (await session.execute(stmt)).scalars() if email)
        return emails

    async def _check_emails(self, session: AsyncSession, clients: Iterable[Client],
                            exclude_inbound_id: int = 0) -> None:
        seen: Set[str] = set()
        candidates: List[str] = []
        for client in clients:
            if not client.email:
                continue
            key = client.email.lower()
            if key in seen:
                raise DuplicateEmail(client.email)
            seen.add(key)
            candidates.append(client.email)
        if not candidates:
            return
        existing = await self._all_emails(session, exclude_inbound_id)
        for email in candidates:
            if email.lower() in existing:
                raise DuplicateEmail(email)

    # inbounds

    async def add_inbound(self, inbound: Inbound) -> SyncResult[Inbound]:
        """Store a new inbound and start serving it.

        When ``inbound.clientStats`` is given, those ledger rows are imported
        instead of fresh ones being generated.

        Raises:
            PortConflict: The listen address and port are already bound.
            DuplicateEmail: A client email is already in use.
            EmptyIdentifier: A client has no identifier.
            DuplicateIdentifier: Two clients share an identifier.
            DecodeError: The settings document is malformed.
        """
        settings = codec.decode_settings(inbound.settings, inbound.protocol)
        codec.check_identifiers(inbound.protocol, settings.clients)

        batch = LiveBatch()
        async with self.db.transaction() as session:
            await self._check_port(session, inbound.listen, inbound.port)
            await self._check_emails(session, settings.clients)

            record = inbound.apply_to(InboundRecord(), codec.encode_settings(settings))
            session.add(record)
            await session.flush()

            if inbound.clientStats:
                for stats in inbound.clientStats:
                    if stats.email:
                        await ledger.import_client_stat(session, record.id, stats)
            else:
                for client in settings.clients:
                    if client.email:
                        await ledger.add_client_stat(session, record.id, client)

            if record.enable:
                batch.add_inbound(record.engine_config())
            result = Inbound.from_record(record, await ledger.get_by_inbound(session, record.id))

        logger.info("Inbound %s added as %s", result.id, result.tag)
        return await self._commit_live(batch, result)

    async def update_inbound(self, inbound_id: int, inbound: Inbound) -> SyncResult[Inbound]:
        """Overwrite an inbound and move its ledger rows along.

        Emails present only in the old settings lose their rows, emails
        present only in the new settings get one, and rows kept on both
        sides take the new quota, expiry and reset period.
        """
        settings = codec.decode_settings(inbound.settings, inbound.protocol)
        codec.check_identifiers(inbound.protocol, settings.clients)

        batch = LiveBatch()
        async with self.db.transaction() as session:
            record = await get_record(session, inbound_id)
            await self._check_port(session, inbound.listen, inbound.port, ignore_id=inbound_id)
            await self._check_emails(session, settings.clients, exclude_inbound_id=inbound_id)
            try:
                old_clients = decode_record(record).clients
            except DecodeError as exc:
                logger.warning("Stored settings of inbound %s are undecodable, rebuilding its ledger: %s",
                               inbound_id, exc)
                await ledger.del_inbound_stats(session, inbound_id)
                old_clients = []

            old_emails = {client.email for client in old_clients if client.email}
            new_emails = {client.email for client in settings.clients if client.email}
            for email in old_emails - new_emails:
                await ledger.del_client_stat(session, email)
            for client in settings.clients:
                if not client.email:
                    continue
                # a row left behind by this inbound is adopted, not duplicated
                if await ledger.sync_client_limits(session, client, inbound_id):
                    continue
                await ledger.add_client_stat(session, inbound_id, client)

            old_tag, was_enabled, user_id = record.tag, record.enable, record.user_id
            inbound.apply_to(record, codec.encode_settings(settings))
            record.user_id = user_id
            await session.flush()

            batch.remove_inbound(old_tag, required=was_enabled)
            if record.enable:
                batch.add_inbound(record.engine_config())
            result = Inbound.from_record(record, await ledger.get_by_inbound(session, inbound_id))

        return await self._commit_live(batch, result)

    async def del_inbound(self, inbound_id: int) -> SyncResult[int]:
        batch = LiveBatch()
        async with self.db.transaction() as session:
            record = await get_record(session, inbound_id)
            if record.enable:
                batch.remove_inbound(record.tag)
            else:
                logger.debug("No enabled inbound found to remove by api: %s", record.tag)
            await ledger.del_inbound_stats(session, inbound_id)
            await session.delete(record)

        logger.info("Inbound %s deleted", inbound_id)
        return await self._commit_live(batch, inbound_id)

    # clients

    async def add_inbound_client(self, inbound_id: int,
                                 clients: Iterable[Client | Mapping]) -> SyncResult[List[Client]]:
        """Append clients to an inbound.

        Raises:
            InboundNotFound: No inbound with ``inbound_id``.
            DuplicateEmail: An email is already in use.
            EmptyIdentifier: A client has no identifier.
            DuplicateIdentifier: An identifier is already used in the inbound.
        """
        batch = LiveBatch()
        async with self.db.transaction() as session:
            record = await get_record(session, inbound_id)
            settings = decode_record(record)
            added = codec.coerce_clients(record.protocol, clients)
            codec.check_identifiers(record.protocol, [*settings.clients, *added])
            await self._check_emails(session, added)

            settings.clients.extend(added)
            record.settings = codec.encode_settings(settings)

            for client in added:
                if not client.email:
                    batch.mark_drift("client without email cannot be added by api")
                    continue
                await ledger.add_client_stat(session, inbound_id, client)
                if client.enable and record.enable:
                    batch.add_user(record.protocol, record.tag, engine_user(record.protocol, settings, client))

        return await self._commit_live(batch, added)

    async def update_inbound_client(self, inbound_id: int, client_id: str,
                                    client: Client | Mapping) -> SyncResult[Client]:
        """Replace the client identified by ``client_id``, keeping its position."""
        batch = LiveBatch()
        async with self.db.transaction() as session:
            record = await get_record(session, inbound_id)
            settings = decode_record(record)
            protocol = record.protocol
            (new,) = codec.coerce_clients(protocol, [client])

            index = next((i for i, c in enumerate(settings.clients) if c.identifier == client_id), -1)
            if index < 0:
                raise ClientNotFound(inbound_id, client_id)
            old = settings.clients[index]

            others = settings.clients[:index] + settings.clients[index + 1:]
            codec.check_identifiers(protocol, [*others, new])
            if new.email and new.email.lower() != old.email.lower():
                await self._check_emails(session, [new])

            settings.clients[index] = new
            record.settings = codec.encode_settings(settings)

            if new.email:
                updated = 0
                if old.email:
                    updated = await ledger.update_client_stat(session, old.email, new)
                if not updated:
                    await ledger.add_client_stat(session, inbound_id, new)
            elif old.email:
                await ledger.del_client_stat(session, old.email)

            if old.email:
                if old.enable and record.enable:
                    batch.remove_user(record.tag, old.email)
            else:
                batch.mark_drift("old client has no email, cannot remove it by api")
            if new.enable and record.enable:
                if new.email:
                    batch.add_user(protocol, record.tag, engine_user(protocol, settings, new))
                else:
                    batch.mark_drift("client without email cannot be added by api")

        return await self._commit_live(batch, new)

    async def del_inbound_client(self, inbound_id: int, client_id: str) -> SyncResult[Client]:
        """Remove one client from an inbound.

        Raises:
            ClientNotFound: No client has ``client_id``.
            LastClientError: The client is the only one left.
        """
        batch = LiveBatch()
        async with self.db.transaction() as session:
            record = await get_record(session, inbound_id)
            settings = decode_record(record)

            index = next((i for i, c in enumerate(settings.clients) if c.identifier == client_id), -1)
            if index < 0:
                raise ClientNotFound(inbound_id, client_id)
            if len(settings.clients) == 1:
                raise LastClientError(inbound_id)

            removed = settings.clients.pop(index)
            record.settings = codec.encode_settings(settings)

            if removed.email:
                row = await ledger.get_by_email(session, removed.email)
                depleted = row is not None and not row.enable
                await ledger.del_client_stat(session, removed.email)
                if removed.enable and not depleted and record.enable:
                    batch.remove_user(record.tag, removed.email)

        return await self._commit_live(batch, removed)

    # counters

    async def reset_client_traffic(self, inbound_id: int, email: str) -> SyncResult[ClientStats]:
        """Zero the counters of one client and re-enable it."""
        batch = LiveBatch()
        async with self.db.transaction() as session:
            row = await ledger.get_by_email(session, email)
            if row is None:
                raise ClientNotFound(inbound_id, email)
            if not row.enable:
                record = await get_record(session, inbound_id)
                settings = decode_record(record)
                client = next((c for c in settings.clients if c.email == email), None)
                if client is not None and client.enable and record.enable:
                    batch.add_user(record.protocol, record.tag, engine_user(record.protocol, settings, client))
                    logger.debug("Client enabled due to reset traffic: %s", email)
            row.up = 0
            row.down = 0
            row.enable = True
            result = ClientStats.from_record(row)

        return await self._commit_live(batch, result)

    async def reset_all_client_traffics(self, inbound_id: int) -> SyncResult[int]:
        """Zero and re-enable every ledger row of one inbound.

        ``ALL_INBOUNDS`` selects the rows of every inbound.
        """
        batch = LiveBatch()
        async with self.db.transaction() as session:
            scope = ClientTraffic.inbound_id > ALL_INBOUNDS
            if inbound_id != ALL_INBOUNDS:
                await get_record(session, inbound_id)
                scope = ClientTraffic.inbound_id == inbound_id
            disabled = list((await session.execute(
                select(ClientTraffic).where(scope, ClientTraffic.enable.is_(False))
            )).scalars())
            await queue_user_additions(session, batch, disabled)
            result = await session.execute(
                update(ClientTraffic).where(scope).values(enable=True, up=0, down=0)
            )
            count = result.rowcount

        return await self._commit_live(batch, count)

    async def reset_all_traffics(self) -> SyncResult[int]:
        async with self.db.transaction() as session:
            result = await session.execute(update(InboundRecord).values(up=0, down=0))
            count = result.rowcount
        return SyncResult.of(count, False)

    async def del_depleted_clients(self, inbound_id: int, now: int | None = None) -> SyncResult[int]:
        """Remove clients that ran out long ago and will never renew.

        A client is depleted when its ledger row is disabled, has no reset
        period and expired more than 30 days ago. An inbound left without
        clients is deleted.

        Args:
            inbound_id: The inbound to clean, or a negative value for all.
            now: Current time in epoch milliseconds.

        Returns:
            The number of removed clients.
        """
        now = now_millis() if now is None else now
        threshold = now - DEPLETED_GRACE_MS
        batch = LiveBatch()
        removed = 0
        async with self.db.transaction() as session:
            stmt = select(ClientTraffic).where(
                ClientTraffic.reset == 0,
                ClientTraffic.enable.is_(False),
                ClientTraffic.expiry_time < threshold,
            )
            if inbound_id >= 0:
                stmt = stmt.where(ClientTraffic.inbound_id == inbound_id)

            by_inbound: Dict[int, Set[str]] = defaultdict(set)
            for row in (await session.execute(stmt)).scalars():
                by_inbound[row.inbound_id].add(row.email)

            for depleted_inbound, emails in by_inbound.items():
                record = await session.get(InboundRecord, depleted_inbound)
                if record is None:
                    continue
                settings = decode_record(record)
                kept = [c for c in settings.clients if c.email not in emails]
                removed += len(settings.clients) - len(kept)
                await session.execute(delete(ClientTraffic).where(ClientTraffic.email.in_(emails)))

                if kept:
                    settings.clients = kept
                    record.settings = codec.encode_settings(settings)
                    continue
                logger.info("Deleting inbound %s, no client remained", record.id)
                if record.enable:
                    batch.remove_inbound(record.tag)
                await ledger.del_inbound_stats(session, record.id)
                await session.delete(record)

        return await self._commit_live(batch, removed)

    # queries

    async def _with_stats(self, session: AsyncSession, records: List[InboundRecord]) -> List[Inbound]:
        if not records:
            return []
        stats: Dict[int, List[ClientTraffic]] = defaultdict(list)
        rows = await session.execute(
            select(ClientTraffic)
            .where(ClientTraffic.inbound_id.in_([record.id for record in records]))
            .order_by(ClientTraffic.id)
        )
        for row in rows.scalars():
            stats[row.inbound_id].append(row)
        return [Inbound.from_record(record, stats[record.id]) for record in records]

    async def _iter_clients(self, session: AsyncSession) -> List[Tuple[InboundRecord, Client]]:
        pairs: List[Tuple[InboundRecord, Client]] = []
        for record in (await session.execute(select(InboundRecord).order_by(InboundRecord.id))).scalars():
            try:
                clients = decode_record(record).clients
            except DecodeError as exc:
                logger.warning("Skipping undecodable inbound %s: %s", record.id, exc)
                continue
            pairs.extend((record, client) for client in clients)
        return pairs

    async def get_inbounds(self, user_id: int) -> List[Inbound]:
        async with self.db.session() as session:
            records = await session.execute(
                select(InboundRecord).where(InboundRecord.user_id == user_id).order_by(InboundRecord.id)
            )
            return await self._with_stats(session, list(records.scalars()))

    async def get_all_inbounds(self) -> List[Inbound]:
        async with self.db.session() as session:
            records = await session.execute(select(InboundRecord).order_by(InboundRecord.id))
            return await self._with_stats(session, list(records.scalars()))

    async def get_inbound(self, inbound_id: int) -> Inbound:
        async with self.db.session() as session:
            record = await get_record(session, inbound_id)
            return Inbound.from_record(record)

    @staticmethod
    def get_clients(inbound: Inbound) -> List[Client]:
        return codec.decode_clients(inbound.settings, inbound.protocol)

    async def search_inbounds(self, query: str) -> List[Inbound]:
        """Inbounds whose remark contains ``query``."""
        async with self.db.session() as session:
            records = await session.execute(
                select(InboundRecord).where(InboundRecord.remark.contains(query, autoescape=True))
                .order_by(InboundRecord.id)
            )
            return await self._with_stats(session, list(records.scalars()))

    async def get_inbound_tags(self) -> List[str]:
        async with self.db.session() as session:
            tags = await session.execute(select(InboundRecord.tag).order_by(InboundRecord.id))
            return list(tags.scalars())

    async def get_client_traffic_by_email(self, email: str) -> ClientStats | None:
        async with self.db.session() as session:
            row = await ledger.get_by_email(session, email)
            return None if row is None else ClientStats.from_record(row)

    async def get_client_traffic_by_id(self, client_id: str) -> List[ClientStats]:
        """Ledger rows of every client whose ``id`` is ``client_id``."""
        async with self.db.session() as session:
            emails = [client.email for _, client in await self._iter_clients(session)
                      if getattr(client, "id", None) == client_id and client.email]
            return ClientStats.from_records(await ledger.get_by_emails(session, emails))

    async def get_client_traffic_tg_bot(self, tg_id: str, tg_username: str = "") -> List[ClientStats]:
        """Ledger rows of clients bound to a Telegram ID or username."""
        wanted = {str(value) for value in (tg_id, tg_username) if value}
        async with self.db.session() as session:
            emails = [client.email for _, client in await self._iter_clients(session)
                      if str(client.tg_id) in wanted and client.email]
            return ClientStats.from_records(await ledger.get_by_emails(session, emails))

    async def search_client_traffic(self, query: str) -> ClientStats | None:
        """Find the ledger row of the client whose id or password is ``query``."""
        async with self.db.session() as session:
            for _, client in await self._iter_clients(session):
                if not client.email:
                    continue
                if query in (getattr(client, "id", None), getattr(client, "password", None)):
                    row = await ledger.get_by_email(session, client.email)
                    return None if row is None else ClientStats.from_record(row)
        return None

    def get_online_clients(self) -> List[str]:
        return self.presence.get_online_clients()
