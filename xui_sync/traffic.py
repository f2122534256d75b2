"""The accounting tick: traffic accumulation, renewal and invalidation.

A tick runs in one outer transaction with every step in its own
savepoint, so a storage failure anywhere rolls back the whole tick.
Engine calls decided by a pass are applied after commit.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xui_sync import codec, ledger
from xui_sync.db import ClientTraffic, Database, InboundRecord
from xui_sync.errors import DecodeError
from xui_sync.inbounds import decode_record, queue_user_additions
from xui_sync.live import LiveBatch, LiveSync
from xui_sync.models import ClientTrafficDelta, Traffic
from xui_sync.presence import Presence
from xui_sync.util import ExpiryKind, activate_expiry, expiry_kind, next_renewal, now_millis

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    count: int = 0
    needs_restart: bool = False


@dataclass
class TickReport:
    """What one accounting tick changed.

    Attributes:
        inbound_traffics: Inbound rows that received a delta.
        client_traffics: Ledger rows that received a delta.
        activated: Pending expiries turned absolute.
        online: Emails with nonzero traffic this tick.
        renewed: Auto-renew pass.
        disabled_clients: Client invalidation pass.
        disabled_inbounds: Inbound invalidation pass.
    """
    inbound_traffics: int = 0
    client_traffics: int = 0
    activated: int = 0
    online: List[str] = field(default_factory=list)
    renewed: PassResult = field(default_factory=PassResult)
    disabled_clients: PassResult = field(default_factory=PassResult)
    disabled_inbounds: PassResult = field(default_factory=PassResult)

    @property
    def needs_restart(self) -> bool:
        return (self.renewed.needs_restart
                or self.disabled_clients.needs_restart
                or self.disabled_inbounds.needs_restart)


def client_is_invalid(now: int):
    return and_(
        ClientTraffic.enable.is_(True),
        or_(
            and_(ClientTraffic.total > 0, ClientTraffic.up + ClientTraffic.down >= ClientTraffic.total),
            and_(ClientTraffic.expiry_time > 0, ClientTraffic.expiry_time <= now),
        ),
    )


def inbound_is_invalid(now: int):
    return and_(
        InboundRecord.enable.is_(True),
        or_(
            and_(InboundRecord.total > 0, InboundRecord.up + InboundRecord.down >= InboundRecord.total),
            and_(InboundRecord.expiry_time > 0, InboundRecord.expiry_time <= now),
        ),
    )


async def rewrite_client_expiry(session: AsyncSession, expiries: Dict[int, Dict[str, int]]) -> None:
    """Write new client expiry times into the settings of their inbounds.

    Args:
        session: The open session.
        expiries: Mapping of inbound id to ``{email: expiryTime}``.
    """
    for inbound_id, by_email in expiries.items():
        record = await session.get(InboundRecord, inbound_id)
        if record is None:
            continue
        try:
            settings = decode_record(record)
        except DecodeError as exc:
            logger.warning("Cannot update client expiry of inbound %s: %s", inbound_id, exc)
            continue
        changed = False
        for client in settings.clients:
            if client.email in by_email:
                client.expiry_time = by_email[client.email]
                changed = True
        if changed:
            record.settings = codec.encode_settings(settings)


class TrafficService:
    """Applies accounting deltas and enforces quotas and expiry."""

    def __init__(self, db: Database, live: LiveSync, presence: Presence) -> None:
        self.db = db
        self.live = live
        self.presence = presence

    async def add_traffic(self, inbound_traffics: Iterable[Traffic],
                          client_traffics: Iterable[ClientTrafficDelta],
                          now: int | None = None) -> TickReport:
        """Run one accounting tick.

        Args:
            inbound_traffics: Inbound and outbound deltas, only inbound ones
                are counted.
            client_traffics: Per client deltas, unknown emails are dropped.
            now: Current time in epoch milliseconds.

        Returns:
            The tick report; ``needs_restart`` is set when the engine could
            not follow a decision.
        """
        now = now_millis() if now is None else now
        report = TickReport()
        renew_batch, clients_batch, inbounds_batch = LiveBatch(), LiveBatch(), LiveBatch()

        async with self.db.transaction() as session:
            async with session.begin_nested():
                report.inbound_traffics = await self._add_inbound_traffic(session, inbound_traffics)
            async with session.begin_nested():
                report.client_traffics, report.activated, report.online = \
                    await self._add_client_traffic(session, list(client_traffics), now)
            async with session.begin_nested():
                report.renewed.count = await self._auto_renew_clients(session, renew_batch, now)
            async with session.begin_nested():
                report.disabled_clients.count = await self._disable_invalid_clients(session, clients_batch, now)
            async with session.begin_nested():
                report.disabled_inbounds.count = await self._disable_invalid_inbounds(session, inbounds_batch, now)

        self.presence.set_online_clients(report.online)

        report.renewed.needs_restart = await self.live.apply(renew_batch)
        report.disabled_clients.needs_restart = await self.live.apply(clients_batch)
        report.disabled_inbounds.needs_restart = await self.live.apply(inbounds_batch)

        if report.renewed.count:
            logger.debug("%d clients renewed", report.renewed.count)
        if report.disabled_clients.count:
            logger.debug("%d clients disabled", report.disabled_clients.count)
        if report.disabled_inbounds.count:
            logger.debug("%d inbounds disabled", report.disabled_inbounds.count)
        return report

    async def _add_inbound_traffic(self, session: AsyncSession, traffics: Iterable[Traffic]) -> int:
        count = 0
        for traffic in traffics:
            if not traffic.isInbound:
                continue
            result = await session.execute(
                update(InboundRecord)
                .where(InboundRecord.tag == traffic.tag)
                .values(up=InboundRecord.up + traffic.up, down=InboundRecord.down + traffic.down)
                .execution_options(synchronize_session=False)
            )
            count += result.rowcount
        return count

    async def _add_client_traffic(self, session: AsyncSession, traffics: List[ClientTrafficDelta],
                                  now: int) -> Tuple[int, int, List[str]]:
        deltas: Dict[str, List[int]] = {}
        for traffic in traffics:
            delta = deltas.setdefault(traffic.email, [0, 0])
            delta[0] += traffic.up
            delta[1] += traffic.down
        if not deltas:
            return 0, 0, []

        rows = await ledger.get_by_emails(session, deltas)
        online: List[str] = []
        activated: Dict[int, Dict[str, int]] = defaultdict(dict)
        for row in rows:
            up, down = deltas[row.email]
            if up + down <= 0:
                continue
            online.append(row.email)
            if expiry_kind(row.expiry_time) is ExpiryKind.PENDING:
                row.expiry_time = activate_expiry(row.expiry_time, now)
                activated[row.inbound_id][row.email] = row.expiry_time
            row.up += up
            row.down += down

        await rewrite_client_expiry(session, activated)
        await session.flush()
        return len(rows), sum(len(emails) for emails in activated.values()), online

    async def _auto_renew_clients(self, session: AsyncSession, batch: LiveBatch, now: int) -> int:
        rows = list((await session.execute(
            select(ClientTraffic).where(
                ClientTraffic.reset > 0,
                ClientTraffic.expiry_time > 0,
                ClientTraffic.expiry_time <= now,
            )
        )).scalars())
        if not rows:
            return 0

        expiries: Dict[int, Dict[str, int]] = defaultdict(dict)
        reenabled: List[ClientTraffic] = []
        for row in rows:
            row.expiry_time = next_renewal(row.expiry_time, row.reset, now)
            row.up = 0
            row.down = 0
            expiries[row.inbound_id][row.email] = row.expiry_time
            if not row.enable:
                row.enable = True
                reenabled.append(row)

        await rewrite_client_expiry(session, expiries)
        await queue_user_additions(session, batch, reenabled)
        await session.flush()
        return len(rows)

    async def _disable_invalid_clients(self, session: AsyncSession, batch: LiveBatch, now: int) -> int:
        invalid = await session.execute(
            select(InboundRecord.tag, InboundRecord.enable, ClientTraffic.email)
            .join(ClientTraffic, InboundRecord.id == ClientTraffic.inbound_id)
            .where(client_is_invalid(now))
        )
        for tag, inbound_enabled, email in invalid:
            if inbound_enabled:
                batch.remove_user(tag, email)

        result = await session.execute(
            update(ClientTraffic)
            .where(client_is_invalid(now))
            .values(enable=False)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def _disable_invalid_inbounds(self, session: AsyncSession, batch: LiveBatch, now: int) -> int:
        tags: Set[str] = set((await session.execute(
            select(InboundRecord.tag).where(inbound_is_invalid(now))
        )).scalars())
        for tag in sorted(tags):
            batch.remove_inbound(tag)

        result = await session.execute(
            update(InboundRecord)
            .where(inbound_is_invalid(now))
            .values(enable=False)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount
