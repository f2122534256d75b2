"""Traffic ledger primitives.

Every function takes the caller's session so ledger rows are always
written in the same transaction as the settings document they mirror.
"""

from typing import Iterable, List

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xui_sync.db import ClientTraffic
from xui_sync.models import Client, ClientStats


async def add_client_stat(session: AsyncSession, inbound_id: int, client: Client) -> ClientTraffic:
    """Create the ledger row of a newly added client."""
    row = ClientTraffic(
        inbound_id=inbound_id,
        email=client.email,
        total=client.limit_gb,
        expiry_time=client.expiry_time,
        enable=True,
        up=0,
        down=0,
        reset=client.reset,
    )
    session.add(row)
    await session.flush()
    return row


async def import_client_stat(session: AsyncSession, inbound_id: int, stats: ClientStats) -> ClientTraffic:
    """Store a ledger row that arrived with an imported inbound."""
    row = ClientTraffic(
        inbound_id=inbound_id,
        email=stats.email,
        total=stats.total,
        expiry_time=stats.expiryTime,
        enable=stats.enable,
        up=stats.up,
        down=stats.down,
        reset=stats.reset,
    )
    session.add(row)
    await session.flush()
    return row


async def update_client_stat(session: AsyncSession, email: str, client: Client) -> int:
    """Rewrite the row of ``email`` from an edited client, re-enabling it.

    Returns:
        The number of rows updated.
    """
    result = await session.execute(
        update(ClientTraffic)
        .where(ClientTraffic.email == email)
        .values(
            enable=True,
            email=client.email,
            total=client.limit_gb,
            expiry_time=client.expiry_time,
            reset=client.reset,
        )
    )
    return result.rowcount


async def sync_client_limits(session: AsyncSession, client: Client, inbound_id: int | None = None) -> int:
    """Copy quota, expiry and reset period of a client onto its row.

    When ``inbound_id`` is given the row is also moved to that inbound.
    """
    values = dict(total=client.limit_gb, expiry_time=client.expiry_time, reset=client.reset)
    if inbound_id is not None:
        values["inbound_id"] = inbound_id
    result = await session.execute(
        update(ClientTraffic)
        .where(ClientTraffic.email == client.email)
        .values(**values)
    )
    return result.rowcount


async def del_client_stat(session: AsyncSession, email: str) -> int:
    if not email:
        return 0
    result = await session.execute(delete(ClientTraffic).where(ClientTraffic.email == email))
    return result.rowcount


async def del_inbound_stats(session: AsyncSession, inbound_id: int) -> int:
    result = await session.execute(delete(ClientTraffic).where(ClientTraffic.inbound_id == inbound_id))
    return result.rowcount


async def get_by_email(session: AsyncSession, email: str) -> ClientTraffic | None:
    result = await session.execute(select(ClientTraffic).where(ClientTraffic.email == email))
    return result.scalars().first()


async def get_by_emails(session: AsyncSession, emails: Iterable[str]) -> List[ClientTraffic]:
    emails = [email for email in emails if email]
    if not emails:
        return []
    result = await session.execute(select(ClientTraffic).where(ClientTraffic.email.in_(emails)))
    return list(result.scalars())


async def get_by_inbound(session: AsyncSession, inbound_id: int) -> List[ClientTraffic]:
    result = await session.execute(
        select(ClientTraffic).where(ClientTraffic.inbound_id == inbound_id).order_by(ClientTraffic.id)
    )
    return list(result.scalars())
