"""Builders for inbounds and clients used across the test suite."""
import json
import uuid
from typing import Any, Dict, List

from sqlalchemy import select, update

from xui_sync import codec
from xui_sync.db import ClientTraffic, Database, InboundRecord
from xui_sync.models import Client, Inbound


def vless_client(email: str, **fields: Any) -> Dict[str, Any]:
    return {"id": str(uuid.uuid4()), "email": email, "enable": True, "flow": "",
            "totalGB": 0, "expiryTime": 0, "reset": 0, **fields}


def trojan_client(email: str, **fields: Any) -> Dict[str, Any]:
    return {"password": uuid.uuid4().hex, "email": email, "enable": True,
            "totalGB": 0, "expiryTime": 0, "reset": 0, **fields}


def ss_client(email: str, **fields: Any) -> Dict[str, Any]:
    return {"email": email, "password": uuid.uuid4().hex, "method": "", "enable": True,
            "totalGB": 0, "expiryTime": 0, "reset": 0, **fields}


def make_inbound(port: int = 443, *, listen: str = "", protocol: str = "vless",
                 clients: List[Dict[str, Any]] | None = None, **fields: Any) -> Inbound:
    if clients is None:
        clients = [vless_client(f"user-{port}@example.com")]
    fields.setdefault("remark", f"inbound {port}")
    settings: Dict[str, Any] = {"clients": clients}
    if protocol == "shadowsocks":
        settings["method"] = "2022-blake3-aes-128-gcm"
    else:
        settings["decryption"] = "none"
    return Inbound(
        port=port,
        listen=listen,
        protocol=protocol,
        settings=settings,
        streamSettings={"network": "tcp", "security": "none"},
        sniffing={"enabled": False},
        **fields,
    )


async def ledger_rows(db: Database) -> Dict[str, ClientTraffic]:
    async with db.session() as session:
        rows = await session.execute(select(ClientTraffic))
        return {row.email: row for row in rows.scalars()}


async def stored_record(db: Database, inbound_id: int) -> InboundRecord | None:
    async with db.session() as session:
        return await session.get(InboundRecord, inbound_id)


async def stored_clients(db: Database, inbound_id: int) -> List[Client]:
    record = await stored_record(db, inbound_id)
    assert record is not None
    return codec.decode_clients(record.settings, record.protocol)


async def assert_ledger_consistent(db: Database) -> None:
    """Every emailed client has exactly one row with matching limits."""
    rows = await ledger_rows(db)
    async with db.session() as session:
        records = list((await session.execute(select(InboundRecord))).scalars())
    emails = set()
    for record in records:
        for client in codec.decode_clients(record.settings, record.protocol):
            if not client.email:
                continue
            emails.add(client.email)
            row = rows.get(client.email)
            assert row is not None, f"missing ledger row for {client.email}"
            assert row.inbound_id == record.id
            assert (row.total, row.expiry_time, row.reset) == \
                   (client.limit_gb, client.expiry_time, client.reset)
    assert set(rows) == emails


async def set_row(db: Database, email: str, **values: Any) -> None:
    async with db.transaction() as session:
        await session.execute(update(ClientTraffic).where(ClientTraffic.email == email).values(**values))


async def set_settings(db: Database, inbound_id: int, settings: Dict[str, Any]) -> None:
    """Overwrite the stored settings document without touching the ledger."""
    async with db.transaction() as session:
        await session.execute(
            update(InboundRecord).where(InboundRecord.id == inbound_id).values(settings=json.dumps(settings))
        )
