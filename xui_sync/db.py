"""Persistence for inbounds and the client traffic ledger.

Both tables live in one SQLite database reached through SQLAlchemy's
asyncio layer on top of aiosqlite. Every multi-step operation runs inside
``Database.transaction()``, which commits on success and rolls back on
any exception.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy import BigInteger, Boolean, Integer, String, Text, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///x-ui.db"


class Base(DeclarativeBase):
    pass


class InboundRecord(Base):
    __tablename__ = "inbounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, default=0, index=True)
    up: Mapped[int] = mapped_column(BigInteger, default=0)
    down: Mapped[int] = mapped_column(BigInteger, default=0)
    total: Mapped[int] = mapped_column(BigInteger, default=0)
    remark: Mapped[str] = mapped_column(String, default="")
    enable: Mapped[bool] = mapped_column(Boolean, default=True)
    expiry_time: Mapped[int] = mapped_column(BigInteger, default=0)
    listen: Mapped[str] = mapped_column(String, default="")
    port: Mapped[int] = mapped_column(Integer, index=True)
    protocol: Mapped[str] = mapped_column(String)
    settings: Mapped[str] = mapped_column(Text, default="")
    stream_settings: Mapped[str] = mapped_column(Text, default="")
    tag: Mapped[str] = mapped_column(String, unique=True)
    sniffing: Mapped[str] = mapped_column(Text, default="")

    def engine_config(self) -> Dict[str, Any]:
        """Build the inbound object the engine expects on add-inbound."""
        config: Dict[str, Any] = {
            "port": self.port,
            "protocol": self.protocol,
            "settings": _loads(self.settings),
            "streamSettings": _loads(self.stream_settings),
            "tag": self.tag,
            "sniffing": _loads(self.sniffing),
        }
        if self.listen:
            config["listen"] = self.listen
        return config

    def __repr__(self) -> str:
        return f"InboundRecord(id={self.id!r}, tag={self.tag!r}, enable={self.enable!r})"


class ClientTraffic(Base):
    __tablename__ = "client_traffics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inbound_id: Mapped[int] = mapped_column(Integer, index=True)
    enable: Mapped[bool] = mapped_column(Boolean, default=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    up: Mapped[int] = mapped_column(BigInteger, default=0)
    down: Mapped[int] = mapped_column(BigInteger, default=0)
    expiry_time: Mapped[int] = mapped_column(BigInteger, default=0)
    total: Mapped[int] = mapped_column(BigInteger, default=0)
    reset: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"ClientTraffic(email={self.email!r}, enable={self.enable!r})"


def _loads(document: str) -> Any:
    return json.loads(document) if document else {}


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN and breaks SAVEPOINT; emit both ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, url: str = DEFAULT_DATABASE_URL, *, echo: bool = False) -> None:
        kwargs: Dict[str, Any] = {}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **kwargs)
        if self.engine.dialect.name == "sqlite":
            _enable_sqlite_transactions(self.engine)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        """Create missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database ready at %s", self.url)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session inside one transaction.

        Yields:
            An ``AsyncSession``; the transaction commits when the block exits
            normally and rolls back when it raises.
        """
        async with self.sessionmaker() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a session for read-only queries."""
        async with self.sessionmaker() as session:
            yield session
