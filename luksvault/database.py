"""Database connection and session management."""

import json
import os
from typing import Any

from sqlalchemy import TypeDecorator, Text, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase


class JSONType(TypeDecorator):
    """Database-agnostic JSON type.

    Uses JSON text storage which works with both SQLite and PostgreSQL.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: dict[str, Any] | None, dialect) -> str | None:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True)

    def process_result_value(self, value: str | dict | list | None, dialect) -> dict[str, Any] | list | None:
        if value is None:
            return None
        # PostgreSQL returns already-parsed objects, SQLite returns strings
        if isinstance(value, (dict, list)):
            return value
        return json.loads(value)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Database:
    """Owns the async engine and session factory.

    Constructed once at startup and passed to the components that persist
    state; there is no module-level engine.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url:
                from sqlalchemy.pool import StaticPool
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        if url.startswith("sqlite"):
            @event.listens_for(self.engine.sync_engine, "connect")
            def _sqlite_pragmas(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

    def session(self) -> AsyncSession:
        return self.session_maker()

    async def init(self) -> None:
        """Create tables; the SQLite file is restricted to its owner."""
        self._prepare_sqlite_file()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._restrict_sqlite_file()

    async def close(self) -> None:
        await self.engine.dispose()

    def _sqlite_path(self) -> str | None:
        url = make_url(self.url)
        if not url.drivername.startswith("sqlite"):
            return None
        if not url.database or url.database == ":memory:":
            return None
        return url.database

    def _prepare_sqlite_file(self) -> None:
        path = self._sqlite_path()
        if path:
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, mode=0o700, exist_ok=True)

    def _restrict_sqlite_file(self) -> None:
        path = self._sqlite_path()
        if path and os.path.exists(path):
            os.chmod(path, 0o600)
