"""Postgres access through a single injected asyncpg pool.

The pool is owned by a :class:`Database` instance that is opened in the
FastAPI lifespan and closed on shutdown.  Components receive the instance
explicitly instead of reaching for a module-level pool.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncGenerator

import asyncpg

from healthscore.config import Settings, get_settings

logger = logging.getLogger("healthscore.db")


class DatabaseNotOpenError(RuntimeError):
    """Raised when the pool is used before ``open()`` or after ``close()``."""


class Database:
    """Thin lifecycle wrapper around an ``asyncpg.Pool``.

    Usage::

        db = Database.from_settings(settings)
        await db.open()
        rows = await db.fetch("SELECT * FROM daily_health_scores WHERE user_id = $1", uid)
        await db.close()
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 20,
        command_timeout: float = 30.0,
        acquire_timeout: float | None = 10.0,
    ) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._acquire_timeout = acquire_timeout
        self._pool: asyncpg.Pool | None = None
        # Connection held by the advisory lock of the current task, if any.
        self._locked_conn: ContextVar[asyncpg.Connection | None] = ContextVar(
            f"healthscore_locked_conn_{id(self)}", default=None
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        s = settings or get_settings()
        return cls(
            s.database_url,
            min_size=s.db_pool_min_size,
            max_size=s.db_pool_max_size,
            command_timeout=s.db_command_timeout,
            acquire_timeout=s.db_acquire_timeout,
        )

    async def open(self) -> None:
        """Create the connection pool. Call once at app startup."""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self._dsn,
            min_size=self._min_size,
            max_size=self._max_size,
            command_timeout=self._command_timeout,
            init=_init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self._min_size, self._max_size
        )

    async def close(self) -> None:
        """Drain the pool. Call at app shutdown."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseNotOpenError("Database pool not initialized; call open() first")
        return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a pooled connection inside a transaction.

        Inside :meth:`advisory_lock` this yields the lock's own connection,
        so the guarded work never waits on the pool for a second one.
        """
        locked = self._locked_conn.get()
        if locked is not None:
            yield locked
            return
        async with self.pool.acquire(timeout=self._acquire_timeout) as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def advisory_lock(self, key: str) -> AsyncGenerator[None, None]:
        """Run the body under a transaction-level advisory lock for ``key``.

        The lock is taken with ``pg_advisory_xact_lock`` on one pooled
        connection, and every query the current task issues through this
        ``Database`` until the block exits runs on that same connection and
        transaction.  Postgres releases the lock at commit or rollback.

        Usage::

            async with db.advisory_lock(f"{user_id}:{day}"):
                rows = await db.fetch(...)
                await db.execute(...)
        """
        async with self.connection() as conn:
            await conn.execute("SELECT pg_advisory_xact_lock(hashtextextended($1, 0))", key)
            if self._locked_conn.get() is conn:
                yield
                return
            token = self._locked_conn.set(conn)
            try:
                yield
            finally:
                self._locked_conn.reset(token)

    async def execute(self, query: str, *args: Any) -> str:
        async with self.connection() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self.connection() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.connection() as conn:
            return await conn.fetchval(query, *args)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns (contributor maps) into Python dicts."""
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )
