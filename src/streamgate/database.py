"""
Database collaborator.

The gateway only needs "execute SQL text with bound parameters, get rows
back". Every call is bounded by a timeout; any driver error or timeout
becomes a DatabaseError whose text never reaches the client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence, runtime_checkable

import asyncpg

from streamgate.core.errors import DatabaseError
from streamgate.core.settings import GatewaySettings

logger = logging.getLogger(__name__)

Row = dict[str, Any]


@runtime_checkable
class Database(Protocol):
    """Protocol for the relational store."""

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        """Run one statement and return its rows."""
        ...

    async def fetch_in_transaction(
        self, statements: Sequence[tuple[str, Sequence[Any]]]
    ) -> list[list[Row]]:
        """Run statements in one transaction; all succeed or none do."""
        ...


class AsyncpgDatabase:
    """
    asyncpg pool wrapper.

    Usage:
        db = AsyncpgDatabase("postgresql://localhost/streamgate")
        await db.connect()
        rows = await db.fetch("SELECT * FROM films WHERE id = $1", ("f1",))
        await db.close()
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout: float = 10.0,
        min_size: int = 1,
        max_size: int = 10,
        pool: Any = None,  # asyncpg.Pool, injectable for tests
    ) -> None:
        self._dsn = dsn
        self._timeout = timeout
        self._min_size = min_size
        self._max_size = max_size
        self._pool = pool

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> AsyncpgDatabase:
        if not settings.database_url:
            raise ValueError("database_url is not configured")
        return cls(
            settings.database_url,
            timeout=settings.database_timeout,
            min_size=settings.database_min_pool,
            max_size=settings.database_max_pool,
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=self._timeout,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("Failed to open database pool: %s", type(e).__name__)
            raise DatabaseError("Database unavailable") from e
        logger.info("Database pool opened (min=%d, max=%d)", self._min_size, self._max_size)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        pool = self._require_pool()

        async def run() -> list[Any]:
            async with pool.acquire(timeout=self._timeout) as conn:
                return await conn.fetch(sql, *params)

        # One deadline covers waiting for a connection and the statement itself
        try:
            records = await asyncio.wait_for(run(), self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("Database call timed out after %.1fs", self._timeout)
            raise DatabaseError("Database timeout") from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error("Database call failed: %s: %s", type(e).__name__, e)
            raise DatabaseError(str(e)) from e
        return [dict(record) for record in records]

    async def fetch_in_transaction(
        self, statements: Sequence[tuple[str, Sequence[Any]]]
    ) -> list[list[Row]]:
        pool = self._require_pool()

        async def run() -> list[list[Row]]:
            results: list[list[Row]] = []
            async with pool.acquire(timeout=self._timeout) as conn:
                async with conn.transaction():
                    for sql, params in statements:
                        records = await conn.fetch(sql, *params)
                        results.append([dict(record) for record in records])
            return results

        # The deadline applies to the whole transaction, not to each statement
        try:
            results = await asyncio.wait_for(run(), self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("Database transaction timed out after %.1fs", self._timeout)
            raise DatabaseError("Database timeout") from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error("Database transaction failed: %s: %s", type(e).__name__, e)
            raise DatabaseError(str(e)) from e
        return results

    def _require_pool(self) -> Any:
        if self._pool is None:
            raise DatabaseError("Database pool is not connected")
        return self._pool


class UnconfiguredDatabase:
    """Stand-in used when no database URL is configured; every call fails with a 500."""

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        raise DatabaseError("Database is not configured")

    async def fetch_in_transaction(
        self, statements: Sequence[tuple[str, Sequence[Any]]]
    ) -> list[list[Row]]:
        raise DatabaseError("Database is not configured")
