"""Connections to monitored clusters.

SourceClient is the seam between a collector and the cluster it watches.
CockroachSource is the production implementation over an asyncpg pool;
tests substitute an in-memory client with the same shape.
"""

from __future__ import annotations

from typing import Protocol

import asyncpg
import structlog

from crdbhistory.models.history import Setting

_log = structlog.get_logger(component="collector.source")

# SHOW CLUSTER SETTINGS returns:
#   variable, value, setting_type, description, default_value, origin
# Only the first four are kept.
_SQL_SETTINGS = "SHOW CLUSTER SETTINGS"
_SQL_VERSION = "SELECT version()"
_SQL_CLUSTER_ID = "SELECT crdb_internal.cluster_id()::TEXT"
_SQL_PING = "SELECT 1"


class SourceClient(Protocol):
    """Read-only view of one monitored cluster."""

    async def fetch_settings(self) -> list[Setting]: ...

    async def fetch_version(self) -> str: ...

    async def fetch_cluster_id(self) -> str: ...

    async def close(self) -> None: ...


class CockroachSource:
    """SourceClient backed by an asyncpg pool against a CockroachDB cluster."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str, *, max_size: int = 2) -> CockroachSource:
        """Open a small pool against *dsn* and verify it answers.

        The pool is closed again if the ping fails so that no connection
        leaks out of a failed construction.
        """
        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=max_size)
        try:
            async with pool.acquire() as conn:
                await conn.fetchval(_SQL_PING)
        except Exception:
            await pool.close()
            raise
        return cls(pool)

    async def fetch_settings(self) -> list[Setting]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_SQL_SETTINGS)
        return [
            Setting(
                variable=row[0],
                value=row[1],
                setting_type=row[2] or "",
                description=row[3] or "",
            )
            for row in rows
        ]

    async def fetch_version(self) -> str:
        async with self._pool.acquire() as conn:
            return str(await conn.fetchval(_SQL_VERSION))

    async def fetch_cluster_id(self) -> str:
        async with self._pool.acquire() as conn:
            return str(await conn.fetchval(_SQL_CLUSTER_ID))

    async def close(self) -> None:
        await self._pool.close()
