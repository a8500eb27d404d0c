from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import importlib
from typing import Any

from fieldsync.domain.errors import StorageError
from fieldsync.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_CREATE_QUEUE_KV = load_sql("create_queue_kv.sql")
SQL_GET_VALUE = load_sql("get_value.sql")
SQL_UPSERT_VALUE = load_sql("upsert_value.sql")
SQL_LOCK_PARTITIONS = load_sql("lock_partitions.sql")

PARTITION_LOCK_NAME = "fieldsync.queue_kv"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres storage mode")

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=5,
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SQL_CREATE_QUEUE_KV)

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresKeyValueSession:
    """Reads and writes on the connection that holds the partition lock."""

    conn: Any

    async def get(self, key: str) -> str | None:
        try:
            return await self.conn.fetchval(SQL_GET_VALUE, key)
        except Exception as exc:
            raise StorageError(f"failed to read key {key}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self.conn.execute(SQL_UPSERT_VALUE, key, value)
        except Exception as exc:
            raise StorageError(f"failed to write key {key}: {exc}") from exc


@dataclass
class PostgresKeyValueStorage:
    """Queue partitions stored as rows of a single key/value table.

    Each session runs in one transaction holding a transaction-scoped advisory
    lock, so API and scheduler processes sharing the database never interleave
    a partition read-modify-write. A session that raises is rolled back.
    """

    pool_manager: AsyncpgPoolManager
    lock_name: str = PARTITION_LOCK_NAME

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise StorageError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[PostgresKeyValueSession]:
        pool = self._pool()
        try:
            conn = await pool.acquire()
        except Exception as exc:
            raise StorageError(f"failed to acquire postgres connection: {exc}") from exc
        try:
            async with conn.transaction():
                try:
                    await conn.execute(SQL_LOCK_PARTITIONS, self.lock_name)
                except Exception as exc:
                    raise StorageError(f"failed to lock queue partitions: {exc}") from exc
                yield PostgresKeyValueSession(conn=conn)
        finally:
            await pool.release(conn)
