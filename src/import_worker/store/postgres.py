"""Direct PostgreSQL job store."""

from collections.abc import AsyncGenerator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..errors import WorkerError
from ..models import Job, JobStatus
from .base import JobStore


@contextmanager
def _store_errors(message: str) -> Iterator[None]:
    """Map database-reported failures to Supabase errors.

    Connection-level failures (OperationalError) propagate untouched and are
    normalized by the worker like any transport error.
    """
    try:
        yield
    except psycopg.OperationalError:
        raise
    except psycopg.DatabaseError as e:
        raise WorkerError.supabase(message, e) from e


class PostgresJobStore(JobStore):
    """Job store talking to Postgres directly.

    Uses an async connection pool. Both claim operations are a single
    ``UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)`` statement,
    safe under any number of concurrent workers.
    """

    def __init__(
        self,
        database_url: str,
        *,
        table: str = "import_jobs",
        timeout: float = 30.0,
        max_size: int = 4,
    ) -> None:
        """Remember connection settings; the pool opens on first use."""
        self.database_url = database_url
        self.table = sql.Identifier(table)
        self.timeout = timeout
        self.max_size = max_size
        self.pool: AsyncConnectionPool | None = None

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[psycopg.AsyncConnection[Any], None]:
        """Get a connection from the pool, opening the pool on first use."""
        if self.pool is None:
            self.pool = AsyncConnectionPool(
                conninfo=self.database_url,
                min_size=1,
                max_size=self.max_size,
                timeout=self.timeout,
                open=False,
            )
            await self.pool.open()
        async with self.pool.connection() as conn:
            conn.row_factory = dict_row
            yield conn

    async def _fetch_one(
        self, query: sql.Composed, params: tuple[Any, ...], message: str
    ) -> Job | None:
        with _store_errors(message):
            async with self.get_connection() as conn, conn.cursor() as cur:
                await cur.execute(query, params)
                row = await cur.fetchone()
                await conn.commit()
        return Job.model_validate(row) if row else None

    async def _execute(self, query: sql.Composed, params: tuple[Any, ...], message: str) -> None:
        with _store_errors(message):
            async with self.get_connection() as conn, conn.cursor() as cur:
                await cur.execute(query, params)
                await conn.commit()

    async def claim_next_pending_job(self, worker_id: str) -> Job | None:
        query = sql.SQL(
            """
                UPDATE {table}
                SET
                    status = 'processing',
                    worker_id = %s,
                    updated_at = now()
                WHERE id = (
                    SELECT id
                    FROM {table}
                    WHERE status = 'pending'
                    ORDER BY created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """
        ).format(table=self.table)
        return await self._fetch_one(query, (worker_id,), "Failed to claim next job")

    async def claim_stalled_job(self, worker_id: str, stalled_before: datetime) -> Job | None:
        query = sql.SQL(
            """
                UPDATE {table}
                SET
                    worker_id = %s,
                    updated_at = now()
                WHERE id = (
                    SELECT id
                    FROM {table}
                    WHERE status = 'processing'
                      AND updated_at < %s
                    ORDER BY created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """
        ).format(table=self.table)
        return await self._fetch_one(
            query, (worker_id, stalled_before), "Failed to claim stalled job"
        )

    async def find_stalled_jobs(self, stalled_before: datetime, limit: int = 1) -> list[Job]:
        query = sql.SQL(
            """
                SELECT *
                FROM {table}
                WHERE status = 'processing'
                  AND updated_at < %s
                ORDER BY created_at ASC
                LIMIT %s
                """
        ).format(table=self.table)
        with _store_errors("Failed to fetch stalled jobs"):
            async with self.get_connection() as conn, conn.transaction(), conn.cursor() as cur:
                await cur.execute(query, (stalled_before, limit))
                rows = await cur.fetchall()
        return [Job.model_validate(row) for row in rows]

    async def update_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        if error is None:
            query = sql.SQL(
                "UPDATE {table} SET status = %s, updated_at = now() WHERE id = %s"
            ).format(table=self.table)
            params: tuple[Any, ...] = (status.value, job_id)
        else:
            query = sql.SQL(
                "UPDATE {table} SET status = %s, error = %s, updated_at = now() WHERE id = %s"
            ).format(table=self.table)
            params = (status.value, error, job_id)
        await self._execute(query, params, "Failed to update job status")

    async def touch_job(self, job_id: str, worker_id: str) -> None:
        query = sql.SQL(
            "UPDATE {table} SET updated_at = now() WHERE id = %s AND worker_id = %s"
        ).format(table=self.table)
        await self._execute(query, (job_id, worker_id), "Failed to touch job")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as conn, conn.transaction(), conn.cursor() as cur:
                await cur.execute("SELECT 1")
                return True
        except psycopg.Error:
            return False

    async def close(self) -> None:
        """Close connection pool gracefully."""
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
