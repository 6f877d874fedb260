"""PostgreSQL job store (asyncpg)."""

import json
from typing import Any, Iterable, Optional
from uuid import UUID

import structlog

from bulkops.core.resilience import with_db_retry
from bulkops.jobs.models import Item, ItemOutcome, Job, item_label
from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus
from bulkops.repositories.base import JobStore

logger = structlog.get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS bulk_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    paused BOOLEAN NOT NULL DEFAULT FALSE,
    filters JSONB NOT NULL DEFAULT '{}'::jsonb,
    total_count INTEGER NOT NULL DEFAULT 0,
    processed_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    current_item_ref TEXT,
    parent_job_id UUID REFERENCES bulk_jobs(id) ON DELETE SET NULL,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    CONSTRAINT bulk_jobs_counts_check
        CHECK (processed_count + failed_count <= total_count),
    CONSTRAINT bulk_jobs_paused_check
        CHECK (NOT paused OR status = 'processing')
);

CREATE INDEX IF NOT EXISTS idx_bulk_jobs_status_created
    ON bulk_jobs (status, created_at DESC);

CREATE TABLE IF NOT EXISTS bulk_job_items (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    job_id UUID NOT NULL REFERENCES bulk_jobs(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    error_kind TEXT,
    result JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    processed_at TIMESTAMPTZ,
    UNIQUE (job_id, position)
);

CREATE INDEX IF NOT EXISTS idx_bulk_job_items_claim
    ON bulk_job_items (job_id, status, position);
"""


def _load_json(value: Any) -> Any:
    """Decode a JSONB column if the pool has no jsonb codec installed."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresJobStore(JobStore):
    """Job store backed by the bulk_jobs / bulk_job_items tables."""

    def __init__(self, pool):
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create tables and indexes if missing."""
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("job_store_schema_ready")

    async def create_job(
        self,
        kind: JobKind,
        filters: dict[str, Any],
        payloads: list[dict[str, Any]],
        parent_job_id: Optional[UUID] = None,
    ) -> Job:
        """Create a pending job and materialize its items in one transaction."""
        job_query = """
            INSERT INTO bulk_jobs (kind, filters, total_count, parent_job_id)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        item_query = """
            INSERT INTO bulk_job_items (job_id, position, payload)
            VALUES ($1, $2, $3)
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    job_query, kind.value, filters, len(payloads), parent_job_id
                )
                await conn.executemany(
                    item_query,
                    [
                        (row["id"], position, payload)
                        for position, payload in enumerate(payloads)
                    ],
                )
        logger.info(
            "job_created",
            job_id=str(row["id"]),
            kind=kind.value,
            total_count=len(payloads),
            parent_job_id=str(parent_job_id) if parent_job_id else None,
        )
        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        query = "SELECT * FROM bulk_jobs WHERE id = $1"
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, job_id))
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        kind: Optional[JobKind] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs with filters and pagination.

        Args:
            kind: Filter by job kind
            status: Filter by status (pending, processing, completed, failed)
            limit: Max results
            offset: Pagination offset

        Returns:
            Tuple of (jobs list, total count)
        """
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if kind:
            conditions.append(f"kind = ${param_idx}")
            params.append(kind.value)
            param_idx += 1

        if status:
            conditions.append(f"status = ${param_idx}")
            params.append(status.value)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM bulk_jobs
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        count_query = f"""
            SELECT COUNT(*) as total FROM bulk_jobs
            {where_clause}
        """

        async def _fetch(conn):
            rows = await conn.fetch(query, *params, limit, offset)
            count_row = await conn.fetchrow(count_query, *params)
            return rows, count_row

        rows, count_row = await with_db_retry(self._pool, _fetch)
        jobs = [self._row_to_job(row) for row in rows]
        total = count_row["total"] if count_row else 0
        return jobs, total

    async def delete_job(self, job_id: UUID) -> bool:
        """Delete a job; items go with it (ON DELETE CASCADE)."""
        query = "DELETE FROM bulk_jobs WHERE id = $1 RETURNING id"
        async with self._pool.acquire() as conn:
            deleted = await conn.fetchval(query, job_id)
        if deleted:
            logger.info("job_deleted", job_id=str(job_id))
        return deleted is not None

    async def get_items(
        self,
        job_id: Optional[UUID] = None,
        status: Optional[ItemStatus] = None,
        item_ids: Optional[Iterable[UUID]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Item]:
        """List items in claim order."""
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if job_id:
            conditions.append(f"job_id = ${param_idx}")
            params.append(job_id)
            param_idx += 1

        if status:
            conditions.append(f"status = ${param_idx}")
            params.append(status.value)
            param_idx += 1

        if item_ids is not None:
            conditions.append(f"id = ANY(${param_idx}::uuid[])")
            params.append(list(item_ids))
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        page_clause = f"OFFSET ${param_idx}"
        params.append(offset)
        param_idx += 1
        if limit is not None:
            page_clause = f"LIMIT ${param_idx} " + page_clause
            params.append(limit)

        query = f"""
            SELECT * FROM bulk_job_items
            {where_clause}
            ORDER BY job_id, position
            {page_clause}
        """
        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, *params))
        return [self._row_to_item(row) for row in rows]

    async def set_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        expected: Optional[Iterable[JobStatus]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Job]:
        """Conditionally move a job to a new status."""
        query = """
            UPDATE bulk_jobs SET
                status = $2::text,
                paused = CASE WHEN $2::text = 'processing' THEN paused ELSE FALSE END,
                current_item_ref = CASE
                    WHEN $2::text = 'processing' THEN current_item_ref ELSE NULL END,
                started_at = CASE
                    WHEN $2::text = 'processing' THEN COALESCE(started_at, now())
                    ELSE started_at END,
                completed_at = CASE
                    WHEN $2::text IN ('completed', 'failed') THEN now()
                    ELSE completed_at END,
                error_message = COALESCE($3, error_message)
            WHERE id = $1
              AND ($4::text[] IS NULL OR status = ANY($4::text[]))
            RETURNING *
        """
        expected_values = [s.value for s in expected] if expected is not None else None
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job_id, status.value, error_message, expected_values
            )
        if row is None:
            return None
        logger.info("job_status_changed", job_id=str(job_id), status=status.value)
        return self._row_to_job(row)

    async def mark_processing(
        self, job_id: UUID, expected: JobStatus
    ) -> Optional[Job]:
        query = """
            UPDATE bulk_jobs SET
                status = 'processing',
                paused = FALSE,
                started_at = COALESCE(started_at, now())
            WHERE id = $1 AND status = $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, expected.value)
        return self._row_to_job(row) if row else None

    async def complete_job(self, job_id: UUID) -> Optional[Job]:
        query = """
            UPDATE bulk_jobs SET
                status = 'completed',
                paused = FALSE,
                current_item_ref = NULL,
                completed_at = now()
            WHERE id = $1
              AND status = 'processing'
              AND processed_count + failed_count = total_count
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def set_paused(self, job_id: UUID, paused: bool) -> Optional[Job]:
        query = """
            UPDATE bulk_jobs SET paused = $2
            WHERE id = $1 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, paused)
        return self._row_to_job(row) if row else None

    async def claim_next_pending_item(self, job_id: UUID) -> Optional[Item]:
        """Claim the next pending item using FOR UPDATE SKIP LOCKED.

        Returns None if no items are pending.
        """
        query = """
            WITH next_item AS (
                SELECT id FROM bulk_job_items
                WHERE job_id = $1 AND status = 'pending'
                ORDER BY position
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE bulk_job_items i SET
                status = 'processing',
                attempts = i.attempts + 1
            FROM next_item
            WHERE i.id = next_item.id
            RETURNING i.*
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(query, job_id)
                if row is None:
                    return None
                item = self._row_to_item(row)
                await conn.execute(
                    "UPDATE bulk_jobs SET current_item_ref = $2 WHERE id = $1",
                    job_id,
                    item_label(item.payload, item.id),
                )

        logger.debug(
            "item_claimed",
            job_id=str(job_id),
            item_id=str(item.id),
            attempt=item.attempts,
        )
        return item

    async def record_item_outcome(
        self, item_id: UUID, outcome: ItemOutcome
    ) -> Optional[Job]:
        """Write an item outcome and bump the owning job's counter atomically."""
        item_query = """
            UPDATE bulk_job_items SET
                status = $2,
                result = $3,
                error_message = $4,
                error_kind = $5,
                processed_at = now()
            WHERE id = $1 AND status = 'processing'
            RETURNING job_id
        """
        job_query = """
            UPDATE bulk_jobs SET
                processed_count = processed_count + $2,
                failed_count = failed_count + $3
            WHERE id = $1
            RETURNING *
        """
        succeeded = outcome.status == ItemStatus.COMPLETED
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                owner = await conn.fetchval(
                    item_query,
                    item_id,
                    outcome.status.value,
                    outcome.result if succeeded else None,
                    None if succeeded else outcome.error_message,
                    None if succeeded or outcome.error_kind is None else outcome.error_kind.value,
                )
                if owner is None:
                    logger.warning("item_outcome_ignored", item_id=str(item_id))
                    return None
                row = await conn.fetchrow(
                    job_query, owner, 1 if succeeded else 0, 0 if succeeded else 1
                )
        return self._row_to_job(row)

    async def requeue_item(
        self,
        item_id: UUID,
        error_message: str,
        error_kind: ErrorKind,
    ) -> bool:
        query = """
            UPDATE bulk_job_items SET
                status = 'pending',
                error_message = $2,
                error_kind = $3
            WHERE id = $1 AND status = 'processing'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            requeued = await conn.fetchval(query, item_id, error_message, error_kind.value)
        return requeued is not None

    async def release_claimed_items(self, job_id: UUID) -> int:
        query = """
            UPDATE bulk_job_items SET status = 'pending'
            WHERE job_id = $1 AND status = 'processing'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id)
        count = len(rows)
        if count > 0:
            logger.warning("claimed_items_released", job_id=str(job_id), count=count)
        return count

    async def reset_failed_items(self, job_id: UUID, item_ids: Iterable[UUID]) -> int:
        items_query = """
            UPDATE bulk_job_items SET
                status = 'pending',
                attempts = 0,
                error_message = NULL,
                error_kind = NULL,
                processed_at = NULL
            WHERE job_id = $1 AND id = ANY($2::uuid[]) AND status = 'failed'
            RETURNING id
        """
        job_query = """
            UPDATE bulk_jobs SET failed_count = failed_count - $2
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(items_query, job_id, list(item_ids))
                if rows:
                    await conn.execute(job_query, job_id, len(rows))
        return len(rows)

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            kind=JobKind(row["kind"]),
            status=JobStatus(row["status"]),
            filters=_load_json(row["filters"]) or {},
            total_count=row["total_count"],
            processed_count=row["processed_count"],
            failed_count=row["failed_count"],
            paused=row["paused"],
            current_item_ref=row["current_item_ref"],
            parent_job_id=row["parent_job_id"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    def _row_to_item(self, row) -> Item:
        """Convert a database row to an Item model."""
        return Item(
            id=row["id"],
            job_id=row["job_id"],
            position=row["position"],
            payload=_load_json(row["payload"]) or {},
            status=ItemStatus(row["status"]),
            attempts=row["attempts"],
            error_message=row["error_message"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            result=_load_json(row["result"]),
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )
