"""In-process job store.

Used for local development without PostgreSQL and by the test suite. All
mutations happen under one asyncio lock with no awaits inside, so each
operation is atomic with respect to the other tasks on the event loop.
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

import structlog

from bulkops.jobs.models import Item, ItemOutcome, Job
from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus
from bulkops.repositories.base import JobStore

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryJobStore(JobStore):
    """Job store kept in process memory."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._jobs: dict[UUID, Job] = {}
        self._items: dict[UUID, Item] = {}
        self._items_by_job: dict[UUID, list[UUID]] = {}

    async def create_job(
        self,
        kind: JobKind,
        filters: dict[str, Any],
        payloads: list[dict[str, Any]],
        parent_job_id: Optional[UUID] = None,
    ) -> Job:
        async with self._lock:
            job = Job(
                id=uuid4(),
                kind=kind,
                status=JobStatus.PENDING,
                filters=copy.deepcopy(filters),
                total_count=len(payloads),
                parent_job_id=parent_job_id,
            )
            self._jobs[job.id] = job
            ids: list[UUID] = []
            for position, payload in enumerate(payloads):
                item = Item(
                    id=uuid4(),
                    job_id=job.id,
                    position=position,
                    payload=copy.deepcopy(payload),
                )
                self._items[item.id] = item
                ids.append(item.id)
            self._items_by_job[job.id] = ids
            return copy.deepcopy(job)

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_jobs(
        self,
        kind: Optional[JobKind] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        jobs = [
            job
            for job in self._jobs.values()
            if (kind is None or job.kind == kind)
            and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        page = jobs[offset : offset + limit]
        return [copy.deepcopy(j) for j in page], len(jobs)

    async def delete_job(self, job_id: UUID) -> bool:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            for item_id in self._items_by_job.pop(job_id, []):
                self._items.pop(item_id, None)
            return True

    async def get_items(
        self,
        job_id: Optional[UUID] = None,
        status: Optional[ItemStatus] = None,
        item_ids: Optional[Iterable[UUID]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Item]:
        if item_ids is not None:
            wanted = set(item_ids)
            candidates = [self._items[i] for i in wanted if i in self._items]
        elif job_id is not None:
            candidates = [self._items[i] for i in self._items_by_job.get(job_id, [])]
        else:
            candidates = list(self._items.values())

        items = [
            item
            for item in candidates
            if (job_id is None or item.job_id == job_id)
            and (status is None or item.status == status)
        ]
        items.sort(key=lambda i: (str(i.job_id), i.position))
        end = None if limit is None else offset + limit
        return [copy.deepcopy(i) for i in items[offset:end]]

    async def set_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        expected: Optional[Iterable[JobStatus]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if expected is not None and job.status not in set(expected):
                return None
            self._apply_status(job, status, error_message)
            return copy.deepcopy(job)

    async def mark_processing(
        self, job_id: UUID, expected: JobStatus
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected:
                return None
            job.status = JobStatus.PROCESSING
            job.paused = False
            if job.started_at is None:
                job.started_at = _now()
            return copy.deepcopy(job)

    async def complete_job(self, job_id: UUID) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            if job.finished_count != job.total_count:
                return None
            self._apply_status(job, JobStatus.COMPLETED, None)
            return copy.deepcopy(job)

    async def set_paused(self, job_id: UUID, paused: bool) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            job.paused = paused
            return copy.deepcopy(job)

    async def claim_next_pending_item(self, job_id: UUID) -> Optional[Item]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for item_id in self._items_by_job.get(job_id, []):
                item = self._items[item_id]
                if item.status == ItemStatus.PENDING:
                    item.status = ItemStatus.PROCESSING
                    item.attempts += 1
                    job.current_item_ref = item.label
                    return copy.deepcopy(item)
            return None

    async def record_item_outcome(
        self, item_id: UUID, outcome: ItemOutcome
    ) -> Optional[Job]:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != ItemStatus.PROCESSING:
                return None
            job = self._jobs[item.job_id]

            item.status = outcome.status
            item.processed_at = _now()
            if outcome.status == ItemStatus.COMPLETED:
                item.result = copy.deepcopy(outcome.result)
                item.error_message = None
                item.error_kind = None
                job.processed_count += 1
            else:
                item.error_message = outcome.error_message
                item.error_kind = outcome.error_kind
                job.failed_count += 1
            return copy.deepcopy(job)

    async def requeue_item(
        self,
        item_id: UUID,
        error_message: str,
        error_kind: ErrorKind,
    ) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != ItemStatus.PROCESSING:
                return False
            item.status = ItemStatus.PENDING
            item.error_message = error_message
            item.error_kind = error_kind
            return True

    async def release_claimed_items(self, job_id: UUID) -> int:
        async with self._lock:
            released = 0
            for item_id in self._items_by_job.get(job_id, []):
                item = self._items[item_id]
                if item.status == ItemStatus.PROCESSING:
                    item.status = ItemStatus.PENDING
                    released += 1
            return released

    async def reset_failed_items(self, job_id: UUID, item_ids: Iterable[UUID]) -> int:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return 0
            reset = 0
            for item_id in set(item_ids):
                item = self._items.get(item_id)
                if item is None or item.job_id != job_id:
                    continue
                if item.status != ItemStatus.FAILED:
                    continue
                item.status = ItemStatus.PENDING
                item.attempts = 0
                item.error_message = None
                item.error_kind = None
                item.processed_at = None
                reset += 1
            job.failed_count -= reset
            return reset

    def _apply_status(
        self, job: Job, status: JobStatus, error_message: Optional[str]
    ) -> None:
        job.status = status
        if status == JobStatus.PROCESSING:
            job.started_at = job.started_at or _now()
        else:
            job.paused = False
            job.current_item_ref = None
        if status.is_terminal:
            job.completed_at = _now()
        if error_message is not None:
            job.error_message = error_message
