"""Job/item store contract.

The scheduler depends on three operations being atomic under concurrent
calls from the in-flight tasks of one job: ``claim_next_pending_item``,
``record_item_outcome`` and the conditional status updates.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional
from uuid import UUID

from bulkops.jobs.models import Item, ItemOutcome, Job
from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus


class JobStore(ABC):
    """Durable record of jobs and their items."""

    @abstractmethod
    async def create_job(
        self,
        kind: JobKind,
        filters: dict[str, Any],
        payloads: list[dict[str, Any]],
        parent_job_id: Optional[UUID] = None,
    ) -> Job:
        """Create a pending job with one pending item per payload."""

    @abstractmethod
    async def get_job(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""

    @abstractmethod
    async def list_jobs(
        self,
        kind: Optional[JobKind] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first. Returns (jobs, total count)."""

    @abstractmethod
    async def delete_job(self, job_id: UUID) -> bool:
        """Delete a job and its items."""

    @abstractmethod
    async def get_items(
        self,
        job_id: Optional[UUID] = None,
        status: Optional[ItemStatus] = None,
        item_ids: Optional[Iterable[UUID]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Item]:
        """List items in claim order, filtered by job, status and/or ids."""

    @abstractmethod
    async def set_job_status(
        self,
        job_id: UUID,
        status: JobStatus,
        expected: Optional[Iterable[JobStatus]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Job]:
        """Move a job to ``status`` if its current status is in ``expected``.

        Returns the updated job, or None when the job is missing or the
        precondition failed. Terminal statuses stamp ``completed_at``;
        leaving ``processing`` clears ``paused`` and ``current_item_ref``.
        """

    @abstractmethod
    async def mark_processing(
        self, job_id: UUID, expected: JobStatus
    ) -> Optional[Job]:
        """Attach transition: status -> processing, paused cleared."""

    @abstractmethod
    async def complete_job(self, job_id: UUID) -> Optional[Job]:
        """processing -> completed, only when every item is accounted for."""

    @abstractmethod
    async def set_paused(self, job_id: UUID, paused: bool) -> Optional[Job]:
        """Set the pause flag. Only applies while the job is processing."""

    @abstractmethod
    async def claim_next_pending_item(self, job_id: UUID) -> Optional[Item]:
        """Atomically claim the next pending item (insertion order).

        The item becomes ``processing`` with ``attempts`` incremented, and the
        job's ``current_item_ref`` points at it. Returns None if exhausted.
        """

    @abstractmethod
    async def record_item_outcome(
        self, item_id: UUID, outcome: ItemOutcome
    ) -> Optional[Job]:
        """Store an item's terminal outcome and bump the job counter.

        Both writes happen in one transaction. A no-op returning None unless
        the item is currently ``processing``.
        """

    @abstractmethod
    async def requeue_item(
        self,
        item_id: UUID,
        error_message: str,
        error_kind: ErrorKind,
    ) -> bool:
        """Return a processing item to pending after a transient failure."""

    @abstractmethod
    async def release_claimed_items(self, job_id: UUID) -> int:
        """Return items stranded in ``processing`` to ``pending``.

        Only safe when no dispatch loop is attached to the job.
        """

    @abstractmethod
    async def reset_failed_items(self, job_id: UUID, item_ids: Iterable[UUID]) -> int:
        """Reset failed items to pending in place, decrementing failed_count."""
