"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus

# Payload keys tried, in order, when labelling an item for progress display
LABEL_KEYS = ("company_name", "name", "full_name", "domain", "email")


@dataclass
class Job:
    """A batch run over a fixed set of items."""

    id: UUID
    kind: JobKind
    status: JobStatus
    filters: dict[str, Any] = field(default_factory=dict)

    # Progress counters
    total_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    paused: bool = False
    current_item_ref: Optional[str] = None

    # Relationships
    parent_job_id: Optional[UUID] = None

    # Why the job was cancelled or aborted
    error_message: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def finished_count(self) -> int:
        return self.processed_count + self.failed_count

    @property
    def remaining_count(self) -> int:
        return max(0, self.total_count - self.finished_count)


@dataclass
class Item:
    """One unit of work (account, prospect row, CSV record) owned by a job."""

    id: UUID
    job_id: UUID
    position: int
    payload: dict[str, Any]
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return item_label(self.payload, self.id)


def item_label(payload: dict[str, Any], fallback: Any) -> str:
    """Human-readable reference for an item, used as the job's current item."""
    for key in LABEL_KEYS:
        value = payload.get(key) if isinstance(payload, dict) else None
        if value:
            return str(value)
    return str(fallback)


@dataclass
class ItemOutcome:
    """Terminal result of processing one item."""

    status: ItemStatus
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, result: Optional[dict[str, Any]]) -> "ItemOutcome":
        return cls(status=ItemStatus.COMPLETED, result=result or {})

    @classmethod
    def failure(cls, message: str, kind: ErrorKind) -> "ItemOutcome":
        return cls(status=ItemStatus.FAILED, error_message=message, error_kind=kind)


@dataclass
class JobProgress:
    """Read-only progress snapshot assembled from the job store."""

    job_id: UUID
    kind: JobKind
    status: JobStatus
    paused: bool
    total: int
    processed: int
    failed: int
    current_item: Optional[str]
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobProgress":
        return cls(
            job_id=job.id,
            kind=job.kind,
            status=job.status,
            paused=job.paused,
            total=job.total_count,
            processed=job.processed_count,
            failed=job.failed_count,
            current_item=job.current_item_ref,
            error_message=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed - self.failed)

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return round(100.0 * (self.processed + self.failed) / self.total, 1)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API response."""
        return {
            "job_id": str(self.job_id),
            "kind": self.kind.value,
            "status": self.status.value,
            "paused": self.paused,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "remaining": self.remaining,
            "percent": self.percent,
            "current_item": self.current_item,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
