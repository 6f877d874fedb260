"""Pydantic models for request/response validation."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from bulkops.jobs.classify import humanize_error
from bulkops.jobs.models import Item, Job
from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus


class CreateJobRequest(BaseModel):
    """Request to create a bulk job."""

    kind: JobKind = Field(..., description="Bulk operation to run")
    filters: dict[str, Any] = Field(
        default_factory=dict,
        description="Selection filters; resolved to items once, at creation",
    )
    start: bool = Field(default=False, description="Start the job right away")


class RetryRequest(BaseModel):
    """Request to retry failed items."""

    job_ids: Optional[list[UUID]] = Field(
        None, description="Retry every failed item of these jobs"
    )
    item_ids: Optional[list[UUID]] = Field(
        None, description="Retry only these failed items"
    )


class JobResponse(BaseModel):
    """A job row."""

    id: UUID
    kind: JobKind
    status: JobStatus
    paused: bool
    filters: dict[str, Any]
    total_count: int
    processed_count: int
    failed_count: int
    current_item_ref: Optional[str] = None
    parent_job_id: Optional[UUID] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            kind=job.kind,
            status=job.status,
            paused=job.paused,
            filters=job.filters,
            total_count=job.total_count,
            processed_count=job.processed_count,
            failed_count=job.failed_count,
            current_item_ref=job.current_item_ref,
            parent_job_id=job.parent_job_id,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    """Paginated job list."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobSnapshotResponse(BaseModel):
    """Progress snapshot for polling clients."""

    job_id: UUID
    kind: JobKind
    status: JobStatus
    paused: bool
    total: int
    processed: int
    failed: int
    remaining: int
    percent: float = Field(..., description="Finished items as a percentage (0-100)")
    current_item: Optional[str] = None
    error_message: Optional[str] = None
    parent_job_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    live: bool = Field(..., description="A dispatch loop is attached in this process")
    orphaned: bool = Field(
        ..., description="Processing with no attached loop; needs a resume"
    )
    poll_interval_s: float


class JobActiveResponse(BaseModel):
    """Liveness of a job's dispatch loop."""

    job_id: UUID
    status: JobStatus
    live: bool
    orphaned: bool


class ItemResponse(BaseModel):
    """A job item."""

    id: UUID
    job_id: UUID
    position: int
    label: str
    payload: dict[str, Any]
    status: ItemStatus
    attempts: int
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_hint: Optional[str] = Field(
        None, description="Operator-facing explanation of the error"
    )
    result: Optional[dict[str, Any]] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: Item) -> "ItemResponse":
        return cls(
            id=item.id,
            job_id=item.job_id,
            position=item.position,
            label=item.label,
            payload=item.payload,
            status=item.status,
            attempts=item.attempts,
            error_message=item.error_message,
            error_kind=item.error_kind,
            error_hint=(
                humanize_error(item.error_message, item.error_kind)
                if item.error_message
                else None
            ),
            result=item.result,
            processed_at=item.processed_at,
        )


class ItemListResponse(BaseModel):
    """Items of one job."""

    job_id: UUID
    items: list[ItemResponse]


class RetryResponse(BaseModel):
    """Jobs touched by a retry: follow-on jobs or jobs retried in place."""

    jobs: list[JobResponse]


class DependencyHealth(BaseModel):
    """Health status for a dependency."""

    status: str = Field(..., description="Dependency status (ok/error/disabled)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status")
    store_backend: str = Field(..., description="Job store backend in use")
    database: DependencyHealth = Field(..., description="Job store database health")
    enrichment_kinds: list[JobKind] = Field(
        ..., description="Job kinds with a registered enrichment client"
    )
    live_jobs: int = Field(..., description="Dispatch loops attached in this process")
    circuit: dict[str, Any] = Field(..., description="Database circuit breaker state")
    version: str = Field(..., description="Service version")
