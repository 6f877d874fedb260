"""Job system package."""

from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus
from bulkops.jobs.models import Item, ItemOutcome, Job, JobProgress
from bulkops.jobs.errors import JobError
from bulkops.jobs.liveness import LivenessRegistry
from bulkops.jobs.registry import EnrichmentClient, EnrichmentRegistry
from bulkops.jobs.orchestrator import JobOrchestrator
from bulkops.jobs.scheduler import SchedulerOptions, WorkerScheduler

__all__ = [
    "ErrorKind",
    "ItemStatus",
    "JobKind",
    "JobStatus",
    "Item",
    "ItemOutcome",
    "Job",
    "JobProgress",
    "JobError",
    "LivenessRegistry",
    "EnrichmentClient",
    "EnrichmentRegistry",
    "JobOrchestrator",
    "SchedulerOptions",
    "WorkerScheduler",
]
