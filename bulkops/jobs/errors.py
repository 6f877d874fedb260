"""Lifecycle errors raised by the job orchestrator.

Every illegal transition raises; nothing is silently ignored. ``status_code``
is the HTTP status the API layer answers with.
"""

from typing import Optional
from uuid import UUID


class JobError(Exception):
    """Base class for orchestrator errors."""

    status_code: int = 409
    code: str = "job_error"

    def __init__(self, message: str, job_id: Optional[UUID] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "job_id": str(self.job_id) if self.job_id else None,
        }


class JobNotFound(JobError):
    status_code = 404
    code = "job_not_found"

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found", job_id)


class EmptySelection(JobError):
    status_code = 400
    code = "empty_selection"


class NothingToRetry(JobError):
    status_code = 400
    code = "nothing_to_retry"


class AlreadyRunning(JobError):
    code = "already_running"


class AlreadyLive(JobError):
    code = "already_live"


class NotPending(JobError):
    code = "not_pending"


class NotProcessing(JobError):
    code = "not_processing"


class NotCancellable(JobError):
    code = "not_cancellable"


class NotTerminal(JobError):
    code = "not_terminal"


class NoEnrichmentClient(JobError):
    status_code = 503
    code = "no_enrichment_client"
