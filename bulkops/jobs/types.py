"""Job system type definitions."""

from enum import Enum


class JobKind(str, Enum):
    """Bulk operations that run through the orchestrator."""

    RESEARCH = "research"
    CATEGORIZATION = "categorization"
    PREPROCESSING = "preprocessing"
    EMPLOYEE_COUNT = "employee_count"
    TRIAGE = "triage"
    PROSPECT_PROCESSING = "prospect_processing"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ItemStatus(str, Enum):
    """Item lifecycle statuses."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class ErrorSeverity(str, Enum):
    """How far an enrichment failure propagates."""

    TRANSIENT = "transient"  # retry the item with backoff
    ITEM = "item"  # fail this item, keep the job going
    JOB = "job"  # abort the whole job


class ErrorKind(str, Enum):
    """Classified enrichment failures."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    MODEL_UNAVAILABLE = "model_unavailable"
    NETWORK = "network"
    DNS = "dns"
    SERVER_ERROR = "server_error"
    INVALID_INPUT = "invalid_input"
    UNKNOWN = "unknown"

    @property
    def severity(self) -> ErrorSeverity:
        if self in _JOB_FATAL:
            return ErrorSeverity.JOB
        if self in _TRANSIENT:
            return ErrorSeverity.TRANSIENT
        return ErrorSeverity.ITEM


_JOB_FATAL = frozenset(
    {
        ErrorKind.AUTH,
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.NOT_FOUND,
        ErrorKind.MODEL_UNAVAILABLE,
    }
)
_TRANSIENT = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK,
        ErrorKind.DNS,
        ErrorKind.SERVER_ERROR,
    }
)
