"""Job and item stores."""

from bulkops.repositories.base import JobStore
from bulkops.repositories.jobs import PostgresJobStore
from bulkops.repositories.memory import MemoryJobStore

__all__ = ["JobStore", "PostgresJobStore", "MemoryJobStore"]
