"""API routers."""

from bulkops.routers import health, jobs, metrics

__all__ = ["health", "jobs", "metrics"]
