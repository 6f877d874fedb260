"""bulkops - Resumable Batch Job Orchestrator

Fans bulk sales-research operations (account research, categorization,
employee counts, prospect processing, triage) out to an enrichment service
with durable per-item progress, pause/resume/cancel, and restart recovery.
"""

__version__ = "0.1.0"
