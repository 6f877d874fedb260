"""Worker scheduler - drives one job's items through the enrichment client."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

import structlog
from prometheus_client import Counter, Gauge, Histogram

from bulkops.config import Settings
from bulkops.core.resilience import RetryConfig, calculate_backoff
from bulkops.jobs.classify import EnrichmentError, classify_error
from bulkops.jobs.errors import AlreadyLive, AlreadyRunning, NotPending, NotProcessing
from bulkops.jobs.liveness import LivenessRegistry, LoopHandle, StopReason
from bulkops.jobs.models import Item, ItemOutcome, Job
from bulkops.jobs.registry import EnrichmentClient
from bulkops.jobs.types import ErrorSeverity, ItemStatus, JobKind, JobStatus
from bulkops.repositories.base import JobStore

logger = structlog.get_logger(__name__)

ITEMS_PROCESSED_TOTAL = Counter(
    "bulkops_items_processed_total",
    "Items that reached a terminal state",
    ["kind", "status"],
)

ITEM_RETRIES_TOTAL = Counter(
    "bulkops_item_retries_total",
    "Items requeued after a transient enrichment failure",
    ["kind", "error_kind"],
)

JOB_LOOPS_ACTIVE = Gauge(
    "bulkops_job_loops_active",
    "Dispatch loops currently attached in this process",
)

ENRICH_LATENCY = Histogram(
    "bulkops_enrichment_latency_seconds",
    "Enrichment call latency in seconds",
    ["kind", "outcome"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)


@dataclass
class SchedulerOptions:
    """Per-loop tuning."""

    concurrency: int = 50
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=30.0
        )
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerOptions":
        return cls(
            concurrency=settings.job_concurrency,
            retry=RetryConfig.for_items(settings),
        )


class WorkerScheduler:
    """Runs the dispatch loop for a single job.

    The loop keeps up to ``concurrency`` enrichment calls in flight. Before
    every claim it checks its stop token and re-reads the job, so a pause or
    cancel written by any caller stops new claims; calls already in flight
    always finish and have their outcome recorded.
    """

    def __init__(
        self,
        job_id: UUID,
        kind: JobKind,
        store: JobStore,
        liveness: LivenessRegistry,
        client: EnrichmentClient,
        options: Optional[SchedulerOptions] = None,
        classifier: Callable[[BaseException], EnrichmentError] = classify_error,
    ):
        self._job_id = job_id
        self._kind = kind
        self._store = store
        self._liveness = liveness
        self._client = client
        self._options = options or SchedulerOptions()
        self._classify = classifier
        self._handle = LoopHandle(job_id=job_id)
        self._log = logger.bind(job_id=str(job_id), kind=kind.value)

    @property
    def handle(self) -> LoopHandle:
        return self._handle

    @property
    def token(self):
        return self._handle.token

    async def attach(self, expected: JobStatus) -> Job:
        """Register this loop and move the job to processing.

        ``expected`` is PENDING for a first start and PROCESSING for a resume.
        A resume also returns items stranded in processing by a dead loop to
        pending before any new claim.
        """
        if not self._liveness.register(self._job_id, self._handle):
            if expected == JobStatus.PENDING:
                raise AlreadyRunning("Job is already running", self._job_id)
            raise AlreadyLive("A dispatch loop is already attached", self._job_id)

        try:
            if expected == JobStatus.PROCESSING:
                released = await self._store.release_claimed_items(self._job_id)
                if released:
                    self._log.info("stranded_items_released", count=released)

            job = await self._store.mark_processing(self._job_id, expected)
        except BaseException:
            self._liveness.unregister(self._job_id, self._handle)
            raise

        if job is None:
            self._liveness.unregister(self._job_id, self._handle)
            if expected == JobStatus.PENDING:
                raise NotPending("Job is no longer pending", self._job_id)
            raise NotProcessing("Job is no longer processing", self._job_id)

        self._log.info(
            "job_loop_attached",
            resumed=expected == JobStatus.PROCESSING,
            concurrency=self._options.concurrency,
            total_count=job.total_count,
        )
        return job

    def launch(self) -> asyncio.Task:
        """Start the dispatch loop as a background task."""
        task = asyncio.create_task(self.run(), name=f"job-loop-{self._job_id}")
        self._handle.task = task
        return task

    async def run(self) -> Optional[StopReason]:
        """Dispatch until the job is exhausted or told to stop.

        Returns the stop reason, or None when every item reached a terminal
        state.
        """
        JOB_LOOPS_ACTIVE.inc()
        try:
            while True:
                reason = await self._dispatch()
                if reason is not None:
                    await self._stop(reason)
                    return reason
                if await self._finish():
                    return None
                # Failed items were reset while the loop was draining
                self._log.info("job_loop_rescan")
        finally:
            self._liveness.unregister(self._job_id, self._handle)
            JOB_LOOPS_ACTIVE.dec()
            self._log.info("job_loop_detached", reason=self.token.reason)

    async def _dispatch(self) -> Optional[StopReason]:
        in_flight: set[asyncio.Task] = set()
        stop: Optional[StopReason] = None

        try:
            while True:
                while stop is None and len(in_flight) < self._options.concurrency:
                    stop = await self._check_stop()
                    if stop is not None:
                        break
                    item = await self._store.claim_next_pending_item(self._job_id)
                    if item is None:
                        break
                    in_flight.add(asyncio.create_task(self._process_item(item)))

                if not in_flight:
                    return stop

                done, in_flight = await asyncio.wait(
                    in_flight, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    await self._collect(task)

                if stop is None and self.token.is_set:
                    stop = self.token.reason
        finally:
            if in_flight:
                # Only reached when the loop itself is failing or cancelled
                for task in in_flight:
                    task.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _check_stop(self) -> Optional[StopReason]:
        if self.token.is_set:
            return self.token.reason

        job = await self._store.get_job(self._job_id)
        if job is None:
            return StopReason.DELETED
        if job.status != JobStatus.PROCESSING:
            return StopReason.CANCELLED
        if job.paused:
            return StopReason.PAUSED
        return None

    async def _process_item(self, item: Item) -> None:
        log = self._log.bind(item_id=str(item.id), attempt=item.attempts)
        started = time.monotonic()
        try:
            result = await self._client.enrich(item.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ENRICH_LATENCY.labels(kind=self._kind.value, outcome="error").observe(
                time.monotonic() - started
            )
            await self._handle_failure(item, self._classify(e), log)
            return

        ENRICH_LATENCY.labels(kind=self._kind.value, outcome="success").observe(
            time.monotonic() - started
        )
        if not isinstance(result, dict):
            result = {"value": result}
        recorded = await self._store.record_item_outcome(
            item.id, ItemOutcome.success(result)
        )
        if recorded is None:
            log.warning("item_outcome_dropped")
            return
        ITEMS_PROCESSED_TOTAL.labels(
            kind=self._kind.value, status=ItemStatus.COMPLETED.value
        ).inc()
        log.debug("item_completed")

    async def _handle_failure(self, item: Item, error: EnrichmentError, log) -> None:
        severity = error.kind.severity
        retry = self._options.retry

        if severity == ErrorSeverity.TRANSIENT and item.attempts < retry.max_attempts:
            delay = calculate_backoff(item.attempts - 1, retry)
            ITEM_RETRIES_TOTAL.labels(
                kind=self._kind.value, error_kind=error.kind.value
            ).inc()
            log.info(
                "item_retry_scheduled",
                error_kind=error.kind.value,
                error=error.message,
                delay_seconds=round(delay, 2),
                max_attempts=retry.max_attempts,
            )
            # A stop signal cuts the wait short; the item goes back to pending
            await self.token.sleep(delay)
            await self._store.requeue_item(item.id, error.message, error.kind)
            return

        recorded = await self._store.record_item_outcome(
            item.id, ItemOutcome.failure(error.message, error.kind)
        )
        if recorded is not None:
            ITEMS_PROCESSED_TOTAL.labels(
                kind=self._kind.value, status=ItemStatus.FAILED.value
            ).inc()
        log.warning(
            "item_failed",
            error_kind=error.kind.value,
            error=error.message,
            severity=severity.value,
        )

        if severity == ErrorSeverity.JOB:
            await self._abort(error.message)

    async def _collect(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self._log.error(
            "item_task_crashed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        await self._abort(f"Internal error: {exc}")

    async def _abort(self, message: str) -> None:
        """Stop claiming and fail the job; in-flight items still drain."""
        if self.token.reason == StopReason.ABORTED:
            return
        self.token.abort(message)
        job = await self._store.set_job_status(
            self._job_id,
            JobStatus.FAILED,
            expected=[JobStatus.PROCESSING],
            error_message=message,
        )
        self._log.error("job_aborted", error=message, marked_failed=job is not None)

    async def _stop(self, reason: StopReason) -> None:
        if reason in (StopReason.CANCELLED, StopReason.ABORTED):
            job = await self._store.set_job_status(
                self._job_id,
                JobStatus.FAILED,
                expected=[JobStatus.PROCESSING],
                error_message=self.token.detail or "Cancelled",
            )
            self._log.info(
                "job_loop_stopped", reason=reason.value, marked_failed=job is not None
            )
            return
        # Paused, detached and deleted jobs keep their persisted status
        self._log.info("job_loop_stopped", reason=reason.value)

    async def _finish(self) -> bool:
        """Complete the job. False if pending items reappeared meanwhile."""
        job = await self._store.complete_job(self._job_id)
        if job is not None:
            self._log.info(
                "job_completed",
                processed_count=job.processed_count,
                failed_count=job.failed_count,
                total_count=job.total_count,
            )
            return True

        pending = await self._store.get_items(
            job_id=self._job_id, status=ItemStatus.PENDING, limit=1
        )
        if pending and not self.token.is_set:
            return False

        current = await self._store.get_job(self._job_id)
        self._log.warning(
            "job_completion_skipped",
            status=current.status.value if current else None,
        )
        return True
