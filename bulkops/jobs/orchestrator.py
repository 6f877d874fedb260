"""Job orchestrator - the lifecycle API shared by every bulk operation.

Creates jobs from filters, attaches dispatch loops, and translates
operator actions (pause, resume, cancel, retry, restart) into store writes
and stop signals. Progress reads come from the store only; whether a loop is
attached comes from the liveness registry.
"""

import asyncio
from typing import Any, AsyncIterator, Iterable, Optional
from uuid import UUID

import structlog

from bulkops.jobs.errors import (
    AlreadyLive,
    AlreadyRunning,
    EmptySelection,
    JobError,
    JobNotFound,
    NoEnrichmentClient,
    NotCancellable,
    NotPending,
    NotProcessing,
    NotTerminal,
    NothingToRetry,
)
from bulkops.jobs.export import iter_results_csv
from bulkops.jobs.liveness import LivenessRegistry
from bulkops.jobs.models import Item, Job, JobProgress
from bulkops.jobs.registry import EnrichmentClient, EnrichmentRegistry
from bulkops.jobs.resolvers import FilterResolver
from bulkops.jobs.scheduler import SchedulerOptions, WorkerScheduler
from bulkops.jobs.types import ItemStatus, JobKind, JobStatus
from bulkops.repositories.base import JobStore

logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by operator"
RECOVERY_PAGE_SIZE = 100


class JobOrchestrator:
    """Lifecycle operations over jobs and their dispatch loops."""

    def __init__(
        self,
        store: JobStore,
        liveness: LivenessRegistry,
        registry: EnrichmentRegistry,
        resolver: FilterResolver,
        options: Optional[SchedulerOptions] = None,
        poll_interval_s: float = 3.0,
    ):
        self._store = store
        self._liveness = liveness
        self._registry = registry
        self._resolver = resolver
        self._options = options or SchedulerOptions()
        self._poll_interval_s = poll_interval_s
        # Clients supplied at creation; follow-on jobs inherit them. An entry
        # lives until its job is deleted or completes with nothing to retry.
        self._job_clients: dict[UUID, EnrichmentClient] = {}
        self._releases: set[asyncio.Task] = set()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def liveness(self) -> LivenessRegistry:
        return self._liveness

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create(
        self,
        kind: JobKind,
        filters: dict[str, Any],
        client: Optional[EnrichmentClient] = None,
    ) -> Job:
        """Resolve the selection and persist a pending job with its items.

        Raises:
            EmptySelection: The filters match no items.
        """
        payloads = await self._resolver.resolve(kind, filters)
        if not payloads:
            raise EmptySelection("Selection matched no items")

        job = await self._store.create_job(kind, filters, payloads)
        if client is not None:
            self._job_clients[job.id] = client
        return job

    async def get(self, job_id: UUID) -> Job:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(
        self,
        kind: Optional[JobKind] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        return await self._store.list_jobs(
            kind=kind, status=status, limit=limit, offset=offset
        )

    async def list_items(
        self,
        job_id: UUID,
        status: Optional[ItemStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Item]:
        await self.get(job_id)
        return await self._store.get_items(
            job_id=job_id, status=status, limit=limit, offset=offset
        )

    def is_live(self, job_id: UUID) -> bool:
        return self._liveness.is_live(job_id)

    async def is_orphaned(self, job_id: UUID) -> bool:
        """True when the job claims to be processing but no loop is attached."""
        job = await self.get(job_id)
        return job.status == JobStatus.PROCESSING and not self.is_live(job_id)

    async def progress(self, job_id: UUID) -> JobProgress:
        return JobProgress.from_job(await self.get(job_id))

    async def snapshot(self, job_id: UUID) -> dict[str, Any]:
        """Progress plus liveness, for polling clients."""
        job = await self.get(job_id)
        live = self.is_live(job_id)
        data = JobProgress.from_job(job).to_dict()
        data.update(
            {
                "parent_job_id": str(job.parent_job_id) if job.parent_job_id else None,
                "started_at": job.started_at.isoformat() if job.started_at else None,
                "live": live,
                "orphaned": job.status == JobStatus.PROCESSING and not live,
                "poll_interval_s": self._poll_interval_s,
            }
        )
        return data

    def export_results(self, job: Job) -> AsyncIterator[str]:
        return iter_results_csv(self._store, job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, job_id: UUID) -> Job:
        """Attach a dispatch loop to a pending job.

        Raises:
            AlreadyRunning: A loop is already attached.
            NotPending: The job has left pending.
        """
        job = await self.get(job_id)
        if self.is_live(job_id):
            raise AlreadyRunning("Job is already running", job_id)
        if job.status != JobStatus.PENDING:
            raise NotPending(f"Job is {job.status.value}, expected pending", job_id)
        return await self._attach(job, JobStatus.PENDING)

    async def pause(self, job_id: UUID) -> Job:
        """Stop claiming new items; in-flight items finish. Idempotent."""
        job = await self.get(job_id)
        if job.status != JobStatus.PROCESSING:
            raise NotProcessing(
                f"Job is {job.status.value}, only processing jobs can be paused", job_id
            )
        if job.paused:
            return job

        updated = await self._store.set_paused(job_id, True)
        if updated is None:
            raise NotProcessing("Job stopped processing before it could be paused", job_id)

        handle = self._liveness.get(job_id)
        if handle is not None:
            handle.token.pause()
        logger.info("job_paused", job_id=str(job_id), live=handle is not None)
        return updated

    async def resume(self, job_id: UUID) -> Job:
        """Attach a new loop to a paused or orphaned processing job.

        Raises:
            NotProcessing: The job is not processing.
            AlreadyLive: A loop is still attached (possibly still draining).
        """
        job = await self.get(job_id)
        if job.status != JobStatus.PROCESSING:
            raise NotProcessing(
                f"Job is {job.status.value}, only processing jobs can be resumed", job_id
            )
        if self.is_live(job_id):
            raise AlreadyLive("A dispatch loop is still attached to this job", job_id)
        return await self._attach(job, JobStatus.PROCESSING)

    async def cancel(self, job_id: UUID) -> Job:
        """Mark a pending or processing job failed and signal its loop."""
        job = await self.get(job_id)
        if job.status.is_terminal:
            raise NotCancellable(f"Job is already {job.status.value}", job_id)

        updated = await self._store.set_job_status(
            job_id,
            JobStatus.FAILED,
            expected=[JobStatus.PENDING, JobStatus.PROCESSING],
            error_message=CANCELLED_MESSAGE,
        )
        if updated is None:
            raise NotCancellable("Job finished before it could be cancelled", job_id)

        handle = self._liveness.get(job_id)
        if handle is not None:
            handle.token.cancel(CANCELLED_MESSAGE)
        logger.info(
            "job_cancelled",
            job_id=str(job_id),
            previous_status=job.status.value,
            live=handle is not None,
        )
        return updated

    async def retry_failed(
        self,
        job_ids: Optional[Iterable[UUID]] = None,
        item_ids: Optional[Iterable[UUID]] = None,
    ) -> list[Job]:
        """Retry failed items.

        Items of a finished job go into a new follow-on job, which is started.
        Items of a processing job are reset to pending in place and the job is
        resumed if nothing is driving it.

        Raises:
            NothingToRetry: No failed items match.
        """
        job_ids = list(job_ids) if job_ids is not None else None
        item_ids = list(item_ids) if item_ids is not None else None
        if not job_ids and not item_ids:
            raise NothingToRetry("Select at least one job or item to retry")

        failed: list[Item] = []
        if item_ids:
            failed = await self._store.get_items(
                status=ItemStatus.FAILED, item_ids=item_ids
            )
            if job_ids:
                wanted = set(job_ids)
                failed = [item for item in failed if item.job_id in wanted]
        else:
            for job_id in job_ids or []:
                await self.get(job_id)
                failed.extend(
                    await self._store.get_items(job_id=job_id, status=ItemStatus.FAILED)
                )

        by_job: dict[UUID, list[Item]] = {}
        for item in failed:
            by_job.setdefault(item.job_id, []).append(item)

        jobs: list[Job] = []
        for job_id, items in by_job.items():
            job = await self._store.get_job(job_id)
            if job is None:
                continue
            if job.status.is_terminal:
                jobs.append(await self._retry_as_follow_on(job, items))
            elif job.status == JobStatus.PROCESSING:
                retried = await self._retry_in_place(job, items)
                if retried is not None:
                    jobs.append(retried)

        if not jobs:
            raise NothingToRetry("No failed items to retry")
        return jobs

    async def restart(self, job_id: UUID) -> Job:
        """Start a new job over a finished job's unprocessed items.

        Raises:
            NotTerminal: The job has not finished.
            AlreadyLive: The job's loop is still draining.
            EmptySelection: Every item already reached a terminal state.
        """
        job = await self.get(job_id)
        if not job.status.is_terminal:
            raise NotTerminal(
                f"Job is {job.status.value}, only finished jobs can be restarted", job_id
            )
        if self.is_live(job_id):
            raise AlreadyLive("Job is still draining in-flight items", job_id)

        items = await self._store.get_items(job_id=job_id)
        # Items left processing by a dead loop will never finish either
        leftover = [item for item in items if not item.status.is_terminal]
        if not leftover:
            raise EmptySelection("Job has no unprocessed items to restart", job_id)

        restarted = await self._create_follow_on(
            job, leftover, {"restart_of": str(job.id)}
        )
        logger.info(
            "job_restarted",
            job_id=str(job.id),
            new_job_id=str(restarted.id),
            item_count=len(leftover),
        )
        return await self.start(restarted.id)

    async def delete(self, job_id: UUID) -> None:
        """Delete a job and its items. Refused while a loop is attached."""
        await self.get(job_id)
        if self.is_live(job_id):
            raise AlreadyLive("Pause or cancel the job before deleting it", job_id)
        if not await self._store.delete_job(job_id):
            raise JobNotFound(job_id)
        self._job_clients.pop(job_id, None)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def recover_orphans(self, auto_resume: bool = False) -> list[Job]:
        """Find processing jobs with no attached loop, optionally resuming them."""
        orphans: list[Job] = []
        offset = 0
        while True:
            page, total = await self._store.list_jobs(
                status=JobStatus.PROCESSING, limit=RECOVERY_PAGE_SIZE, offset=offset
            )
            orphans.extend(job for job in page if not self.is_live(job.id))
            offset += len(page)
            if not page or offset >= total:
                break

        for job in orphans:
            logger.warning(
                "job_orphaned",
                job_id=str(job.id),
                kind=job.kind.value,
                paused=job.paused,
                remaining=job.remaining_count,
            )
            if not auto_resume or job.paused:
                continue
            try:
                await self.resume(job.id)
            except JobError as e:
                logger.warning(
                    "orphan_resume_failed", job_id=str(job.id), error=e.message
                )

        return orphans

    async def join(self, job_id: UUID) -> Job:
        """Wait for the job's loop (if any) to exit and return the job."""
        handle = self._liveness.get(job_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait([handle.task])
        return await self.get(job_id)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Detach every loop and wait for in-flight items to drain.

        Jobs keep status processing and show up as orphaned in the next
        process.
        """
        handles = self._liveness.handles()
        for handle in handles:
            handle.token.detach()

        tasks = [h.task for h in handles if h.task is not None]
        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("job_loops_shutdown", drained=len(done), cancelled=len(pending))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _client_for(self, job: Job) -> EnrichmentClient:
        client = self._job_clients.get(job.id) or self._registry.find(job.kind)
        if client is None:
            raise NoEnrichmentClient(
                f"No enrichment client registered for job kind: {job.kind.value}",
                job.id,
            )
        return client

    async def _attach(self, job: Job, expected: JobStatus) -> Job:
        scheduler = WorkerScheduler(
            job.id,
            job.kind,
            self._store,
            self._liveness,
            self._client_for(job),
            self._options,
        )
        attached = await scheduler.attach(expected)
        task = scheduler.launch()
        task.add_done_callback(lambda t, job_id=job.id: self._on_loop_done(job_id, t))
        return attached

    def _on_loop_done(self, job_id: UUID, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("job_loop_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "job_loop_crashed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )
        if job_id in self._job_clients:
            release = asyncio.create_task(self._release_client(job_id))
            self._releases.add(release)
            release.add_done_callback(self._releases.discard)

    async def _release_client(self, job_id: UUID) -> None:
        """Forget an injected client once its job has no retry or restart path."""
        try:
            job = await self._store.get_job(job_id)
        except Exception as e:
            logger.warning("job_client_release_failed", job_id=str(job_id), error=str(e))
            return
        if job is None or (job.status == JobStatus.COMPLETED and job.failed_count == 0):
            self._job_clients.pop(job_id, None)
            logger.debug("job_client_released", job_id=str(job_id))

    async def _create_follow_on(
        self, job: Job, items: list[Item], filters: dict[str, Any]
    ) -> Job:
        follow_on = await self._store.create_job(
            job.kind,
            filters,
            [item.payload for item in items],
            parent_job_id=job.id,
        )
        client = self._job_clients.get(job.id)
        if client is not None:
            self._job_clients[follow_on.id] = client
        return follow_on

    async def _retry_as_follow_on(self, job: Job, items: list[Item]) -> Job:
        follow_on = await self._create_follow_on(
            job,
            items,
            {"retry_of": str(job.id), "item_ids": [str(item.id) for item in items]},
        )
        logger.info(
            "job_retry_created",
            job_id=str(job.id),
            new_job_id=str(follow_on.id),
            item_count=len(items),
        )
        return await self.start(follow_on.id)

    async def _retry_in_place(self, job: Job, items: list[Item]) -> Optional[Job]:
        reset = await self._store.reset_failed_items(job.id, [item.id for item in items])
        logger.info("job_items_reset", job_id=str(job.id), count=reset)
        if reset == 0:
            return None
        if not job.paused and not self.is_live(job.id):
            return await self.resume(job.id)
        return await self.get(job.id)
