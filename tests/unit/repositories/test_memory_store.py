"""Tests for the in-process job store."""

import asyncio

import pytest

from bulkops.jobs.models import ItemOutcome
from bulkops.jobs.types import ErrorKind, ItemStatus, JobKind, JobStatus
from bulkops.repositories.memory import MemoryJobStore


def payloads(count):
    return [{"company_name": f"Company {n}"} for n in range(1, count + 1)]


async def processing_job(store, count=5):
    job = await store.create_job(JobKind.RESEARCH, {"source": "upload"}, payloads(count))
    await store.mark_processing(job.id, JobStatus.PENDING)
    return job


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_job_with_items(self):
        store = MemoryJobStore()
        job = await store.create_job(JobKind.TRIAGE, {"list": 7}, payloads(3))

        assert job.status == JobStatus.PENDING
        assert job.total_count == 3
        items = await store.get_items(job_id=job.id)
        assert [i.position for i in items] == [0, 1, 2]
        assert all(i.status == ItemStatus.PENDING for i in items)

    @pytest.mark.asyncio
    async def test_returned_objects_are_copies(self):
        store = MemoryJobStore()
        job = await store.create_job(JobKind.TRIAGE, {}, payloads(1))
        job.processed_count = 99

        assert (await store.get_job(job.id)).processed_count == 0

    @pytest.mark.asyncio
    async def test_list_jobs_filters_and_pages(self):
        store = MemoryJobStore()
        for _ in range(3):
            await store.create_job(JobKind.RESEARCH, {}, payloads(1))
        await store.create_job(JobKind.TRIAGE, {}, payloads(1))

        jobs, total = await store.list_jobs(kind=JobKind.RESEARCH, limit=2)
        assert total == 3
        assert len(jobs) == 2

        jobs, total = await store.list_jobs(status=JobStatus.PROCESSING)
        assert (jobs, total) == ([], 0)

    @pytest.mark.asyncio
    async def test_get_items_by_ids_and_status(self):
        store = MemoryJobStore()
        job = await processing_job(store)
        first = await store.claim_next_pending_item(job.id)

        assert [i.id for i in await store.get_items(item_ids=[first.id])] == [first.id]
        processing = await store.get_items(job_id=job.id, status=ItemStatus.PROCESSING)
        assert [i.id for i in processing] == [first.id]
        assert len(await store.get_items(job_id=job.id, limit=2, offset=1)) == 2

    @pytest.mark.asyncio
    async def test_delete_cascades(self):
        store = MemoryJobStore()
        job = await store.create_job(JobKind.RESEARCH, {}, payloads(2))

        assert await store.delete_job(job.id)
        assert await store.get_job(job.id) is None
        assert await store.get_items(job_id=job.id) == []
        assert not await store.delete_job(job.id)


class TestClaim:
    @pytest.mark.asyncio
    async def test_claims_lowest_position_and_sets_current_item(self):
        store = MemoryJobStore()
        job = await processing_job(store)

        item = await store.claim_next_pending_item(job.id)

        assert item.position == 0
        assert item.status == ItemStatus.PROCESSING
        assert item.attempts == 1
        assert (await store.get_job(job.id)).current_item_ref == "Company 1"

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_overlap(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=10)

        claimed = await asyncio.gather(
            *(store.claim_next_pending_item(job.id) for _ in range(20))
        )

        ids = [item.id for item in claimed if item is not None]
        assert len(ids) == 10
        assert len(set(ids)) == 10

    @pytest.mark.asyncio
    async def test_claim_exhausted(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=1)
        await store.claim_next_pending_item(job.id)

        assert await store.claim_next_pending_item(job.id) is None


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_record_success_and_failure(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=2)
        first = await store.claim_next_pending_item(job.id)
        second = await store.claim_next_pending_item(job.id)

        await store.record_item_outcome(first.id, ItemOutcome.success({"ok": True}))
        updated = await store.record_item_outcome(
            second.id, ItemOutcome.failure("401 Unauthorized", ErrorKind.AUTH)
        )

        assert updated.processed_count == 1
        assert updated.failed_count == 1
        failed = (await store.get_items(item_ids=[second.id]))[0]
        assert failed.error_kind == ErrorKind.AUTH
        assert failed.processed_at is not None

    @pytest.mark.asyncio
    async def test_outcome_recorded_once(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=1)
        item = await store.claim_next_pending_item(job.id)

        assert await store.record_item_outcome(item.id, ItemOutcome.success({}))
        assert await store.record_item_outcome(item.id, ItemOutcome.success({})) is None
        assert (await store.get_job(job.id)).processed_count == 1

    @pytest.mark.asyncio
    async def test_requeue_keeps_attempts(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=1)
        item = await store.claim_next_pending_item(job.id)

        assert await store.requeue_item(item.id, "429", ErrorKind.RATE_LIMIT)
        again = await store.claim_next_pending_item(job.id)
        assert again.id == item.id
        assert again.attempts == 2
        assert again.error_kind == ErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_release_claimed_items(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=3)
        await store.claim_next_pending_item(job.id)
        await store.claim_next_pending_item(job.id)

        assert await store.release_claimed_items(job.id) == 2
        pending = await store.get_items(job_id=job.id, status=ItemStatus.PENDING)
        assert len(pending) == 3

    @pytest.mark.asyncio
    async def test_reset_failed_items(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=2)
        item = await store.claim_next_pending_item(job.id)
        await store.record_item_outcome(
            item.id, ItemOutcome.failure("bad", ErrorKind.INVALID_INPUT)
        )

        assert await store.reset_failed_items(job.id, [item.id]) == 1
        assert await store.reset_failed_items(job.id, [item.id]) == 0
        reset = (await store.get_items(item_ids=[item.id]))[0]
        assert reset.status == ItemStatus.PENDING
        assert reset.attempts == 0
        assert reset.error_message is None
        assert (await store.get_job(job.id)).failed_count == 0


class TestJobStatus:
    @pytest.mark.asyncio
    async def test_conditional_status_change(self):
        store = MemoryJobStore()
        job = await store.create_job(JobKind.RESEARCH, {}, payloads(1))

        assert (
            await store.set_job_status(
                job.id, JobStatus.FAILED, expected=[JobStatus.PROCESSING]
            )
            is None
        )
        failed = await store.set_job_status(
            job.id, JobStatus.FAILED, expected=[JobStatus.PENDING], error_message="x"
        )
        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "x"
        assert failed.completed_at is not None

    @pytest.mark.asyncio
    async def test_leaving_processing_clears_pause(self):
        store = MemoryJobStore()
        job = await processing_job(store)
        await store.set_paused(job.id, True)

        failed = await store.set_job_status(job.id, JobStatus.FAILED)

        assert failed.paused is False
        assert failed.current_item_ref is None

    @pytest.mark.asyncio
    async def test_pause_requires_processing(self):
        store = MemoryJobStore()
        job = await store.create_job(JobKind.RESEARCH, {}, payloads(1))
        assert await store.set_paused(job.id, True) is None

    @pytest.mark.asyncio
    async def test_mark_processing_clears_pause(self):
        store = MemoryJobStore()
        job = await processing_job(store)
        await store.set_paused(job.id, True)

        resumed = await store.mark_processing(job.id, JobStatus.PROCESSING)

        assert resumed.paused is False
        assert await store.mark_processing(job.id, JobStatus.PENDING) is None

    @pytest.mark.asyncio
    async def test_complete_requires_every_item_finished(self):
        store = MemoryJobStore()
        job = await processing_job(store, count=2)
        item = await store.claim_next_pending_item(job.id)
        await store.record_item_outcome(item.id, ItemOutcome.success({}))

        assert await store.complete_job(job.id) is None

        item = await store.claim_next_pending_item(job.id)
        await store.record_item_outcome(
            item.id, ItemOutcome.failure("bad", ErrorKind.UNKNOWN)
        )
        completed = await store.complete_job(job.id)
        assert completed.status == JobStatus.COMPLETED
        assert completed.processed_count + completed.failed_count == completed.total_count
