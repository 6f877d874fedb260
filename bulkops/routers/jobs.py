"""Bulk job endpoints: create, poll, control, retry, export."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from bulkops.jobs.errors import JobError
from bulkops.jobs.export import export_filename
from bulkops.jobs.orchestrator import JobOrchestrator
from bulkops.jobs.types import ItemStatus, JobKind, JobStatus
from bulkops.schemas import (
    CreateJobRequest,
    ItemListResponse,
    ItemResponse,
    JobActiveResponse,
    JobListResponse,
    JobResponse,
    JobSnapshotResponse,
    RetryRequest,
    RetryResponse,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = structlog.get_logger(__name__)


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Get the orchestrator, raising 503 if the app has not started."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job orchestrator not initialized",
        )
    return orchestrator


def _http_error(e: JobError) -> HTTPException:
    logger.info("job_request_rejected", error=e.code, message=e.message)
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Selection matched no items or filters are malformed"},
        503: {"description": "No enrichment client for this kind"},
    },
)
async def create_job(
    body: CreateJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """
    Create a bulk job from a selection.

    The filters are resolved to items once; the item set is fixed afterwards.
    Pass `start: true` to attach a dispatch loop immediately.
    """
    try:
        job = await orchestrator.create(body.kind, body.filters)
        if body.start:
            job = await orchestrator.start(job.id)
    except JobError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    kind: Optional[JobKind] = Query(None, description="Filter by job kind"),
    job_status: Optional[JobStatus] = Query(
        None, alias="status", description="Filter by status"
    ),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobListResponse:
    """List jobs, newest first."""
    jobs, total = await orchestrator.list_jobs(
        kind=kind, status=job_status, limit=limit, offset=offset
    )
    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/retry", response_model=RetryResponse)
async def retry_failed(
    body: RetryRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> RetryResponse:
    """
    Retry failed items.

    Failed items of a finished job are copied into a new follow-on job that
    starts right away. Failed items of a job still processing are reset in
    place.
    """
    try:
        jobs = await orchestrator.retry_failed(
            job_ids=body.job_ids, item_ids=body.item_ids
        )
    except JobError as e:
        raise _http_error(e)
    return RetryResponse(jobs=[JobResponse.from_job(job) for job in jobs])


@router.get(
    "/{job_id}",
    response_model=JobSnapshotResponse,
    responses={404: {"description": "Job not found"}},
)
async def get_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobSnapshotResponse:
    """
    Poll a job's progress.

    `orphaned` is true when the job is processing but no dispatch loop is
    attached (the process that ran it went away); call resume to continue.
    """
    try:
        snapshot = await orchestrator.snapshot(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobSnapshotResponse(**snapshot)


@router.get("/{job_id}/active", response_model=JobActiveResponse)
async def get_job_active(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobActiveResponse:
    """Whether a dispatch loop is attached to the job."""
    try:
        job = await orchestrator.get(job_id)
    except JobError as e:
        raise _http_error(e)
    live = orchestrator.is_live(job_id)
    return JobActiveResponse(
        job_id=job.id,
        status=job.status,
        live=live,
        orphaned=job.status == JobStatus.PROCESSING and not live,
    )


@router.get("/{job_id}/items", response_model=ItemListResponse)
async def list_job_items(
    job_id: UUID,
    item_status: Optional[ItemStatus] = Query(
        None, alias="status", description="Filter by item status"
    ),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ItemListResponse:
    """List a job's items in claim order."""
    try:
        items = await orchestrator.list_items(
            job_id, status=item_status, limit=limit, offset=offset
        )
    except JobError as e:
        raise _http_error(e)
    return ItemListResponse(
        job_id=job_id, items=[ItemResponse.from_item(item) for item in items]
    )


@router.post("/{job_id}/start", response_model=JobResponse)
async def start_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Start a pending job."""
    try:
        job = await orchestrator.start(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Stop claiming new items. In-flight items still finish."""
    try:
        job = await orchestrator.pause(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Resume a paused or orphaned job."""
    try:
        job = await orchestrator.resume(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Cancel a pending or processing job. It ends up failed."""
    try:
        job = await orchestrator.cancel(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@router.post("/{job_id}/restart", response_model=JobResponse)
async def restart_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Start a new job over a finished job's unprocessed items."""
    try:
        job = await orchestrator.restart(job_id)
    except JobError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> None:
    """Delete a job and its items."""
    try:
        await orchestrator.delete(job_id)
    except JobError as e:
        raise _http_error(e)


@router.get("/{job_id}/export")
async def export_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Download completed items and their results as CSV."""
    try:
        job = await orchestrator.get(job_id)
    except JobError as e:
        raise _http_error(e)
    return StreamingResponse(
        orchestrator.export_results(job),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(job)}"'
        },
    )
