"""Job API endpoints.

This module implements the credit-gated job surface:
- POST /api/jobs/training - Reserve credits and start LoRA training
- POST /api/jobs/generation - Reserve credits and start image generation
- GET /api/jobs - List the account's jobs
- GET /api/jobs/{job_id} - Persisted job state
- GET /api/jobs/{job_id}/progress - Live progress as Server-Sent Events

Start endpoints return 202 as soon as the reservation and job row are
committed; the work itself runs in the background.
"""

import json
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from pixmuse.api.dependencies import (
    get_broadcaster,
    get_current_account,
    get_job_runner,
    get_settings,
    get_uow_factory,
)
from pixmuse.core.config import Settings
from pixmuse.models.account import Account
from pixmuse.models.job import Job
from pixmuse.services.broadcaster import ProgressBroadcaster, ProgressEvent
from pixmuse.services.job_runner import JobRunner

logger = structlog.get_logger()
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# Request/Response Models


class StartTrainingRequest(BaseModel):
    archive_url: str = Field(
        ...,
        description="URL of the zipped training photos (from POST /api/uploads)",
        min_length=1,
    )


class StartGenerationRequest(BaseModel):
    model_id: UUID = Field(..., description="Trained model owned by the caller")
    prompt: str = Field(..., description="Text prompt for the image")
    image_count: int = Field(default=1, description="Number of images to generate")


class JobResponse(BaseModel):
    """Persisted state of one job."""

    id: UUID
    kind: str
    status: str
    progress: int
    cost: int
    model_id: UUID | None = None
    prompt: str | None = None
    image_count: int
    failure_reason: str | None = Field(
        default=None,
        description="provider_failure, timeout, transport_error, interrupted or invalid_output",
    )
    needs_reconciliation: bool
    result: dict[str, Any] | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            kind=job.kind.value,
            status=job.status.value,
            progress=job.progress,
            cost=job.cost,
            model_id=job.model_id,
            prompt=job.prompt,
            image_count=job.image_count,
            failure_reason=job.failure_reason.value if job.failure_reason else None,
            needs_reconciliation=job.needs_reconciliation,
            result=job.result_data,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class JobsResponse(BaseModel):
    jobs: list[JobResponse]
    offset: int
    limit: int


# Server-Sent Events


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _terminal_payload(job: Job) -> dict[str, Any]:
    """Final status event built from the persisted job row."""
    data: dict[str, Any] = {
        "job_id": str(job.id),
        "status": job.status.value,
        "percent": job.progress,
    }
    if job.failure_reason:
        data["reason"] = job.failure_reason.value
    if job.result_data:
        data["result"] = job.result_data
    if job.needs_reconciliation:
        data["needs_reconciliation"] = True
        data["error"] = "reconciliation_required"
    return data


def _is_settled(job: Job) -> bool:
    return job.is_terminal or job.needs_reconciliation


async def _progress_events(
    job_id: UUID,
    uow_factory,
    broadcaster: ProgressBroadcaster,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    # Subscribe before reading the row so a terminal event published in
    # between is not lost
    async with broadcaster.subscribe(job_id) as subscription:
        async with await uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            return
        if _is_settled(job):
            yield _sse("status", _terminal_payload(job))
            return

        yield _sse("progress", {"job_id": str(job_id), "percent": job.progress})

        while True:
            event: ProgressEvent | None = await subscription.get(timeout=heartbeat_seconds)
            if event is None:
                # No broadcast within the heartbeat: fall back to the database
                async with await uow_factory() as uow:
                    job = await uow.jobs.get_by_id(job_id)
                if job is None:
                    return
                if _is_settled(job):
                    yield _sse("status", _terminal_payload(job))
                    return
                yield ": keep-alive\n\n"
                continue

            if event.terminal:
                yield _sse("status", event.as_dict())
                return
            yield _sse("progress", event.as_dict())


# API Endpoints


@router.post("/training", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_training(
    request: StartTrainingRequest,
    account: Account = Depends(get_current_account),
    job_runner: JobRunner = Depends(get_job_runner),
) -> JobResponse:
    """Reserve the training cost and start training a LoRA model.

    Raises:
        400: Malformed archive URL
        403: Insufficient credits or a training job already in progress
    """
    job = await job_runner.start_training(account.id, request.archive_url)
    return JobResponse.from_job(job)


@router.post("/generation", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation(
    request: StartGenerationRequest,
    account: Account = Depends(get_current_account),
    job_runner: JobRunner = Depends(get_job_runner),
) -> JobResponse:
    """Reserve image_count credits and start image generation.

    Raises:
        400: Empty/oversized prompt, bad image count, or a model the caller does not own
        403: Insufficient credits
    """
    job = await job_runner.start_generation(
        account.id, request.model_id, request.prompt, request.image_count
    )
    return JobResponse.from_job(job)


@router.get("", response_model=JobsResponse)
async def list_jobs(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    account: Account = Depends(get_current_account),
    uow_factory=Depends(get_uow_factory),
) -> JobsResponse:
    async with await uow_factory() as uow:
        jobs = await uow.jobs.list_for_account(account.id, limit=limit, offset=offset)
    return JobsResponse(
        jobs=[JobResponse.from_job(job) for job in jobs], offset=offset, limit=limit
    )


async def _get_owned_job(job_id: UUID, account: Account, uow_factory) -> Job:
    async with await uow_factory() as uow:
        job = await uow.jobs.get_for_account(job_id, account.id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    account: Account = Depends(get_current_account),
    uow_factory=Depends(get_uow_factory),
) -> JobResponse:
    """Persisted job state; jobs of other accounts are reported as 404."""
    job = await _get_owned_job(job_id, account, uow_factory)
    return JobResponse.from_job(job)


@router.get("/{job_id}/progress")
async def stream_job_progress(
    job_id: UUID,
    account: Account = Depends(get_current_account),
    uow_factory=Depends(get_uow_factory),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Stream progress events for a job until its terminal status.

    Events:
        progress: {"job_id", "percent", "message"?}
        status: {"job_id", "status", "percent", ...} - exactly once, then the stream ends

    A client that connects after the job finished receives only the status event.
    Intermediate progress is not replayed; GET /api/jobs/{job_id} always has the
    final state.
    """
    await _get_owned_job(job_id, account, uow_factory)
    logger.debug("progress.stream_opened", job_id=str(job_id), account_id=str(account.id))
    return StreamingResponse(
        _progress_events(job_id, uow_factory, broadcaster, settings.progress_heartbeat_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
