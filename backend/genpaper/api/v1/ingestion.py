import asyncio
import json
import uuid
from typing import AsyncGenerator

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from genpaper.api.v1.deps import CurrentOwner, JobStoreDep, QueueDep
from genpaper.core.exceptions import FastTrackFailed, QuotaExceeded
from genpaper.models import TERMINAL_JOB_STATUSES
from genpaper.schemas import JobCreate, JobResponse, ProcessingJob, QuotaResponse

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _to_response(job: ProcessingJob) -> JobResponse:
    result = job.extraction_result
    return JobResponse(
        id=job.id,
        paper_id=job.paper_id,
        source_url=job.source_url,
        title=job.title,
        priority=job.priority,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        last_error=job.last_error,
        extraction_method=result.extraction_method if result else None,
        confidence=result.confidence if result else None,
    )


async def _find_job(queue, job_id: str, owner_id: uuid.UUID) -> ProcessingJob:
    job = queue.get_job_status(job_id) or await queue.get_persisted_status(job_id)
    if job is None or job.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(data: JobCreate, owner_id: CurrentOwner, queue: QueueDep):
    try:
        job_id = await queue.add_job(
            data.paper_id,
            data.source_url,
            data.title,
            owner_id,
            data.priority,
            max_attempts=data.max_attempts,
            fast_track=data.fast_track,
        )
    except QuotaExceeded as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    except FastTrackFailed as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _to_response(await _find_job(queue, job_id, owner_id))


@router.post("/fast-track", response_model=JobResponse)
async def fast_track_job(data: JobCreate, owner_id: CurrentOwner, queue: QueueDep):
    try:
        job_id = await queue.fast_track_job(data.paper_id, data.source_url, data.title, owner_id)
    except FastTrackFailed as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _to_response(await _find_job(queue, job_id, owner_id))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, owner_id: CurrentOwner, queue: QueueDep):
    return _to_response(await _find_job(queue, job_id, owner_id))


@router.get("/jobs/{job_id}/events")
async def stream_job_events(job_id: str, owner_id: CurrentOwner, queue: QueueDep):
    """Stream job status updates via Server-Sent Events."""
    job = await _find_job(queue, job_id, owner_id)
    if queue.broadcaster is None or job.status in TERMINAL_JOB_STATUSES:
        snapshot = json.dumps({"type": "snapshot", "job": _to_response(job).model_dump(mode="json")})

        async def finished() -> AsyncGenerator[str, None]:
            yield f"data: {snapshot}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(finished(), media_type="text/event-stream", headers=SSE_HEADERS)

    streams = queue.broadcaster.streams
    events = streams.get_queue(job_id)

    async def generate() -> AsyncGenerator[str, None]:
        try:
            while True:
                try:
                    data = await asyncio.wait_for(events.get(), timeout=15)
                    yield f"data: {data}\n\n"
                except asyncio.TimeoutError:
                    yield 'data: {"type": "ping"}\n\n'
                current = queue.get_job_status(job_id)
                if (current is None or current.status in TERMINAL_JOB_STATUSES) and events.empty():
                    break
        finally:
            streams.release(job_id)

        yield "data: [DONE]\n\n"

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(owner_id: CurrentOwner, job_store: JobStoreDep):
    return await job_store.get_quota(owner_id)
