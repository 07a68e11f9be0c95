import asyncio
import json
import logging
import uuid
from typing import Annotated, AsyncGenerator

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from genpaper.api.v1.deps import (
    CitationServiceDep,
    CurrentOwner,
    PipelineDep,
    ProjectsDep,
    RunsDep,
    require_project,
)
from genpaper.api.v1.ingestion import SSE_HEADERS
from genpaper.core.exceptions import PipelineError
from genpaper.models import Project
from genpaper.schemas import GenerationRequest, PipelineRequest, ProjectCreate, ProjectResponse
from genpaper.services import GenerationPipeline, GenerationRuns
from genpaper.services.citation_formatter import render_markers

logger = logging.getLogger(__name__)

router = APIRouter()

OwnedProject = Annotated[Project, Depends(require_project)]


async def run_generation_task(
    pipeline: GenerationPipeline,
    runs: GenerationRuns,
    request: PipelineRequest,
    cancel_event: asyncio.Event,
) -> None:
    try:
        await pipeline.run(
            request,
            cancel_event=cancel_event,
            on_progress=lambda p: runs.publish(request.project_id, p),
        )
    except PipelineError as e:
        logger.info("Generation for project %s ended without result: %s", request.project_id, e.user_message)
        runs.streams.publish(
            request.project_id, {"stage": "error", "progress": 100, "message": e.user_message},
        )
    finally:
        runs.finish(request.project_id)


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(data: ProjectCreate, owner_id: CurrentOwner, projects: ProjectsDep):
    return await projects.create(owner_id, data.topic, data.paper_type, data.citation_style)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project: OwnedProject, citation_service: CitationServiceDep):
    response = ProjectResponse.model_validate(project)
    if project.content:
        citations = await citation_service.store.list_for_project(project.id)
        response.rendered_content = render_markers(project.content, citations, project.citation_style)
    return response


@router.post("/{project_id}/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_project(
    data: GenerationRequest,
    project: OwnedProject,
    background_tasks: BackgroundTasks,
    pipeline: PipelineDep,
    runs: RunsDep,
):
    if runs.is_running(project.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Generation already in progress")

    request = PipelineRequest(**data.model_dump(), project_id=project.id, owner_id=project.owner_id)
    cancel_event = runs.start(project.id)
    background_tasks.add_task(run_generation_task, pipeline, runs, request, cancel_event)
    return {"project_id": str(project.id), "status": "accepted"}


@router.get("/{project_id}/progress")
async def stream_progress(project: OwnedProject, runs: RunsDep):
    """Stream pipeline progress events via Server-Sent Events."""
    project_id: uuid.UUID = project.id
    events = runs.streams.get_queue(project_id)

    async def generate() -> AsyncGenerator[str, None]:
        last = runs.last_progress(project_id)
        if last is not None:
            yield f"data: {json.dumps(last.model_dump(mode='json'))}\n\n"
        try:
            while True:
                try:
                    data = await asyncio.wait_for(events.get(), timeout=15)
                    yield f"data: {data}\n\n"
                except asyncio.TimeoutError:
                    if not runs.is_running(project_id) and events.empty():
                        break
                    yield 'data: {"type": "ping"}\n\n'
                    continue
                if not runs.is_running(project_id) and events.empty():
                    break
        finally:
            runs.streams.release(project_id)

        yield "data: [DONE]\n\n"

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/{project_id}/cancel")
async def cancel_generation(project: OwnedProject, runs: RunsDep):
    if not runs.cancel(project.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No generation in progress")
    return {"project_id": str(project.id), "cancelled": True}
