import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from genpaper.services import (
    CitationService,
    GenerationPipeline,
    GenerationRuns,
    PdfProcessingQueue,
    ProcessingJobStore,
    ProjectStore,
)


async def get_current_owner(x_user_id: Annotated[str | None, Header()] = None) -> uuid.UUID:
    """Caller identity; authentication happens in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")


def get_queue(request: Request) -> PdfProcessingQueue:
    return request.app.state.queue


def get_job_store(request: Request) -> ProcessingJobStore:
    return request.app.state.job_store


def get_pipeline(request: Request) -> GenerationPipeline:
    return request.app.state.pipeline


def get_projects(request: Request) -> ProjectStore:
    return request.app.state.projects


def get_runs(request: Request) -> GenerationRuns:
    return request.app.state.runs


def get_citation_service(request: Request) -> CitationService:
    return request.app.state.citation_service


CurrentOwner = Annotated[uuid.UUID, Depends(get_current_owner)]
QueueDep = Annotated[PdfProcessingQueue, Depends(get_queue)]
JobStoreDep = Annotated[ProcessingJobStore, Depends(get_job_store)]
PipelineDep = Annotated[GenerationPipeline, Depends(get_pipeline)]
ProjectsDep = Annotated[ProjectStore, Depends(get_projects)]
RunsDep = Annotated[GenerationRuns, Depends(get_runs)]
CitationServiceDep = Annotated[CitationService, Depends(get_citation_service)]


async def require_project(project_id: uuid.UUID, owner_id: CurrentOwner, projects: ProjectsDep):
    project = await projects.get(project_id)
    if project is None or project.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project
