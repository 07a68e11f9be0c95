import asyncio
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from genpaper.api.v1 import router
from genpaper.core.exceptions import QuotaExceeded
from genpaper.models import ProjectStatus
from genpaper.schemas import PipelineProgress
from genpaper.services.generation_runs import GenerationRuns

OWNER = uuid.uuid4()
HEADERS = {"X-User-Id": str(OWNER)}


class RejectingQueue:
    broadcaster = None

    async def add_job(self, paper_id, source_url, title, owner_id, priority, **kwargs):
        raise QuotaExceeded(owner_id, limit=10, used=10)


class FakeProjects:
    def __init__(self, *projects):
        self.projects = {p.id: p for p in projects}

    async def get(self, project_id):
        return self.projects.get(project_id)


class RecordingPipeline:
    def __init__(self):
        self.requests = []

    async def run(self, request, cancel_event=None, on_progress=None):
        self.requests.append(request)


def _project(owner_id=OWNER, status=ProjectStatus.DRAFT):
    return SimpleNamespace(
        id=uuid.uuid4(),
        owner_id=owner_id,
        topic="Analytical computing",
        paper_type="literature_review",
        citation_style="apa",
        status=status,
        content=None,
        citation_map={},
        error_message=None,
        created_at=datetime.now(timezone.utc),
        completed_at=None,
    )


@pytest.fixture
def project():
    return _project()


@pytest.fixture
def app(project):
    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.state.queue = RejectingQueue()
    app.state.projects = FakeProjects(project, _project(owner_id=uuid.uuid4()))
    app.state.runs = GenerationRuns()
    app.state.pipeline = RecordingPipeline()
    app.state.citation_service = None
    return app


def test_missing_identity_is_unauthorized(app, project):
    client = TestClient(app)
    assert client.get(f"/api/v1/projects/{project.id}").status_code == 401
    assert client.get(f"/api/v1/projects/{project.id}", headers={"X-User-Id": "nope"}).status_code == 401


def test_other_owners_project_is_not_found(app):
    client = TestClient(app)
    foreign = next(p for p in app.state.projects.projects.values() if p.owner_id != OWNER)
    assert client.get(f"/api/v1/projects/{foreign.id}", headers=HEADERS).status_code == 404


def test_quota_exceeded_maps_to_429(app):
    client = TestClient(app)
    body = {"paper_id": str(uuid.uuid4()), "source_url": "https://example.org/a.pdf"}
    response = client.post("/api/v1/ingestion/jobs", json=body, headers=HEADERS)
    assert response.status_code == 429


def test_generate_runs_in_background_and_releases_run(app, project):
    client = TestClient(app)
    response = client.post(
        f"/api/v1/projects/{project.id}/generate",
        json={"topic": "Analytical computing", "use_library_only": True},
        headers=HEADERS,
    )
    assert response.status_code == 202
    [request] = app.state.pipeline.requests
    assert request.project_id == project.id and request.owner_id == OWNER
    assert not app.state.runs.is_running(project.id)


def test_generate_conflicts_while_running(app, project):
    app.state.runs.start(project.id)
    client = TestClient(app)
    response = client.post(
        f"/api/v1/projects/{project.id}/generate", json={"topic": "Analytical computing"}, headers=HEADERS,
    )
    assert response.status_code == 409
    assert app.state.pipeline.requests == []


def test_stale_generating_status_does_not_block_new_run(app):
    stale = _project(status=ProjectStatus.GENERATING)
    app.state.projects.projects[stale.id] = stale
    client = TestClient(app)
    response = client.post(
        f"/api/v1/projects/{stale.id}/generate", json={"topic": "Analytical computing"}, headers=HEADERS,
    )
    assert response.status_code == 202
    [request] = app.state.pipeline.requests
    assert request.project_id == stale.id


def test_cancel_sets_event_for_running_generation(app, project):
    client = TestClient(app)
    assert client.post(f"/api/v1/projects/{project.id}/cancel", headers=HEADERS).status_code == 404

    event = app.state.runs.start(project.id)
    response = client.post(f"/api/v1/projects/{project.id}/cancel", headers=HEADERS)
    assert response.status_code == 200
    assert event.is_set()


def test_generation_runs_registry():
    runs = GenerationRuns()
    project_id = uuid.uuid4()
    runs.start(project_id)
    with pytest.raises(RuntimeError):
        runs.start(project_id)
    runs.finish(project_id)
    assert not runs.is_running(project_id)
    assert not runs.cancel(project_id)


def test_last_progress_expires_after_run_finishes():
    async def scenario():
        runs = GenerationRuns(last_progress_ttl=0.01)
        project_id = uuid.uuid4()
        runs.start(project_id)
        runs.publish(project_id, PipelineProgress(stage="complete", progress=100, message="Generation complete"))
        runs.finish(project_id)
        assert runs.last_progress(project_id).stage == "complete"
        await asyncio.sleep(0.05)
        assert runs.last_progress(project_id) is None

    asyncio.run(scenario())
