import asyncio
import logging
import uuid

from genpaper.schemas import PipelineProgress
from genpaper.services.status_broadcast import ProgressChannel

logger = logging.getLogger(__name__)


class GenerationRuns:
    """In-process registry of running generation pipelines and their progress streams.

    The last progress event of a finished run is kept for `last_progress_ttl`
    seconds so a late subscriber still sees the final state.
    """

    def __init__(self, last_progress_ttl: float = 60.0) -> None:
        self.last_progress_ttl = last_progress_ttl
        self._cancel_events: dict[uuid.UUID, asyncio.Event] = {}
        self._last: dict[uuid.UUID, PipelineProgress] = {}
        self.streams = ProgressChannel()

    def start(self, project_id: uuid.UUID) -> asyncio.Event:
        if self.is_running(project_id):
            raise RuntimeError(f"Generation already running for project {project_id}")
        event = asyncio.Event()
        self._cancel_events[project_id] = event
        self._last.pop(project_id, None)
        return event

    def is_running(self, project_id: uuid.UUID) -> bool:
        return project_id in self._cancel_events

    def cancel(self, project_id: uuid.UUID) -> bool:
        event = self._cancel_events.get(project_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for project %s", project_id)
        return True

    def finish(self, project_id: uuid.UUID) -> None:
        self._cancel_events.pop(project_id, None)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._last.pop(project_id, None)
            return
        loop.call_later(self.last_progress_ttl, self._expire_last, project_id)

    def _expire_last(self, project_id: uuid.UUID) -> None:
        # A new run may have started since; its progress stays.
        if not self.is_running(project_id):
            self._last.pop(project_id, None)

    def publish(self, project_id: uuid.UUID, progress: PipelineProgress) -> None:
        self._last[project_id] = progress
        self.streams.publish(project_id, progress.model_dump(mode="json"))

    def last_progress(self, project_id: uuid.UUID) -> PipelineProgress | None:
        return self._last.get(project_id)
