import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, ClassVar, Hashable

from genpaper.schemas import ProcessingStatus

logger = logging.getLogger(__name__)

CHANNEL = "pdf-processing"
EVENT = "status-update"

StatusCallback = Callable[[ProcessingStatus], Awaitable[None] | None]


class ProgressChannel:
    """Per-key bounded queues for SSE consumers; oldest events are dropped when full."""

    def __init__(self, maxsize: int = 500):
        self.maxsize = maxsize
        self._queues: dict[Hashable, asyncio.Queue[str]] = {}
        self._refs: dict[Hashable, int] = {}

    def get_queue(self, key: Hashable) -> asyncio.Queue[str]:
        if key not in self._queues:
            self._queues[key] = asyncio.Queue(maxsize=self.maxsize)
            self._refs[key] = 0
        self._refs[key] = self._refs.get(key, 0) + 1
        return self._queues[key]

    def publish(self, key: Hashable, payload: dict[str, Any]) -> None:
        queue = self._queues.get(key)
        if queue is None:
            return
        data = json.dumps(payload, ensure_ascii=False, default=str)
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(data)

    def release(self, key: Hashable) -> None:
        if key in self._refs:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key, None)
                self._queues.pop(key, None)


class StatusBroadcaster:
    """Best-effort status push for processing jobs. Delivery is never guaranteed."""

    channel: ClassVar[str] = CHANNEL
    event: ClassVar[str] = EVENT

    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, StatusCallback]] = {}
        self._tokens: dict[int, str] = {}
        self._counter = itertools.count(1)
        self.streams = ProgressChannel()

    def subscribe(self, job_id: str, callback: StatusCallback) -> int:
        token = next(self._counter)
        self._subscribers.setdefault(job_id, {})[token] = callback
        self._tokens[token] = job_id
        return token

    def unsubscribe(self, token: int) -> None:
        job_id = self._tokens.pop(token, None)
        if job_id is None:
            return
        callbacks = self._subscribers.get(job_id, {})
        callbacks.pop(token, None)
        if not callbacks:
            self._subscribers.pop(job_id, None)

    def drop(self, job_id: str) -> None:
        """Forget every subscriber of a job that has left the queue."""
        for token in self._subscribers.pop(job_id, {}):
            self._tokens.pop(token, None)

    async def publish(self, status: ProcessingStatus) -> None:
        payload = {"channel": self.channel, "event": self.event, "payload": status.model_dump(mode="json")}
        try:
            self.streams.publish(status.job_id, payload)
        except Exception:
            logger.warning("Status stream publish failed for %s", status.job_id, exc_info=True)

        for callback in list(self._subscribers.get(status.job_id, {}).values()):
            try:
                result = callback(status)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.warning("Status subscriber failed for %s", status.job_id, exc_info=True)
