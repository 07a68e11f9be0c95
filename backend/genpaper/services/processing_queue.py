"""Bounded-concurrency PDF ingestion queue with retry, poison-pill and quota handling."""

import asyncio
import logging
import math
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import httpx

from genpaper.core.config import get_settings
from genpaper.core.exceptions import (
    QuotaExceeded, DownloadError, JobTimeout, FastTrackFailed,
)
from genpaper.models import JobStatus, JobPriority, ExtractionMethod
from genpaper.schemas import ProcessingJob, ProcessingStatus, ExtractionOptions, ExtractionResult
from genpaper.services.chunker import ContentChunker
from genpaper.services.extraction import PdfExtractor, USER_AGENT
from genpaper.services.job_store import ProcessingJobStore
from genpaper.services.status_broadcast import StatusBroadcaster, StatusCallback
from genpaper.services.storage import PdfStorage

settings = get_settings()
logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SizeProbe = Callable[[str], Awaitable[int | None]]
Downloader = Callable[[str], Awaitable[bytes]]

_ID_ALPHABET = string.ascii_lowercase + string.digits
BYTES_PER_PAGE = 100 * 1024
COST_PER_1000_PAGES = 1.50
DEFAULT_COST = 0.1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"pdf-{int(time.time() * 1000)}-{suffix}"


def estimate_cost(size_bytes: int | None) -> float:
    if not size_bytes:
        return DEFAULT_COST
    pages = math.ceil(size_bytes / BYTES_PER_PAGE)
    return pages / 1000 * COST_PER_1000_PAGES


def retry_delay_ms(attempts: int, base_ms: int, max_ms: int) -> int:
    return min(base_ms * 2 ** attempts, max_ms)


class PdfProcessingQueue:
    """One instance per process; constructed explicitly and passed to its callers.

    Jobs are scheduled opportunistically (on add, on completion, on retry timer)
    by process_next_job, the only place a job leaves pending.
    """

    def __init__(
        self,
        store: ProcessingJobStore,
        extractor: PdfExtractor,
        chunker: ContentChunker | None = None,
        broadcaster: StatusBroadcaster | None = None,
        storage: PdfStorage | None = None,
        *,
        size_probe: SizeProbe | None = None,
        downloader: Downloader | None = None,
        clock: Clock | None = None,
        max_concurrent: int | None = None,
        poison_threshold: int | None = None,
        poison_window_hours: int | None = None,
        retry_base_delay_ms: int | None = None,
        retry_max_delay_ms: int | None = None,
        job_timeout_seconds: float | None = None,
    ):
        self.store = store
        self.extractor = extractor
        self.chunker = chunker
        self.broadcaster = broadcaster
        self.storage = storage
        self._probe_size = size_probe or self._http_head_size
        self._download = downloader or self._http_download
        self._now = clock or _utc_now
        self.max_concurrent = max_concurrent or settings.max_concurrent_jobs
        self.poison_threshold = poison_threshold or settings.poison_pill_threshold
        self.poison_window = timedelta(hours=poison_window_hours or settings.poison_pill_window_hours)
        self.retry_base_delay_ms = settings.retry_base_delay_ms if retry_base_delay_ms is None else retry_base_delay_ms
        self.retry_max_delay_ms = settings.retry_max_delay_ms if retry_max_delay_ms is None else retry_max_delay_ms
        self.job_timeout_seconds = job_timeout_seconds or settings.job_timeout_seconds

        self._jobs: dict[str, ProcessingJob] = {}
        self._staging: set[str] = set()
        self._active = 0
        self._tasks: dict[str, asyncio.Task] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._done_events: dict[str, asyncio.Event] = {}
        self._closed = False

    # Admission

    async def add_job(
        self,
        paper_id: uuid.UUID,
        source_url: str,
        title: str,
        owner_id: uuid.UUID,
        priority: JobPriority | str = JobPriority.NORMAL,
        *,
        max_attempts: int | None = None,
        fast_track: bool = False,
    ) -> str:
        if fast_track:
            return await self.fast_track_job(paper_id, source_url, title, owner_id)

        quota = await self.store.get_quota(owner_id)
        in_flight = sum(
            1 for j in self._jobs.values()
            if j.owner_id == owner_id and j.status in (JobStatus.PENDING, JobStatus.PROCESSING)
        )
        if quota.daily_pdf_used + in_flight >= quota.daily_pdf_limit:
            logger.info(
                "Rejecting job for %s: daily quota %d/%d with %d in flight",
                owner_id, quota.daily_pdf_used, quota.daily_pdf_limit, in_flight,
            )
            raise QuotaExceeded(owner_id, quota.daily_pdf_limit, quota.daily_pdf_used + in_flight)

        job = ProcessingJob(
            id=new_job_id(),
            paper_id=paper_id,
            source_url=source_url,
            title=title or "",
            owner_id=owner_id,
            priority=JobPriority(priority),
            status=JobStatus.PENDING,
            max_attempts=max_attempts or settings.default_max_attempts,
            created_at=self._now(),
        )
        # Counted against quota immediately, schedulable only once persisted.
        self._jobs[job.id] = job
        self._staging.add(job.id)
        try:
            job.file_size = await self._safe_probe(source_url)
            job.estimated_cost = estimate_cost(job.file_size)
            await self.store.record(job)
        except Exception:
            self._jobs.pop(job.id, None)
            raise
        finally:
            self._staging.discard(job.id)

        logger.info("Queued job %s for paper %s (priority=%s)", job.id, paper_id, job.priority.value)
        await self._broadcast(job, 0, "Queued for processing")
        self.process_next_job()
        return job.id

    async def fast_track_job(
        self,
        paper_id: uuid.UUID,
        source_url: str,
        title: str,
        owner_id: uuid.UUID,
    ) -> str:
        """Process a small PDF inline, bypassing the queue and quota."""
        size = await self._safe_probe(source_url)
        if size is None:
            raise FastTrackFailed("Could not determine document size for fast track")
        if size > settings.fast_track_max_bytes:
            raise FastTrackFailed(
                f"Document is {size} bytes; fast track allows at most {settings.fast_track_max_bytes}"
            )

        now = self._now()
        job = ProcessingJob(
            id=new_job_id(),
            paper_id=paper_id,
            source_url=source_url,
            title=title or "",
            owner_id=owner_id,
            priority=JobPriority.HIGH,
            status=JobStatus.PROCESSING,
            attempts=1,
            max_attempts=1,
            created_at=now,
            started_at=now,
            file_size=size,
            estimated_cost=estimate_cost(size),
        )
        await self.store.record(job)
        logger.info("Fast-tracking job %s for paper %s (%d bytes)", job.id, paper_id, size)

        try:
            result = await self._run_with_timeout(job, enable_ocr=False, timeout=self.job_timeout_seconds)
        except Exception as e:
            job.status = JobStatus.FAILED
            job.completed_at = self._now()
            job.last_error = f"{type(e).__name__}: {e}"[:1000]
            await self.store.record(job)
            await self._broadcast(job, 100, "Fast-track processing failed")
            raise FastTrackFailed(f"Fast-track processing failed: {e}") from e

        job.status = JobStatus.COMPLETED
        job.completed_at = self._now()
        job.extraction_result = result
        await self.store.record(job)
        await self._broadcast(job, 100, "Processing completed", result)
        return job.id

    # Status

    def get_job_status(self, job_id: str) -> ProcessingJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def get_persisted_status(self, job_id: str) -> ProcessingJob | None:
        return await self.store.latest(job_id)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> JobStatus | None:
        """Wait until the job reaches a terminal state; returns its latest known status."""
        job = self._jobs.get(job_id)
        if job is not None:
            event = self._done_events.setdefault(job_id, asyncio.Event())
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return job.status
        persisted = await self.store.latest(job_id)
        return persisted.status if persisted else None

    def subscribe_to_status(self, job_id: str, callback: StatusCallback) -> int | None:
        if self.broadcaster is None:
            return None
        return self.broadcaster.subscribe(job_id, callback)

    def unsubscribe(self, token: int) -> None:
        if self.broadcaster is not None:
            self.broadcaster.unsubscribe(token)

    @property
    def active_count(self) -> int:
        return self._active

    # Scheduling

    def _pick_next(self, now: datetime) -> ProcessingJob | None:
        ready = [
            j for j in self._jobs.values()
            if j.status == JobStatus.PENDING
            and j.id not in self._staging
            and (j.next_attempt_at is None or j.next_attempt_at <= now)
        ]
        if not ready:
            return None
        return min(ready, key=lambda j: (-j.priority.weight, j.created_at))

    def process_next_job(self) -> None:
        if self._closed:
            return
        now = self._now()
        while self._active < self.max_concurrent:
            job = self._pick_next(now)
            if job is None:
                break
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.started_at = now
            job.next_attempt_at = None
            self._active += 1
            self._tasks[job.id] = asyncio.get_running_loop().create_task(self._run_job(job))
            logger.info("Started job %s (attempt %d/%d)", job.id, job.attempts, job.max_attempts)

    def _schedule_retry(self, delay_s: float) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._timers.discard(handle)
            self.process_next_job()

        handle = loop.call_later(delay_s, fire)
        self._timers.add(handle)

    async def wait_idle(self) -> None:
        """Wait until no job is processing (scheduled retries are not awaited)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # Execution

    def _timeout_for(self, job: ProcessingJob, enable_ocr: bool) -> float:
        if enable_ocr:
            return max(settings.ocr_job_timeout_seconds, self.job_timeout_seconds)
        if job.file_size and job.file_size >= settings.large_file_bytes:
            return max(settings.large_file_timeout_seconds, self.job_timeout_seconds)
        return self.job_timeout_seconds

    async def _run_job(self, job: ProcessingJob) -> None:
        try:
            await self.store.record(job)
            await self._broadcast(job, 0, "Starting PDF processing")
            quota = await self.store.get_quota(job.owner_id)
            enable_ocr = quota.monthly_ocr_used < quota.monthly_ocr_limit
            result = await self._run_with_timeout(job, enable_ocr, self._timeout_for(job, enable_ocr))

            await self.store.increment_quota(
                job.owner_id, used_ocr=result.extraction_method == ExtractionMethod.OCR
            )
            job.status = JobStatus.COMPLETED
            job.completed_at = self._now()
            job.extraction_result = result
            job.last_error = None
            await self.store.record(job)
            logger.info(
                "Job %s completed via %s (%s confidence)",
                job.id, result.extraction_method.value, result.confidence.value,
            )
            await self._broadcast(job, 100, "Processing completed", result)
            self._evict(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            try:
                await self._handle_failure(job, e)
            except Exception:
                logger.exception("Could not record failure for job %s", job.id)
                job.status = JobStatus.FAILED
                self._evict(job)
        finally:
            self._active -= 1
            self._tasks.pop(job.id, None)
            self.process_next_job()

    async def _run_with_timeout(self, job: ProcessingJob, enable_ocr: bool, timeout: float) -> ExtractionResult:
        try:
            return await asyncio.wait_for(self._execute(job, enable_ocr), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise JobTimeout(f"Job {job.id} exceeded {timeout:.0f}s timeout") from e

    async def _execute(self, job: ProcessingJob, enable_ocr: bool) -> ExtractionResult:
        await self._broadcast(job, 20, "Downloading PDF")
        pdf_bytes = await self._fetch_pdf(job)

        await self._broadcast(job, 40, "Extracting text")
        options = ExtractionOptions(
            grobid_endpoint=settings.grobid_endpoint,
            enable_ocr=enable_ocr,
            max_timeout_ms=int(settings.extraction_timeout_seconds * 1000),
        )
        result = await self.extractor.extract(pdf_bytes, options)

        await self._broadcast(job, 80, f"Chunking content ({result.extraction_method.value})", result)
        await self.store.store_extraction(job.paper_id, result)
        if self.chunker is not None:
            await self.chunker.process(result.full_text, job.paper_id)
        return result

    async def _fetch_pdf(self, job: ProcessingJob) -> bytes:
        if self.storage is not None:
            cached = await self.storage.load_pdf(job.paper_id)
            if cached:
                return cached
        pdf_bytes = await self._download(job.source_url)
        if self.storage is not None:
            await self.storage.save_pdf(job.paper_id, pdf_bytes)
        return pdf_bytes

    async def _handle_failure(self, job: ProcessingJob, exc: Exception) -> None:
        now = self._now()
        job.last_error = f"{type(exc).__name__}: {exc}"[:1000]
        logger.warning(
            "Job %s attempt %d/%d failed: %s", job.id, job.attempts, job.max_attempts, job.last_error,
        )
        await self.store.record(job, status=JobStatus.FAILED)

        failures = await self.store.count_recent_failures(job.source_url, now - self.poison_window)
        if failures >= self.poison_threshold:
            job.status = JobStatus.POISONED
            job.completed_at = now
            await self.store.record(job)
            logger.error(
                "Job %s poisoned: %s failed in %d jobs within %s",
                job.id, job.source_url, failures, self.poison_window,
            )
            await self._broadcast(job, 100, "Source quarantined after repeated failures")
            self._evict(job)
            return

        if job.attempts < job.max_attempts:
            delay_ms = retry_delay_ms(job.attempts, self.retry_base_delay_ms, self.retry_max_delay_ms)
            job.status = JobStatus.PENDING
            job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
            await self.store.record(job)
            logger.info("Job %s retrying in %dms", job.id, delay_ms)
            await self._broadcast(job, 0, f"Retrying in {delay_ms / 1000:.1f}s")
            self._schedule_retry(delay_ms / 1000)
            return

        job.status = JobStatus.FAILED
        job.completed_at = now
        await self.store.record(job)
        logger.error("Job %s failed after %d attempts", job.id, job.attempts)
        await self._broadcast(job, 100, "Processing failed")
        self._evict(job)

    def _evict(self, job: ProcessingJob) -> None:
        self._jobs.pop(job.id, None)
        if self.broadcaster is not None:
            self.broadcaster.drop(job.id)
        event = self._done_events.pop(job.id, None)
        if event is not None:
            event.set()

    # Recovery and shutdown

    async def recover(self) -> int:
        """Reload pending/processing jobs left by a previous instance as pending."""
        jobs = [j for j in await self.store.load_unfinished() if j.id not in self._jobs]
        for job in jobs:
            job.status = JobStatus.PENDING
            job.started_at = None
            job.next_attempt_at = None
            self._jobs[job.id] = job
            self._staging.add(job.id)
        try:
            for job in jobs:
                await self.store.record(job)
        finally:
            for job in jobs:
                self._staging.discard(job.id)
        if jobs:
            logger.info("Recovered %d unfinished PDF jobs", len(jobs))
        self.process_next_job()
        return len(jobs)

    async def shutdown(self) -> None:
        self._closed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Helpers

    async def _broadcast(
        self,
        job: ProcessingJob,
        progress: int,
        message: str,
        result: ExtractionResult | None = None,
    ) -> None:
        if self.broadcaster is None:
            return
        elapsed = None
        if job.started_at is not None:
            elapsed = max(0, int((self._now() - job.started_at).total_seconds() * 1000))
        await self.broadcaster.publish(
            ProcessingStatus(
                job_id=job.id,
                status=job.status,
                progress=progress,
                message=message,
                extraction_method=result.extraction_method if result else None,
                confidence=result.confidence if result else None,
                time_elapsed_ms=elapsed,
            )
        )

    async def _safe_probe(self, url: str) -> int | None:
        try:
            return await self._probe_size(url)
        except Exception:
            logger.debug("Size probe failed for %s", url, exc_info=True)
            return None

    async def _http_head_size(self, url: str) -> int | None:
        async with httpx.AsyncClient(timeout=10, follow_redirects=True) as client:
            resp = await client.head(url, headers={"User-Agent": USER_AGENT})
        length = resp.headers.get("content-length")
        return int(length) if length and length.isdigit() else None

    async def _http_download(self, url: str) -> bytes:
        buf = bytearray()
        try:
            async with httpx.AsyncClient(timeout=settings.download_timeout_seconds, follow_redirects=True) as client:
                async with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as resp:
                    if resp.status_code >= 400:
                        raise DownloadError(f"HTTP {resp.status_code} downloading {url}")
                    async for part in resp.aiter_bytes():
                        buf.extend(part)
                        if len(buf) > settings.max_download_bytes:
                            raise DownloadError("PDF exceeds download size limit")
        except httpx.HTTPError as e:
            raise DownloadError(f"Download failed: {e}") from e
        if not buf.startswith(b"%PDF"):
            raise DownloadError("Downloaded file is not a PDF")
        return bytes(buf)
