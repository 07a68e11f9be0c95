import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from genpaper.core.exceptions import ExtractionFailure, FastTrackFailed, QuotaExceeded
from genpaper.models import ExtractionConfidence, ExtractionMethod, JobPriority, JobStatus
from genpaper.schemas import ExtractionResult, ProcessingJob, QuotaResponse
from genpaper.services.processing_queue import PdfProcessingQueue, estimate_cost, retry_delay_ms
from genpaper.services.status_broadcast import StatusBroadcaster

URL = "https://example.org/paper.pdf"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeJobStore:
    """In-memory stand-in for ProcessingJobStore with the same quota guard."""

    def __init__(self, clock, daily_limit=50, ocr_limit=10):
        self.clock = clock
        self.rows: list[tuple[datetime, ProcessingJob]] = []
        self.quotas: dict[uuid.UUID, dict[str, int]] = {}
        self.daily_limit = daily_limit
        self.ocr_limit = ocr_limit
        self.extractions: dict[uuid.UUID, ExtractionResult] = {}

    async def record(self, job, status=None):
        snapshot = job.model_copy(deep=True)
        if status is not None:
            snapshot.status = status
        self.rows.append((self.clock(), snapshot))

    async def count_recent_failures(self, source_url, since):
        return len({
            job.id for at, job in self.rows
            if job.source_url == source_url and job.status == JobStatus.FAILED and at >= since
        })

    def statuses(self, job_id):
        return [job.status for _, job in self.rows if job.id == job_id]

    async def latest(self, job_id):
        matching = [job for _, job in self.rows if job.id == job_id]
        return matching[-1] if matching else None

    async def load_unfinished(self):
        latest: dict[str, ProcessingJob] = {}
        for _, job in self.rows:
            latest[job.id] = job
        return [
            job.model_copy(deep=True) for job in latest.values()
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING)
        ]

    def _quota(self, owner_id):
        return self.quotas.setdefault(owner_id, {"daily": 0, "ocr": 0})

    async def get_quota(self, owner_id):
        quota = self._quota(owner_id)
        return QuotaResponse(
            user_id=owner_id,
            daily_pdf_limit=self.daily_limit,
            daily_pdf_used=quota["daily"],
            monthly_ocr_limit=self.ocr_limit,
            monthly_ocr_used=quota["ocr"],
        )

    async def increment_quota(self, owner_id, used_ocr):
        quota = self._quota(owner_id)
        if quota["daily"] >= self.daily_limit:
            return False
        quota["daily"] += 1
        if used_ocr and quota["ocr"] < self.ocr_limit:
            quota["ocr"] += 1
        return True

    async def store_extraction(self, paper_id, result):
        self.extractions[paper_id] = result


class FakeExtractor:
    def __init__(self, fail=False):
        self.fail = fail
        self.seen: list[bytes] = []

    async def extract(self, pdf_bytes, options=None):
        self.seen.append(pdf_bytes)
        if self.fail:
            raise ExtractionFailure("no text found", notes=["text-read failed"])
        return ExtractionResult(
            full_text="Extracted text " * 20,
            extraction_method=ExtractionMethod.TEXT_LAYER,
            confidence=ExtractionConfidence.MEDIUM,
        )


class FakeChunker:
    def __init__(self):
        self.processed: list[uuid.UUID] = []

    async def process(self, text, paper_id):
        self.processed.append(paper_id)
        return 3


def _size(value):
    async def probe(url):
        return value
    return probe


async def _download(url):
    return b"%PDF-1.7 " + url.encode()


def _queue(store, extractor, clock, **kwargs):
    kwargs.setdefault("size_probe", _size(200_000))
    return PdfProcessingQueue(
        store,
        extractor,
        kwargs.pop("chunker", None),
        kwargs.pop("broadcaster", None),
        downloader=_download,
        clock=clock,
        retry_base_delay_ms=60_000,
        retry_max_delay_ms=600_000,
        **kwargs,
    )


def test_successful_job_completes_and_consumes_quota():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        chunker = FakeChunker()
        queue = _queue(store, FakeExtractor(), clock, chunker=chunker)
        owner, paper = uuid.uuid4(), uuid.uuid4()

        job_id = await queue.add_job(paper, URL, "Paper", owner)
        status = await queue.wait_for_job(job_id, timeout=5)

        assert status == JobStatus.COMPLETED
        assert queue.get_job_status(job_id) is None
        assert store.statuses(job_id) == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
        assert (await store.get_quota(owner)).daily_pdf_used == 1
        assert chunker.processed == [paper]
        assert paper in store.extractions
        await queue.shutdown()

    asyncio.run(scenario())


def test_failed_attempts_retry_then_fail():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        queue = _queue(store, FakeExtractor(fail=True), clock)
        owner = uuid.uuid4()

        job_id = await queue.add_job(uuid.uuid4(), URL, "Paper", owner, max_attempts=3)
        await queue.wait_idle()
        job = queue.get_job_status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.next_attempt_at > clock()

        # Not yet due: nothing starts.
        queue.process_next_job()
        assert queue.active_count == 0

        clock.advance(hours=1)
        queue.process_next_job()
        await queue.wait_idle()
        job = queue.get_job_status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 2

        clock.advance(hours=1)
        queue.process_next_job()
        await queue.wait_idle()
        assert queue.get_job_status(job_id) is None
        final = await store.latest(job_id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert "ExtractionFailure" in final.last_error
        assert (await store.get_quota(owner)).daily_pdf_used == 0
        await queue.shutdown()

    asyncio.run(scenario())


def test_repeated_failures_for_one_source_poison_the_job():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        queue = _queue(store, FakeExtractor(fail=True), clock, poison_threshold=5)
        owner = uuid.uuid4()

        finals = []
        for _ in range(5):
            job_id = await queue.add_job(uuid.uuid4(), URL, "Paper", owner, max_attempts=1)
            await queue.wait_idle()
            finals.append((await store.latest(job_id)).status)

        assert finals == [JobStatus.FAILED] * 4 + [JobStatus.POISONED]
        await queue.shutdown()

    asyncio.run(scenario())


def test_failures_outside_window_do_not_poison():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        queue = _queue(store, FakeExtractor(fail=True), clock, poison_threshold=2)
        owner = uuid.uuid4()

        await queue.add_job(uuid.uuid4(), URL, "Paper", owner, max_attempts=1)
        await queue.wait_idle()
        clock.advance(hours=25)
        job_id = await queue.add_job(uuid.uuid4(), URL, "Paper", owner, max_attempts=1)
        await queue.wait_idle()

        assert (await store.latest(job_id)).status == JobStatus.FAILED
        await queue.shutdown()

    asyncio.run(scenario())


def test_quota_counts_in_flight_jobs_and_never_overshoots():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock, daily_limit=2)
        queue = _queue(store, FakeExtractor(), clock)
        owner = uuid.uuid4()

        await queue.add_job(uuid.uuid4(), URL + "?1", "One", owner)
        await queue.add_job(uuid.uuid4(), URL + "?2", "Two", owner)
        with pytest.raises(QuotaExceeded):
            await queue.add_job(uuid.uuid4(), URL + "?3", "Three", owner)

        await queue.wait_idle()
        assert (await store.get_quota(owner)).daily_pdf_used == 2
        with pytest.raises(QuotaExceeded) as excinfo:
            await queue.add_job(uuid.uuid4(), URL + "?4", "Four", owner)
        assert excinfo.value.limit == 2

        # Another owner is unaffected.
        other = uuid.uuid4()
        await queue.add_job(uuid.uuid4(), URL + "?5", "Five", other)
        await queue.wait_idle()
        assert (await store.get_quota(owner)).daily_pdf_used == 2
        await queue.shutdown()

    asyncio.run(scenario())


def test_higher_priority_runs_first():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        extractor = FakeExtractor()
        queue = _queue(store, extractor, clock, max_concurrent=1)
        owner = uuid.uuid4()

        await queue.add_job(uuid.uuid4(), URL + "?first", "First", owner, JobPriority.LOW)
        await queue.add_job(uuid.uuid4(), URL + "?normal", "Normal", owner, JobPriority.NORMAL)
        await queue.add_job(uuid.uuid4(), URL + "?high", "High", owner, JobPriority.HIGH)
        await queue.wait_idle()

        order = [pdf.split(b"?")[1] for pdf in extractor.seen]
        assert order == [b"first", b"high", b"normal"]
        await queue.shutdown()

    asyncio.run(scenario())


def test_status_updates_are_broadcast_in_order():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        broadcaster = StatusBroadcaster()
        queue = _queue(store, FakeExtractor(), clock, broadcaster=broadcaster, max_concurrent=1)
        owner = uuid.uuid4()

        # Occupy the single slot so the second job is still pending when we subscribe.
        await queue.add_job(uuid.uuid4(), URL + "?a", "A", owner)
        job_id = await queue.add_job(uuid.uuid4(), URL + "?b", "B", owner)
        seen = []

        def broken(status):
            raise RuntimeError("subscriber bug")

        queue.subscribe_to_status(job_id, seen.append)
        queue.subscribe_to_status(job_id, broken)
        await queue.wait_idle()

        progress = [s.progress for s in seen]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert seen[-1].status == JobStatus.COMPLETED
        assert seen[-1].extraction_method == ExtractionMethod.TEXT_LAYER
        assert broadcaster._subscribers == {} and broadcaster._tokens == {}
        await queue.shutdown()

    asyncio.run(scenario())


def test_fast_track_small_document_never_queues():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        queue = _queue(store, FakeExtractor(), clock, size_probe=_size(2 * 1024 * 1024))

        job_id = await queue.add_job(uuid.uuid4(), URL, "Small", uuid.uuid4(), fast_track=True)

        assert JobStatus.PENDING not in store.statuses(job_id)
        assert store.statuses(job_id)[-1] == JobStatus.COMPLETED
        assert queue.active_count == 0

    asyncio.run(scenario())


def test_fast_track_rejects_large_or_unknown_size():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        large = _queue(store, FakeExtractor(), clock, size_probe=_size(6 * 1024 * 1024))
        with pytest.raises(FastTrackFailed):
            await large.fast_track_job(uuid.uuid4(), URL, "Large", uuid.uuid4())

        unknown = _queue(store, FakeExtractor(), clock, size_probe=_size(None))
        with pytest.raises(FastTrackFailed):
            await unknown.fast_track_job(uuid.uuid4(), URL, "Unknown", uuid.uuid4())
        assert store.rows == []

    asyncio.run(scenario())


def test_fast_track_extraction_failure_is_chained():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        queue = _queue(store, FakeExtractor(fail=True), clock, size_probe=_size(1024))

        with pytest.raises(FastTrackFailed) as excinfo:
            await queue.fast_track_job(uuid.uuid4(), URL, "Broken", uuid.uuid4())
        assert isinstance(excinfo.value.__cause__, ExtractionFailure)
        assert store.rows[-1][1].status == JobStatus.FAILED

    asyncio.run(scenario())


def test_recover_requeues_unfinished_jobs():
    async def scenario():
        clock = FakeClock()
        store = FakeJobStore(clock)
        owner = uuid.uuid4()
        for status in (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED):
            await store.record(ProcessingJob(
                id=f"pdf-{status.value}",
                paper_id=uuid.uuid4(),
                source_url=URL,
                owner_id=owner,
                status=status,
                attempts=1 if status != JobStatus.PENDING else 0,
                created_at=clock(),
            ))

        queue = _queue(store, FakeExtractor(), clock)
        recovered = await queue.recover()
        recovered_rows = {job.id: (job.status, job.attempts) for _, job in store.rows[3:]}
        assert recovered_rows == {
            "pdf-pending": (JobStatus.PENDING, 0),
            "pdf-processing": (JobStatus.PENDING, 1),
        }
        await queue.wait_idle()

        assert recovered == 2
        assert store.statuses("pdf-pending")[-1] == JobStatus.COMPLETED
        assert store.statuses("pdf-processing")[-1] == JobStatus.COMPLETED
        assert store.statuses("pdf-completed") == [JobStatus.COMPLETED]
        await queue.shutdown()

    asyncio.run(scenario())


def test_retry_delay_and_cost_estimate():
    assert retry_delay_ms(1, 1000, 30000) == 2000
    assert retry_delay_ms(2, 1000, 30000) == 4000
    assert retry_delay_ms(10, 1000, 30000) == 30000
    assert estimate_cost(None) == 0.1
    assert estimate_cost(100 * 1024 * 10) == pytest.approx(0.015)
