"""Durable mirror of processing jobs, quota ledger and extraction results."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select, update, func, case, distinct
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.config import get_settings
from genpaper.core.database import async_session_maker
from genpaper.models import Paper, ProcessingJobLog, UserQuota, JobStatus, JobPriority
from genpaper.schemas import ProcessingJob, ExtractionResult, QuotaResponse

settings = get_settings()
logger = logging.getLogger(__name__)


def _row_to_job(row: ProcessingJobLog) -> ProcessingJob:
    meta = row.job_metadata or {}
    return ProcessingJob(
        id=row.job_id,
        paper_id=row.paper_id,
        source_url=row.source_url,
        title=row.title or "",
        owner_id=row.user_id,
        priority=JobPriority(row.priority),
        status=JobStatus(row.status),
        attempts=row.attempts or 0,
        max_attempts=row.max_attempts or settings.default_max_attempts,
        created_at=row.job_created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_error=row.error_message,
        extraction_result=ExtractionResult.model_validate(row.extraction_result) if row.extraction_result else None,
        file_size=meta.get("file_size"),
        estimated_cost=meta.get("estimated_cost"),
    )


class ProcessingJobStore:
    """Postgres-backed job history and per-user quota accounting."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.session_maker = session_maker or async_session_maker

    async def record(self, job: ProcessingJob, status: JobStatus | None = None) -> None:
        """Append a transition row for the job's current snapshot."""
        async with self.session_maker() as db:
            db.add(
                ProcessingJobLog(
                    job_id=job.id,
                    paper_id=job.paper_id,
                    source_url=job.source_url,
                    user_id=job.owner_id,
                    title=job.title,
                    priority=job.priority.value,
                    status=(status or job.status).value,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    error_message=job.last_error,
                    extraction_result=job.extraction_result.model_dump(mode="json") if job.extraction_result else None,
                    job_metadata={"file_size": job.file_size, "estimated_cost": job.estimated_cost},
                    job_created_at=job.created_at,
                    started_at=job.started_at,
                    completed_at=job.completed_at,
                )
            )
            await db.commit()

    async def count_recent_failures(self, source_url: str, since: datetime) -> int:
        """Distinct jobs with a failed attempt for this URL since the given time."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(distinct(ProcessingJobLog.job_id))).where(
                    ProcessingJobLog.source_url == source_url,
                    ProcessingJobLog.status == JobStatus.FAILED.value,
                    ProcessingJobLog.created_at >= since,
                )
            )
            return int(result.scalar_one() or 0)

    async def _latest_rows(self, db: AsyncSession, job_id: str | None = None) -> list[ProcessingJobLog]:
        latest = select(func.max(ProcessingJobLog.id).label("id")).group_by(ProcessingJobLog.job_id)
        if job_id is not None:
            latest = latest.where(ProcessingJobLog.job_id == job_id)
        result = await db.execute(
            select(ProcessingJobLog).where(ProcessingJobLog.id.in_(latest.scalar_subquery()))
        )
        return list(result.scalars().all())

    async def load_unfinished(self) -> list[ProcessingJob]:
        async with self.session_maker() as db:
            rows = await self._latest_rows(db)
        unfinished = {JobStatus.PENDING.value, JobStatus.PROCESSING.value}
        return [_row_to_job(r) for r in rows if r.status in unfinished]

    async def latest(self, job_id: str) -> ProcessingJob | None:
        async with self.session_maker() as db:
            rows = await self._latest_rows(db, job_id)
        return _row_to_job(rows[0]) if rows else None

    async def get_quota(self, owner_id: uuid.UUID) -> QuotaResponse:
        """Fetch the owner's quota, creating it and rolling over expired windows."""
        day_start = func.date_trunc("day", func.now())
        month_start = func.date_trunc("month", func.now())
        async with self.session_maker() as db:
            await db.execute(
                insert(UserQuota)
                .values(
                    user_id=owner_id,
                    daily_pdf_limit=settings.default_daily_pdf_limit,
                    daily_pdf_used=0,
                    monthly_ocr_limit=settings.default_monthly_ocr_limit,
                    monthly_ocr_used=0,
                    last_daily_reset=datetime.now(timezone.utc),
                    last_monthly_reset=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            daily_expired = UserQuota.last_daily_reset < day_start
            monthly_expired = UserQuota.last_monthly_reset < month_start
            result = await db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == owner_id)
                .values(
                    daily_pdf_used=case((daily_expired, 0), else_=UserQuota.daily_pdf_used),
                    last_daily_reset=case((daily_expired, func.now()), else_=UserQuota.last_daily_reset),
                    monthly_ocr_used=case((monthly_expired, 0), else_=UserQuota.monthly_ocr_used),
                    last_monthly_reset=case((monthly_expired, func.now()), else_=UserQuota.last_monthly_reset),
                )
                .returning(UserQuota)
                .execution_options(synchronize_session=False)
            )
            quota = result.scalar_one()
            snapshot = QuotaResponse.model_validate(quota)
            await db.commit()
            return snapshot

    async def increment_quota(self, owner_id: uuid.UUID, used_ocr: bool) -> bool:
        """Atomically consume one PDF (and one OCR run) without exceeding limits."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(UserQuota)
                .where(
                    UserQuota.user_id == owner_id,
                    UserQuota.daily_pdf_used < UserQuota.daily_pdf_limit,
                )
                .values(daily_pdf_used=UserQuota.daily_pdf_used + 1)
                .execution_options(synchronize_session=False)
            )
            incremented = result.rowcount > 0
            if used_ocr:
                await db.execute(
                    update(UserQuota)
                    .where(
                        UserQuota.user_id == owner_id,
                        UserQuota.monthly_ocr_used < UserQuota.monthly_ocr_limit,
                    )
                    .values(monthly_ocr_used=UserQuota.monthly_ocr_used + 1)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
        if not incremented:
            logger.warning("Daily PDF quota for %s already at limit; usage not incremented", owner_id)
        return incremented

    async def store_extraction(self, paper_id: uuid.UUID, result: ExtractionResult) -> None:
        async with self.session_maker() as db:
            paper = await db.get(Paper, paper_id)
            if not paper:
                logger.warning("Paper %s vanished before extraction result could be stored", paper_id)
                return
            paper.pdf_content = result.full_text
            if not paper.abstract and result.abstract:
                paper.abstract = result.abstract
            if not paper.authors and result.authors:
                paper.authors = list(result.authors)
            if not paper.venue and result.venue:
                paper.venue = result.venue
            if not paper.publication_year and result.year:
                paper.publication_year = result.year
            metadata = dict(paper.paper_metadata or {})
            metadata["pdf_processing"] = {
                "extraction_method": result.extraction_method.value,
                "extraction_time_ms": result.extraction_time_ms,
                "confidence": result.confidence.value,
                "word_count": result.metadata.word_count,
                "page_count": result.metadata.page_count,
                "is_scanned": result.metadata.is_scanned,
                "processing_notes": result.metadata.processing_notes,
                "processed_at": datetime.now(timezone.utc).isoformat(),
            }
            paper.paper_metadata = metadata
            await db.commit()
