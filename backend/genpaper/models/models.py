import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    String, Text, Boolean, Integer, Float, DateTime, ForeignKey, Computed,
    UniqueConstraint, Index, JSON, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID, JSONB, TSVECTOR
from pgvector.sqlalchemy import Vector
from genpaper.core.config import get_settings
from genpaper.core.database import Base

settings = get_settings()


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    POISONED = "poisoned"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.POISONED})


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return {"low": 1, "normal": 2, "high": 3}[self.value]


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class ExtractionMethod(str, Enum):
    DOI_LOOKUP = "doi-lookup"
    GROBID = "grobid"
    TEXT_LAYER = "text-layer"
    OCR = "ocr"
    FALLBACK = "fallback"


class ExtractionConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SectionType(str, Enum):
    ABSTRACT = "abstract"
    INTRODUCTION = "introduction"
    METHODS = "methods"
    RESULTS = "results"
    DISCUSSION = "discussion"
    CONCLUSION = "conclusion"


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    from datetime import timezone
    return datetime.now(timezone.utc)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    topic: Mapped[str] = mapped_column(Text, nullable=False)
    paper_type: Mapped[str] = mapped_column(String(50), default="literature_review")
    citation_style: Mapped[str] = mapped_column(String(20), default="apa")
    status: Mapped[ProjectStatus] = mapped_column(String(20), default=ProjectStatus.DRAFT)
    content: Mapped[str | None] = mapped_column(Text)
    citation_map: Mapped[dict] = mapped_column(JSON, default=dict)
    generation_config: Mapped[dict] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    citations: Mapped[list["ProjectCitation"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_projects_owner", "owner_id"),)


class Paper(Base):
    __tablename__ = "papers"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    authors: Mapped[list] = mapped_column(JSON, default=list)
    abstract: Mapped[str | None] = mapped_column(Text)
    publication_year: Mapped[int | None] = mapped_column(Integer)
    venue: Mapped[str | None] = mapped_column(String(500))
    doi: Mapped[str | None] = mapped_column(String(255))
    url: Mapped[str | None] = mapped_column(Text)
    pdf_url: Mapped[str | None] = mapped_column(Text)
    pdf_content: Mapped[str | None] = mapped_column(Text)
    citation_count: Mapped[int] = mapped_column(Integer, default=0)
    source: Mapped[str | None] = mapped_column(String(50))
    paper_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    chunks: Mapped[list["PaperChunk"]] = relationship(
        back_populates="paper",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("doi", name="uq_papers_doi"),
        Index("idx_papers_year", "publication_year"),
    )


class LibraryPaper(Base):
    __tablename__ = "library_papers"

    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    paper_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("papers.id", ondelete="CASCADE"), primary_key=True
    )
    notes: Mapped[str | None] = mapped_column(Text)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    paper: Mapped["Paper"] = relationship()


class PaperChunk(Base):
    __tablename__ = "paper_chunks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    paper_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("papers.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list | None] = mapped_column(Vector(settings.embedding_dimensions))
    content_tsv: Mapped[str | None] = mapped_column(
        TSVECTOR, Computed("to_tsvector('english', content)", persisted=True)
    )
    section_type: Mapped[str | None] = mapped_column(String(20))
    has_citations: Mapped[bool] = mapped_column(Boolean, default=False)
    has_figures: Mapped[bool] = mapped_column(Boolean, default=False)
    has_data: Mapped[bool] = mapped_column(Boolean, default=False)
    is_conclusion: Mapped[bool] = mapped_column(Boolean, default=False)
    complexity_score: Mapped[float] = mapped_column(Float, default=0.5)
    key_terms: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    paper: Mapped["Paper"] = relationship(back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("paper_id", "chunk_index", name="uq_chunks_paper_index"),
        Index("idx_chunks_paper", "paper_id"),
        Index("idx_chunks_tsv", "content_tsv", postgresql_using="gin"),
        CheckConstraint("complexity_score >= 0 AND complexity_score <= 1", name="ck_chunks_complexity"),
    )


class ProcessingJobLog(Base):
    """Durable mirror of queue job transitions, one row per transition."""

    __tablename__ = "pdf_processing_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    paper_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    title: Mapped[str | None] = mapped_column(String(1000))
    priority: Mapped[JobPriority] = mapped_column(String(10), default=JobPriority.NORMAL)
    status: Mapped[JobStatus] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[str | None] = mapped_column(Text)
    extraction_result: Mapped[dict | None] = mapped_column(JSON)
    job_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    job_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_pdf_logs_job", "job_id", "id"),
        Index("idx_pdf_logs_url_status", "source_url", "status", "created_at"),
    )


class UserQuota(Base):
    __tablename__ = "user_quotas"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    daily_pdf_limit: Mapped[int] = mapped_column(Integer, default=settings.default_daily_pdf_limit)
    daily_pdf_used: Mapped[int] = mapped_column(Integer, default=0)
    monthly_ocr_limit: Mapped[int] = mapped_column(Integer, default=settings.default_monthly_ocr_limit)
    monthly_ocr_used: Mapped[int] = mapped_column(Integer, default=0)
    last_daily_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    last_monthly_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        CheckConstraint("daily_pdf_used >= 0", name="ck_quota_daily_nonneg"),
        CheckConstraint("monthly_ocr_used >= 0", name="ck_quota_ocr_nonneg"),
    )


class ProjectCitation(Base):
    __tablename__ = "project_citations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    paper_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("papers.id", ondelete="SET NULL")
    )
    cite_key: Mapped[str] = mapped_column(String(255), nullable=False)
    csl_json: Mapped[dict] = mapped_column(JSONB, default=dict)
    first_seen_order: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    quote: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    project: Mapped["Project"] = relationship(back_populates="citations")

    __table_args__ = (
        UniqueConstraint("project_id", "cite_key", name="uq_citations_project_key"),
        UniqueConstraint("project_id", "first_seen_order", name="uq_citations_project_order"),
    )
