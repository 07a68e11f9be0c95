import uuid
from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, Field, model_validator

from genpaper.models import (
    JobStatus, JobPriority, ProjectStatus, ExtractionMethod, ExtractionConfidence, SectionType,
)

CitationStyle = Literal["apa", "mla", "chicago", "harvard", "ieee"]


# Papers

class PaperMetadata(BaseModel):
    """Bibliographic record returned by a literature search provider."""
    title: str
    authors: list[str] = Field(default_factory=list)
    abstract: str | None = None
    year: int | None = None
    venue: str | None = None
    doi: str | None = None
    url: str | None = None
    pdf_url: str | None = None
    citation_count: int = 0
    source: str | None = None


class PaperRecord(BaseModel):
    id: uuid.UUID
    title: str
    authors: list[str] = Field(default_factory=list)
    abstract: str | None = None
    publication_year: int | None = None
    venue: str | None = None
    doi: str | None = None
    url: str | None = None
    pdf_url: str | None = None
    citation_count: int = 0
    source: str | None = None
    has_content: bool = False

    class Config:
        from_attributes = True


# Extraction

class ExtractionOptions(BaseModel):
    grobid_endpoint: str | None = None
    enable_ocr: bool = False
    max_timeout_ms: int = 30000


class ExtractionMetadata(BaseModel):
    word_count: int = 0
    page_count: int = 0
    is_scanned: bool = False
    processing_notes: list[str] = Field(default_factory=list)

    class Config:
        frozen = True


class ExtractionResult(BaseModel):
    full_text: str
    extraction_method: ExtractionMethod
    confidence: ExtractionConfidence
    title: str | None = None
    authors: tuple[str, ...] = ()
    abstract: str | None = None
    doi: str | None = None
    venue: str | None = None
    year: int | None = None
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)
    extraction_time_ms: int = 0

    class Config:
        frozen = True


# Chunks

class ChunkMetadata(BaseModel):
    section_type: SectionType | None = None
    has_citations: bool = False
    has_figures: bool = False
    has_data: bool = False
    is_conclusion: bool = False
    complexity_score: float = Field(default=0.5, ge=0.0, le=1.0)
    key_terms: list[str] = Field(default_factory=list, max_length=5)


class Chunk(BaseModel):
    id: uuid.UUID
    paper_id: uuid.UUID
    index: int
    content: str
    embedding: list[float] | None = None
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class RetrievedChunk(BaseModel):
    chunk_id: uuid.UUID
    paper_id: uuid.UUID
    chunk_index: int
    content: str
    score: float = 0.0
    citation_count: int = 0
    section_type: SectionType | None = None


# Processing queue

class ProcessingStatus(BaseModel):
    job_id: str
    status: JobStatus
    progress: int = Field(ge=0, le=100)
    message: str
    extraction_method: ExtractionMethod | None = None
    confidence: ExtractionConfidence | None = None
    time_elapsed_ms: int | None = None


class ProcessingJob(BaseModel):
    """In-memory queue job; the queue owns every status transition."""
    id: str
    paper_id: uuid.UUID
    source_url: str
    title: str = ""
    owner_id: uuid.UUID
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    extraction_result: ExtractionResult | None = None
    file_size: int | None = None
    estimated_cost: float | None = None


class JobCreate(BaseModel):
    paper_id: uuid.UUID
    source_url: str = Field(min_length=1)
    title: str = ""
    priority: JobPriority = JobPriority.NORMAL
    max_attempts: int | None = Field(default=None, ge=1, le=10)
    fast_track: bool = False


class JobResponse(BaseModel):
    id: str
    paper_id: uuid.UUID
    source_url: str
    title: str | None = None
    priority: JobPriority
    status: JobStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    extraction_method: ExtractionMethod | None = None
    confidence: ExtractionConfidence | None = None


class QuotaResponse(BaseModel):
    user_id: uuid.UUID
    daily_pdf_limit: int
    daily_pdf_used: int
    monthly_ocr_limit: int
    monthly_ocr_used: int
    last_daily_reset: datetime | None = None
    last_monthly_reset: datetime | None = None

    class Config:
        from_attributes = True


# Outline and context

class OutlineSection(BaseModel):
    key: str
    title: str
    key_points: list[str] = Field(default_factory=list)
    candidate_paper_ids: list[uuid.UUID] = Field(default_factory=list)
    expected_words: int = 600


class GeneratedOutline(BaseModel):
    title: str
    paper_type: str
    sections: list[OutlineSection]


class SectionContext(BaseModel):
    section_key: str
    title: str
    key_points: list[str] = Field(default_factory=list)
    candidate_paper_ids: list[uuid.UUID] = Field(default_factory=list)
    context_chunks: list[RetrievedChunk] = Field(default_factory=list)
    expected_words: int = 600


# Citations

class SourceRef(BaseModel):
    paper_id: uuid.UUID | None = None
    doi: str | None = None
    title: str | None = None
    year: int | None = None

    @model_validator(mode="after")
    def require_reference(self) -> "SourceRef":
        if not (self.paper_id or self.doi or self.title):
            raise ValueError("source reference needs a paper_id, doi or title")
        return self


class CitationCreate(BaseModel):
    source_ref: SourceRef
    reason: str = ""
    quote: str | None = None


class CitationResult(BaseModel):
    cite_key: str
    csl: dict[str, Any]
    is_new: bool
    first_seen_order: int
    paper_id: uuid.UUID | None = None


class CitationResponse(BaseModel):
    id: uuid.UUID
    cite_key: str
    paper_id: uuid.UUID | None = None
    csl_json: dict[str, Any]
    first_seen_order: int
    reason: str | None = None
    quote: str | None = None
    inline: str
    reference: str

    class Config:
        from_attributes = True


# Generation

class GenerationRequest(BaseModel):
    topic: str = Field(min_length=3, max_length=2000)
    paper_type: str = "literature_review"
    library_paper_ids: list[uuid.UUID] = Field(default_factory=list)
    use_library_only: bool = False
    sources: list[str] | None = None
    max_results: int = Field(default=25, ge=1, le=200)
    citation_style: CitationStyle = "apa"
    max_tokens: int | None = Field(default=None, ge=1000)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    concurrent_sections: bool = False


class PipelineRequest(GenerationRequest):
    project_id: uuid.UUID
    owner_id: uuid.UUID


class UsedCitation(BaseModel):
    paper_id: uuid.UUID
    cite_key: str
    citation_text: str


class SectionDraft(BaseModel):
    section_key: str
    title: str
    content: str
    citations: list[UsedCitation] = Field(default_factory=list)
    used_chunk_ids: list[uuid.UUID] = Field(default_factory=list)


class SectionReview(BaseModel):
    section: str
    passed: bool
    score: int = Field(ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    quality: dict[str, int] = Field(default_factory=dict)


class ClaimCheck(BaseModel):
    claim: str
    is_grounded: bool
    similarity: float
    best_paper_id: uuid.UUID | None = None
    cited: bool = False


class HallucinationReport(BaseModel):
    section_title: str
    total_claims: int
    grounded_claims: int
    ungrounded_ratio: float
    passed: bool
    results: list[ClaimCheck] = Field(default_factory=list)


class GeneratedSection(BaseModel):
    section_key: str
    title: str
    content: str
    citations: list[UsedCitation] = Field(default_factory=list)
    quality_score: float = 0.0
    issues: list[str] = Field(default_factory=list)
    rewritten: bool = False


class CitationMapEntry(BaseModel):
    paper_id: uuid.UUID
    cite_key: str
    citation_text: str


class PipelineResult(BaseModel):
    project_id: uuid.UUID
    content: str
    outline: GeneratedOutline
    sections: list[GeneratedSection]
    citations: dict[str, CitationMapEntry]
    papers_used: int
    quality_score: float


class PipelineProgress(BaseModel):
    stage: str
    progress: int = Field(ge=0, le=100)
    message: str
    data: dict[str, Any] | None = None


class ProjectCreate(BaseModel):
    topic: str = Field(min_length=3, max_length=2000)
    paper_type: str = "literature_review"
    citation_style: CitationStyle = "apa"


class ProjectResponse(BaseModel):
    id: uuid.UUID
    topic: str
    paper_type: str
    citation_style: str
    status: ProjectStatus
    content: str | None = None
    rendered_content: str | None = None
    citation_map: dict = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True
