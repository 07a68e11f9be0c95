from genpaper.schemas.schemas import (
    CitationStyle,
    PaperMetadata, PaperRecord,
    ExtractionOptions, ExtractionMetadata, ExtractionResult,
    ChunkMetadata, Chunk, RetrievedChunk,
    ProcessingStatus, ProcessingJob, JobCreate, JobResponse, QuotaResponse,
    OutlineSection, GeneratedOutline, SectionContext,
    SourceRef, CitationCreate, CitationResult, CitationResponse,
    GenerationRequest, PipelineRequest, UsedCitation, SectionDraft, SectionReview,
    ClaimCheck, HallucinationReport, GeneratedSection, CitationMapEntry,
    PipelineResult, PipelineProgress, ProjectCreate, ProjectResponse,
)

__all__ = [
    "CitationStyle",
    "PaperMetadata", "PaperRecord",
    "ExtractionOptions", "ExtractionMetadata", "ExtractionResult",
    "ChunkMetadata", "Chunk", "RetrievedChunk",
    "ProcessingStatus", "ProcessingJob", "JobCreate", "JobResponse", "QuotaResponse",
    "OutlineSection", "GeneratedOutline", "SectionContext",
    "SourceRef", "CitationCreate", "CitationResult", "CitationResponse",
    "GenerationRequest", "PipelineRequest", "UsedCitation", "SectionDraft", "SectionReview",
    "ClaimCheck", "HallucinationReport", "GeneratedSection", "CitationMapEntry",
    "PipelineResult", "PipelineProgress", "ProjectCreate", "ProjectResponse",
]
