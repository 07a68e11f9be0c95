from genpaper.models.models import (
    Project, Paper, LibraryPaper, PaperChunk,
    ProcessingJobLog, UserQuota, ProjectCitation,
    JobStatus, JobPriority, ProjectStatus,
    ExtractionMethod, ExtractionConfidence, SectionType,
    TERMINAL_JOB_STATUSES,
)

__all__ = [
    "Project", "Paper", "LibraryPaper", "PaperChunk",
    "ProcessingJobLog", "UserQuota", "ProjectCitation",
    "JobStatus", "JobPriority", "ProjectStatus",
    "ExtractionMethod", "ExtractionConfidence", "SectionType",
    "TERMINAL_JOB_STATUSES",
]
