"""Domain errors for ingestion, generation and citation handling."""

import uuid
from enum import Enum
from typing import Any


class GenpaperError(Exception):
    """Base exception for Genpaper."""


class QuotaExceeded(GenpaperError):
    """Owner has exhausted a daily or monthly processing budget."""

    def __init__(self, owner_id: uuid.UUID, limit: int, used: int, kind: str = "daily_pdf"):
        self.owner_id = owner_id
        self.limit = limit
        self.used = used
        self.kind = kind
        super().__init__(f"{kind} quota exceeded for {owner_id}: {used}/{limit}")


class ExtractionFailure(GenpaperError):
    """All extraction strategies failed for a document."""

    def __init__(self, message: str, notes: list[str] | None = None):
        self.notes = notes or []
        super().__init__(message)


class DownloadError(ExtractionFailure):
    """Source PDF could not be downloaded or is not a PDF."""


class JobTimeout(ExtractionFailure):
    """A processing job exceeded its adaptive timeout."""


class FastTrackFailed(GenpaperError):
    """Fast-track processing was rejected or failed."""


class NoPapersFound(GenpaperError):
    """Discovery returned an empty candidate set."""


class UnresolvedSourceReference(GenpaperError):
    """A citation source reference did not match any known paper."""


class QualityCheckError(GenpaperError):
    """Section quality review could not be completed."""


class HallucinationCheckError(GenpaperError):
    """Grounding check could not be completed."""


class RewriteFailure(GenpaperError):
    """Overlap rewrite pass failed; original content is kept."""


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    QUALITY = "quality"
    USER_ACTION = "user_action"
    FATAL = "fatal"


class PipelineError(GenpaperError):
    """Classified generation pipeline error with a user-facing message."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        retryable: bool = False,
        max_retries: int = 0,
        backoff_ms: int = 0,
        user_message: str | None = None,
        technical_details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self.user_message = user_message or message
        self.technical_details = technical_details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "category": self.category.value,
            "retryable": self.retryable,
            "user_message": self.user_message,
        }


class TransientError(PipelineError):
    def __init__(self, message: str, *, max_retries: int = 3, backoff_ms: int = 1000, **kwargs: Any):
        super().__init__(
            message,
            ErrorCategory.TRANSIENT,
            retryable=True,
            max_retries=max_retries,
            backoff_ms=backoff_ms,
            user_message=kwargs.pop("user_message", "A temporary issue occurred. Please try again in a moment."),
            **kwargs,
        )


class QualityError(PipelineError):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message,
            ErrorCategory.QUALITY,
            retryable=True,
            max_retries=2,
            user_message=kwargs.pop("user_message", "Generated content did not meet quality standards."),
            **kwargs,
        )


class UserActionError(PipelineError):
    def __init__(self, message: str, user_message: str, **kwargs: Any):
        super().__init__(message, ErrorCategory.USER_ACTION, user_message=user_message, **kwargs)


class FatalError(PipelineError):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message,
            ErrorCategory.FATAL,
            user_message=kwargs.pop("user_message", "An unexpected error occurred. Please try again."),
            **kwargs,
        )


class PipelineTimeoutError(PipelineError):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message,
            ErrorCategory.TRANSIENT,
            retryable=True,
            max_retries=2,
            backoff_ms=5000,
            user_message=kwargs.pop("user_message", "The operation took too long. Please try again."),
            **kwargs,
        )


class CancellationError(PipelineError):
    def __init__(self, message: str = "Generation was cancelled", **kwargs: Any):
        super().__init__(
            message,
            ErrorCategory.FATAL,
            user_message=kwargs.pop("user_message", "Generation was cancelled."),
            **kwargs,
        )


NO_CONTENT_MESSAGE = "No relevant content found. Please add more papers to your project."


def classify_error(exc: BaseException) -> PipelineError:
    """Map any exception onto the pipeline error taxonomy."""
    if isinstance(exc, PipelineError):
        return exc

    details = {"error_type": type(exc).__name__}
    if isinstance(exc, NoPapersFound):
        return UserActionError(str(exc), NO_CONTENT_MESSAGE, technical_details=details)

    message = str(exc) or type(exc).__name__
    text = message.lower()

    if "rate limit" in text or "429" in text:
        return TransientError(message, max_retries=5, backoff_ms=2000, technical_details=details)
    if "network" in text or "connection" in text or "econnreset" in text:
        return TransientError(message, max_retries=3, backoff_ms=1000, technical_details=details)
    if "timeout" in text or "timed out" in text or "aborted" in text:
        return PipelineTimeoutError(message, technical_details=details)
    if "quality" in text or "score" in text:
        return QualityError(message, technical_details=details)
    if "no papers" in text or "no content" in text:
        return UserActionError(message, NO_CONTENT_MESSAGE, technical_details=details)
    if "unauthorized" in text or "401" in text or "api key" in text:
        return FatalError(
            message,
            user_message="Authentication with the language model provider failed.",
            technical_details=details,
        )
    return FatalError(message, technical_details=details)
