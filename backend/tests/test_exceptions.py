import uuid

import pytest

from genpaper.core.exceptions import (
    NO_CONTENT_MESSAGE,
    CancellationError,
    ErrorCategory,
    FatalError,
    NoPapersFound,
    PipelineTimeoutError,
    TransientError,
    UserActionError,
    classify_error,
)
from genpaper.schemas import RetrievedChunk
from genpaper.services.evidence_tracker import EvidenceTracker, content_hash


@pytest.mark.parametrize(
    "message,expected_type,retries",
    [
        ("Rate limit reached for requests", TransientError, 5),
        ("Connection reset by peer", TransientError, 3),
        ("Request timed out", PipelineTimeoutError, 2),
        ("Invalid API key provided", FatalError, 0),
        ("boom", FatalError, 0),
    ],
)
def test_classify_error_by_message(message, expected_type, retries):
    error = classify_error(RuntimeError(message))
    assert type(error) is expected_type
    assert error.max_retries == retries
    assert error.technical_details == {"error_type": "RuntimeError"}


def test_classify_no_papers_is_user_action():
    error = classify_error(NoPapersFound("empty candidate set"))
    assert isinstance(error, UserActionError)
    assert error.category is ErrorCategory.USER_ACTION
    assert error.user_message == NO_CONTENT_MESSAGE
    assert not error.retryable


def test_classify_passes_pipeline_errors_through():
    cancelled = CancellationError()
    assert classify_error(cancelled) is cancelled
    assert cancelled.to_dict()["user_message"] == "Generation was cancelled."


def _chunk(paper_id, content):
    return RetrievedChunk(chunk_id=uuid.uuid4(), paper_id=paper_id, chunk_index=0, content=content)


def test_content_hash_ignores_case_spacing_and_punctuation():
    assert content_hash("Engines,  compute\nTables!") == content_hash("engines compute tables")
    long_text = "word " * 60
    assert "::" in content_hash(long_text)


def test_evidence_tracker_counts_first_use_only():
    paper = uuid.uuid4()
    tracker = EvidenceTracker()
    first = [_chunk(paper, "Engines compute tables."), _chunk(paper, "Cards encode programs.")]
    assert tracker.track_usage(first, "intro") == 2
    assert tracker.track_usage([_chunk(paper, "engines compute tables")], "background") == 0

    fresh = _chunk(paper, "Gears carry digits.")
    assert tracker.filter_unused(first + [fresh]) == [fresh]
    assert tracker.is_already_used(paper, "Cards encode programs.")
    assert not tracker.is_already_used(uuid.uuid4(), "Cards encode programs.")
    assert tracker.stats() == {"total_used": 2, "sections": 1}

    tracker.clear()
    assert tracker.stats() == {"total_used": 0, "sections": 0}
