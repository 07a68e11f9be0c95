import asyncio
import uuid

import pytest

from conftest import FakeEmbedder
from genpaper.core.exceptions import HallucinationCheckError
from genpaper.schemas import RetrievedChunk, UsedCitation
from genpaper.services.quality import HallucinationDetector, SectionReviewer, extract_claims

GOOD_SECTION = (
    "Analytical engines compute tables with punched cards. "
    "Difference engines tabulate polynomials using finite differences in a mechanical way."
)


def _chunk(paper_id, content, index=0):
    return RetrievedChunk(chunk_id=uuid.uuid4(), paper_id=paper_id, chunk_index=index, content=content)


def _cite(paper_id, key):
    return UsedCitation(paper_id=paper_id, cite_key=key, citation_text="(Lovelace, 2020)")


def test_evidence_coverage_bands():
    assert SectionReviewer.evidence_coverage(0, 0) == 50
    assert SectionReviewer.evidence_coverage(2, 4) == 100
    assert SectionReviewer.evidence_coverage(1, 10) == 50
    assert SectionReviewer.evidence_coverage(0, 10) == 30


def test_review_passes_well_cited_section():
    a, b = uuid.uuid4(), uuid.uuid4()
    review = SectionReviewer().review(
        "background",
        GOOD_SECTION,
        [_cite(a, "a"), _cite(b, "b")],
        [_chunk(a, "engines"), _chunk(b, "differences")],
        target_words=20,
    )
    assert review.passed
    assert review.score == 100
    assert review.issues == []


def test_review_flags_short_uncited_section():
    chunks = [_chunk(uuid.uuid4(), f"evidence {i}", i) for i in range(4)]
    review = SectionReviewer().review("methods", "Too brief.", [], chunks, target_words=600)
    assert not review.passed
    assert any(issue.startswith("Section too short") for issue in review.issues)
    assert any(issue.startswith("Insufficient citations") for issue in review.issues)
    assert review.quality["citation_diversity"] == 30


def test_extract_claims_skips_headings_questions_and_structure():
    content = (
        "## Background\n"
        "This section reviews mechanical computing engines in detail. "
        "Analytical engines compute tables with punched cards [CITE: abc]. "
        "Is this claim a question though really? "
        "Mechanical computation predates electronics by a century."
    )
    claims = extract_claims(content)
    assert len(claims) == 2
    cited_text, cited = claims[0]
    assert cited and "punched cards" in cited_text and "[CITE" not in cited_text
    assert claims[1] == ("Mechanical computation predates electronics by a century.", False)


def test_detector_without_evidence_marks_everything_ungrounded():
    report = asyncio.run(HallucinationDetector(FakeEmbedder()).check("Background", GOOD_SECTION, []))
    assert report.total_claims == 2
    assert report.grounded_claims == 0
    assert report.ungrounded_ratio == 1.0
    assert not report.passed


def test_detector_grounds_claims_against_evidence():
    paper = uuid.uuid4()
    content = (
        "Analytical engines compute tables with punched cards [CITE: x]. "
        "Volcanic eruptions reshape distant island coastlines dramatically."
    )
    evidence = [_chunk(paper, "Analytical engines compute tables with punched cards.")]
    report = asyncio.run(HallucinationDetector(FakeEmbedder()).check("Background", content, evidence))
    grounded = [r for r in report.results if r.is_grounded]
    assert report.total_claims == 2
    assert len(grounded) == 1
    assert grounded[0].cited and grounded[0].best_paper_id == paper
    assert report.ungrounded_ratio == 0.5


def test_detector_without_claims_passes():
    report = asyncio.run(HallucinationDetector(FakeEmbedder()).check("Intro", "# Title\nShort.", []))
    assert report.passed and report.total_claims == 0


def test_detector_embedding_failure_raises():
    evidence = [_chunk(uuid.uuid4(), "anything")]
    with pytest.raises(HallucinationCheckError):
        asyncio.run(HallucinationDetector(FakeEmbedder(fail=True)).check("Background", GOOD_SECTION, evidence))
