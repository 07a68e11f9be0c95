"""Section quality review and claim grounding checks."""

import logging
import re
from typing import Sequence

from genpaper.core.exceptions import HallucinationCheckError
from genpaper.schemas import SectionReview, HallucinationReport, ClaimCheck, RetrievedChunk, UsedCitation
from genpaper.services.citation_formatter import CITE_MARKER
from genpaper.services.embedding import cosine_similarity
from genpaper.utils.text import internal_duplication_score, word_count

logger = logging.getLogger(__name__)

MIN_CITATIONS = 2
DUPLICATION_FLOOR = 60
PASS_AVERAGE = 60

GROUNDING_THRESHOLD = 0.45
CITED_GROUNDING_THRESHOLD = 0.5
MIN_CLAIM_LENGTH = 30
MAX_CLAIMS = 20
PASS_GROUNDED_RATIO = 0.7
UNGROUNDED_ISSUE_RATIO = 0.3

_SENTENCE = re.compile(r"[^.!?]+[.!?]+")
_AUTHOR_YEAR = re.compile(r"\([^()]+,\s*\d{4}\)")
_STRUCTURAL_PREFIXES = ("this section", "in this", "the following", "we will", "as mentioned")


class SectionReviewer:
    """Verifiable quality metrics only: length, citation use and repetition."""

    @staticmethod
    def evidence_coverage(citation_count: int, available_chunks: int) -> int:
        if available_chunks == 0:
            return 50
        utilization = citation_count / max(1, available_chunks)
        if utilization >= 0.3:
            return 100
        if utilization >= 0.15:
            return 70
        if utilization >= 0.05:
            return 50
        return 30

    @staticmethod
    def citation_diversity(citations: Sequence[UsedCitation], chunks: Sequence[RetrievedChunk]) -> int:
        if not citations:
            return 30
        unique_cited = len({c.paper_id for c in citations})
        available = len({c.paper_id for c in chunks})
        diversity_ratio = unique_cited / len(citations)
        coverage_ratio = unique_cited / available if available else 0
        return round(diversity_ratio * 60 + coverage_ratio * 40)

    def review(
        self,
        section_key: str,
        content: str,
        citations: Sequence[UsedCitation],
        chunks: Sequence[RetrievedChunk],
        target_words: int,
    ) -> SectionReview:
        issues: list[str] = []
        recommendations: list[str] = []

        words = word_count(content)
        citation_count = len(citations)
        distinct_sources = len({c.paper_id for c in citations})

        coverage = self.evidence_coverage(citation_count, len(chunks))
        duplication = internal_duplication_score(content)
        diversity = self.citation_diversity(citations, chunks)

        if words < target_words * 0.6:
            issues.append(f"Section too short: {words} words (target: {target_words})")
            recommendations.append("Expand with more detailed analysis and evidence")
        elif words > target_words * 1.5:
            issues.append(f"Section too long: {words} words (target: {target_words})")
            recommendations.append("Focus content and remove redundant information")

        if citation_count < MIN_CITATIONS:
            issues.append(f"Insufficient citations: {citation_count} (minimum: {MIN_CITATIONS})")
            recommendations.append("Add more supporting evidence from provided sources")

        if len(chunks) >= 2 and distinct_sources < min(2, len(chunks)):
            issues.append(f"Limited source diversity: {distinct_sources} distinct sources")
            recommendations.append("Draw evidence from more diverse sources")

        if duplication < DUPLICATION_FLOOR:
            issues.append("High internal repetition detected")
            recommendations.append("Reduce redundant phrasing within the section")

        average = (coverage + duplication + diversity) / 3
        return SectionReview(
            section=section_key,
            passed=not issues and average >= PASS_AVERAGE,
            score=round(average),
            issues=issues,
            recommendations=recommendations,
            quality={
                "evidence_coverage": coverage,
                "duplication_check": duplication,
                "citation_diversity": diversity,
            },
        )


def _is_structural(sentence: str) -> bool:
    lower = sentence.lower()
    if lower.startswith(_STRUCTURAL_PREFIXES) or "this paper" in lower:
        return True
    return "is important" in lower and len(lower.split()) < 10


def extract_claims(content: str) -> list[tuple[str, bool]]:
    """Factual-looking sentences as (text, cited) pairs; headings and questions are skipped."""
    body = "\n".join(line for line in content.splitlines() if not line.lstrip().startswith("#"))
    claims = []
    for match in _SENTENCE.finditer(body):
        sentence = match.group(0).strip()
        cited = bool(CITE_MARKER.search(sentence) or _AUTHOR_YEAR.search(sentence))
        text = re.sub(r"\s+", " ", CITE_MARKER.sub("", sentence)).strip()
        if len(text) < MIN_CLAIM_LENGTH or text.endswith("?") or _is_structural(text):
            continue
        claims.append((text, cited))
    return claims


class HallucinationDetector:
    """Embedding-similarity grounding of claims against the section's own evidence."""

    def __init__(self, embedder, max_claims: int = MAX_CLAIMS):
        self.embedder = embedder
        self.max_claims = max_claims

    def _select(self, claims: list[tuple[str, bool]]) -> list[tuple[str, bool]]:
        if len(claims) <= self.max_claims:
            return claims
        cited = [c for c in claims if c[1]]
        uncited = [c for c in claims if not c[1]]
        half = self.max_claims // 2
        return cited[: self.max_claims - half] + uncited[:half]

    async def check(self, section_title: str, content: str, evidence: Sequence[RetrievedChunk]) -> HallucinationReport:
        claims = self._select(extract_claims(content))
        if not claims:
            return HallucinationReport(
                section_title=section_title, total_claims=0, grounded_claims=0, ungrounded_ratio=0.0, passed=True,
            )

        results: list[ClaimCheck] = []
        if evidence:
            try:
                vectors = await self.embedder.embed_many([c[0] for c in claims] + [e.content for e in evidence])
            except Exception as e:
                raise HallucinationCheckError(f"Embedding failed for {section_title!r}: {e}") from e
            claim_vecs, evidence_vecs = vectors[: len(claims)], vectors[len(claims):]
            for (text, cited), vec in zip(claims, claim_vecs):
                scores = [cosine_similarity(vec, ev) for ev in evidence_vecs]
                best = max(range(len(scores)), key=scores.__getitem__)
                threshold = CITED_GROUNDING_THRESHOLD if cited else GROUNDING_THRESHOLD
                results.append(ClaimCheck(
                    claim=text,
                    is_grounded=scores[best] >= threshold,
                    similarity=round(scores[best], 4),
                    best_paper_id=evidence[best].paper_id,
                    cited=cited,
                ))
        else:
            results = [ClaimCheck(claim=text, is_grounded=False, similarity=0.0, cited=cited) for text, cited in claims]

        grounded = sum(1 for r in results if r.is_grounded)
        ratio = (len(results) - grounded) / len(results)
        logger.debug("Grounding for %r: %d/%d claims grounded", section_title, grounded, len(results))
        return HallucinationReport(
            section_title=section_title,
            total_claims=len(results),
            grounded_claims=grounded,
            ungrounded_ratio=round(ratio, 4),
            passed=(1 - ratio) >= PASS_GROUNDED_RATIO,
            results=results,
        )
