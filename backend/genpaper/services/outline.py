import json
import logging
import re
from typing import Any, Sequence

from openai import AsyncOpenAI

from genpaper.core.config import get_settings
from genpaper.schemas import GeneratedOutline, OutlineSection, PaperRecord
from genpaper.services.retrieval import get_first_author_last_name

settings = get_settings()
logger = logging.getLogger(__name__)

DEFAULT_SECTIONS: dict[str, list[tuple[str, int]]] = {
    "literature_review": [
        ("Introduction", 500),
        ("Search Methodology", 400),
        ("Thematic Analysis", 1200),
        ("Synthesis", 800),
        ("Research Gaps", 500),
        ("Conclusion", 400),
    ],
    "research_article": [
        ("Introduction", 600),
        ("Literature Review", 900),
        ("Methodology", 800),
        ("Results", 800),
        ("Discussion", 800),
        ("Limitations", 300),
        ("Conclusion", 400),
    ],
}


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", title.lower()).strip("_") or "section"


def default_outline(topic: str, paper_type: str, papers: Sequence[PaperRecord]) -> GeneratedOutline:
    """Deterministic outline for the paper type; every paper is a candidate everywhere."""
    spec = DEFAULT_SECTIONS.get(paper_type, DEFAULT_SECTIONS["literature_review"])
    paper_ids = [p.id for p in papers]
    return GeneratedOutline(
        title=topic.strip().rstrip(".")[:200],
        paper_type=paper_type,
        sections=[
            OutlineSection(key=_slug(title), title=title, candidate_paper_ids=list(paper_ids), expected_words=words)
            for title, words in spec
        ],
    )


def _extract_json_object(raw: str) -> Any:
    raw = raw.strip()
    if raw.startswith("```"):
        parts = raw.split("```")
        raw = parts[1].strip() if len(parts) >= 2 else raw
        if raw.startswith("json"):
            raw = raw[4:].strip()
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        raw = raw[start:end + 1]
    return json.loads(raw)


def parse_outline(raw: str, topic: str, paper_type: str, papers: Sequence[PaperRecord]) -> GeneratedOutline | None:
    """Parse the model's JSON outline; candidate ids are restricted to the collected papers."""
    try:
        data = _extract_json_object(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("sections"), list):
        return None

    valid_ids = {str(p.id): p.id for p in papers}
    sections: list[OutlineSection] = []
    seen_keys: set[str] = set()
    for item in data["sections"]:
        if not isinstance(item, dict) or not str(item.get("title") or "").strip():
            continue
        title = str(item["title"]).strip()
        key = str(item.get("key") or _slug(title))
        while key in seen_keys:
            key = f"{key}_{len(seen_keys)}"
        seen_keys.add(key)

        candidates = [valid_ids[str(pid)] for pid in item.get("candidate_paper_ids") or [] if str(pid) in valid_ids]
        try:
            expected = int(item.get("expected_words") or 600)
        except (TypeError, ValueError):
            expected = 600
        sections.append(OutlineSection(
            key=key,
            title=title,
            key_points=[str(k) for k in item.get("key_points") or [] if str(k).strip()][:8],
            candidate_paper_ids=list(dict.fromkeys(candidates)) or list(valid_ids.values()),
            expected_words=max(100, min(expected, 4000)),
        ))

    if not sections:
        return None
    return GeneratedOutline(
        title=str(data.get("title") or topic).strip()[:200],
        paper_type=paper_type,
        sections=sections,
    )


class OutlineGenerator:
    def __init__(self, client: AsyncOpenAI, model: str | None = None):
        self.client = client
        self.model = model or settings.openai_model

    def _build_prompt(self, topic: str, paper_type: str, papers: Sequence[PaperRecord]) -> str:
        listing = "\n".join(
            f"- {p.id}: {p.title} ({get_first_author_last_name(p.authors)}, {p.publication_year or 'n.d.'})"
            for p in papers
        )
        return (
            f"Plan a {paper_type.replace('_', ' ')} on: {topic}\n\n"
            f"Available papers:\n{listing}\n\n"
            "Return only JSON: {\"title\": str, \"sections\": [{\"key\": str, \"title\": str, "
            "\"key_points\": [str], \"candidate_paper_ids\": [paper id], \"expected_words\": int}]}. "
            "Assign each section the papers that support it."
        )

    async def generate(self, topic: str, paper_type: str, papers: Sequence[PaperRecord]) -> GeneratedOutline:
        papers = list(papers)
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You plan academic papers and answer with JSON only."},
                    {"role": "user", "content": self._build_prompt(topic, paper_type, papers[: settings.max_papers_for_outline])},
                ],
                temperature=settings.generation_temperature,
                max_tokens=2000,
            )
            raw = completion.choices[0].message.content or ""
        except Exception:
            logger.warning("Outline generation failed; using default outline", exc_info=True)
            return default_outline(topic, paper_type, papers)

        outline = parse_outline(raw, topic, paper_type, papers)
        if outline is None:
            logger.warning("Outline response had no usable sections; using default outline")
            return default_outline(topic, paper_type, papers)
        logger.info("Outline with %d sections for %r", len(outline.sections), topic[:80])
        return outline
