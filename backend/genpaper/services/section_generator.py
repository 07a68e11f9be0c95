import logging
import uuid
from typing import Mapping

from openai import AsyncOpenAI

from genpaper.core.config import get_settings
from genpaper.core.exceptions import TransientError, classify_error
from genpaper.schemas import SectionContext, SectionDraft, PaperRecord
from genpaper.services.citation_formatter import clean_citation_artifacts
from genpaper.services.react_agent import ReActAgent
from genpaper.services.retrieval import format_chunks_for_prompt, get_first_author_last_name
from genpaper.services.tools import AddCitationTool

settings = get_settings()
logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write one section of an academic paper in Markdown. Ground every factual claim in the "
    "evidence provided. Before relying on a source, call add_citation with its paper_id and place the "
    "returned [CITE: paper_id] marker directly after the claim. Never invent sources or paper ids. "
    "Do not include a bibliography."
)


class SectionGenerator:
    def __init__(self, client: AsyncOpenAI, citation_service, model: str | None = None):
        self.client = client
        self.citation_service = citation_service
        self.model = model or settings.openai_model

    def _build_prompt(
        self,
        context: SectionContext,
        papers: Mapping[uuid.UUID, PaperRecord],
        topic: str,
        notes: str | None,
    ) -> str:
        sources = []
        with_chunks = {c.paper_id for c in context.context_chunks}
        for pid in context.candidate_paper_ids:
            paper = papers.get(pid)
            if paper is None:
                continue
            line = f"- paper_id={pid}: {paper.title} ({get_first_author_last_name(paper.authors)}, {paper.publication_year or 'n.d.'})"
            if pid not in with_chunks and paper.abstract:
                line += f"\n  Abstract: {paper.abstract[:800]}"
            sources.append(line)

        parts = [
            f"Paper topic: {topic}",
            f"Section: {context.title} (about {context.expected_words} words)",
        ]
        if context.key_points:
            parts.append("Key points:\n" + "\n".join(f"- {p}" for p in context.key_points))
        parts.append("Sources:\n" + ("\n".join(sources) or "- none"))
        if context.context_chunks:
            parts.append("Evidence:\n" + format_chunks_for_prompt(context.context_chunks, papers))
        if notes:
            parts.append(f"Note: {notes}")
        return "\n\n".join(parts)

    async def generate(
        self,
        context: SectionContext,
        run_context,
        papers: Mapping[uuid.UUID, PaperRecord],
        max_tokens: int,
        topic: str = "",
        notes: str | None = None,
        temperature: float | None = None,
    ) -> SectionDraft:
        tool = AddCitationTool(self.citation_service, run_context, allowed_paper_ids=context.candidate_paper_ids)
        agent = ReActAgent(self.client, [tool], model=self.model, temperature=temperature)
        content = await agent.run(SYSTEM_PROMPT, self._build_prompt(context, papers, topic, notes), max_tokens)
        if not content:
            if agent.last_error is not None:
                raise classify_error(agent.last_error) from agent.last_error
            raise TransientError(f"Language model returned no content for section {context.title!r}")

        cited = {c.paper_id for c in tool.used}
        logger.info(
            "Generated section %s: %d chars, %d citations, %d unresolved",
            context.section_key, len(content), len(tool.used), tool.unresolved,
        )
        return SectionDraft(
            section_key=context.section_key,
            title=context.title,
            content=clean_citation_artifacts(content),
            citations=list(tool.used),
            used_chunk_ids=[c.chunk_id for c in context.context_chunks if c.paper_id in cited],
        )
