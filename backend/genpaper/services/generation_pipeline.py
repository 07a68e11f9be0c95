"""End-to-end paper generation: discovery, outline, retrieval, drafting, review and saving."""

import asyncio
import hashlib
import inspect
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.config import get_settings
from genpaper.core.database import async_session_maker
from genpaper.core.exceptions import (
    CancellationError,
    NoPapersFound,
    QualityCheckError,
    RewriteFailure,
    classify_error,
)
from genpaper.models import Project, ProjectStatus
from genpaper.schemas import (
    CitationMapEntry,
    GeneratedSection,
    PaperRecord,
    PipelineProgress,
    PipelineRequest,
    PipelineResult,
    SectionContext,
    SectionDraft,
    UsedCitation,
)
from genpaper.services.citation_formatter import CITE_MARKER, clean_citation_artifacts
from genpaper.services.citation_service import CitationContext
from genpaper.services.evidence_tracker import EvidenceTracker
from genpaper.services.quality import HallucinationDetector, SectionReviewer, UNGROUNDED_ISSUE_RATIO
from genpaper.services.retrieval import build_section_contexts
from genpaper.utils.text import four_gram_overlap_ratio

settings = get_settings()
logger = logging.getLogger(__name__)

OVERLAP_NOTE = "Avoid repeating earlier content; focus only on new insights for {title}."
INTERRUPTED_MESSAGE = "Generation was interrupted. Please try again."

ProgressCallback = Callable[[PipelineProgress], Awaitable[None] | None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_heading(content: str, title: str, section_key: str) -> str:
    """Prepend a Markdown heading unless the section already opens with one."""
    body = content.strip()
    if body.startswith("#"):
        return body
    level = "###" if "." in section_key else "##"
    return f"{level} {title}\n\n{body}"


def strip_foreign_markers(content: str, valid_ids: set[str]) -> str:
    def _keep(match):
        return match.group(0) if match.group(1) in valid_ids else ""

    stripped = CITE_MARKER.sub(_keep, content)
    return stripped if stripped == content else clean_citation_artifacts(stripped)


def build_citation_map(sections: Sequence[GeneratedSection]) -> dict[str, CitationMapEntry]:
    """One entry per cited paper, keyed by a short content hash."""
    citation_map: dict[str, CitationMapEntry] = {}
    seen_papers: set[uuid.UUID] = set()
    for section in sections:
        for citation in section.citations:
            if citation.paper_id in seen_papers:
                continue
            seen_papers.add(citation.paper_id)
            digest = hashlib.sha1(f"{citation.paper_id}|{citation.citation_text[:32]}".encode("utf-8")).hexdigest()
            base = f"cite-{digest[:8]}"
            key, n = base, 1
            while key in citation_map:
                n += 1
                key = f"{base}-{n}"
            citation_map[key] = CitationMapEntry(
                paper_id=citation.paper_id,
                cite_key=citation.cite_key,
                citation_text=citation.citation_text,
            )
    return citation_map


class ProjectStore:
    """Project status and result persistence."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.session_maker = session_maker or async_session_maker

    async def get(self, project_id: uuid.UUID) -> Project | None:
        async with self.session_maker() as db:
            return await db.get(Project, project_id)

    async def create(
        self,
        owner_id: uuid.UUID,
        topic: str,
        paper_type: str = "literature_review",
        citation_style: str = "apa",
    ) -> Project:
        async with self.session_maker() as db:
            project = Project(owner_id=owner_id, topic=topic, paper_type=paper_type, citation_style=citation_style)
            db.add(project)
            await db.commit()
            await db.refresh(project)
            return project

    async def _update(self, project_id: uuid.UUID, **values) -> None:
        async with self.session_maker() as db:
            await db.execute(update(Project).where(Project.id == project_id).values(**values))
            await db.commit()

    async def mark_generating(self, project_id: uuid.UUID, config: dict | None = None) -> None:
        await self._update(
            project_id,
            status=ProjectStatus.GENERATING,
            error_message=None,
            generation_config=config or {},
        )

    async def mark_failed(self, project_id: uuid.UUID, message: str) -> None:
        await self._update(project_id, status=ProjectStatus.FAILED, error_message=message)

    async def save_result(self, project_id: uuid.UUID, content: str, citation_map: dict) -> None:
        await self._update(
            project_id,
            content=content,
            citation_map=citation_map,
            status=ProjectStatus.COMPLETE,
            error_message=None,
            completed_at=_utc_now(),
        )

    async def reset_stale(self) -> int:
        """Fail projects left GENERATING by a previous process; no run survives a restart."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(Project)
                .where(Project.status == ProjectStatus.GENERATING)
                .values(status=ProjectStatus.FAILED, error_message=INTERRUPTED_MESSAGE)
            )
            await db.commit()
            return result.rowcount or 0

    async def owned_by(self, project_id: uuid.UUID, owner_id: uuid.UUID) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Project.id).where(Project.id == project_id, Project.owner_id == owner_id)
            )
            return result.scalar_one_or_none() is not None


class GenerationPipeline:
    def __init__(
        self,
        discovery,
        outline_generator,
        retriever,
        section_generator,
        citation_service,
        projects: ProjectStore | None = None,
        *,
        reviewer: SectionReviewer | None = None,
        detector: HallucinationDetector | None = None,
    ):
        self.discovery = discovery
        self.outline_generator = outline_generator
        self.retriever = retriever
        self.section_generator = section_generator
        self.citation_service = citation_service
        self.projects = projects or ProjectStore()
        self.reviewer = reviewer or SectionReviewer()
        self.detector = detector

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CancellationError()

    @staticmethod
    async def _emit(
        on_progress: ProgressCallback | None,
        stage: str,
        progress: int,
        message: str,
        data: dict | None = None,
    ) -> None:
        logger.info("Pipeline stage %s (%d%%): %s", stage, progress, message)
        if on_progress is None:
            return
        event = PipelineProgress(stage=stage, progress=progress, message=message, data=data)
        try:
            result = on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Progress callback failed for stage %s", stage, exc_info=True)

    async def run(
        self,
        request: PipelineRequest,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        self._check_cancelled(cancel_event)
        tracker = EvidenceTracker()
        try:
            return await self._run(request, tracker, cancel_event, on_progress)
        except Exception as exc:
            tracker.clear()
            error = classify_error(exc)
            logger.error(
                "Generation failed for project %s [%s]: %s",
                request.project_id, error.category.value, error,
            )
            try:
                await self.projects.mark_failed(request.project_id, error.user_message)
            except Exception:
                logger.exception("Could not mark project %s as failed", request.project_id)
            if error is exc:
                raise
            raise error from exc

    async def _run(
        self,
        request: PipelineRequest,
        tracker: EvidenceTracker,
        cancel_event: asyncio.Event | None,
        on_progress: ProgressCallback | None,
    ) -> PipelineResult:
        await self._emit(on_progress, "initialization", 0, "Starting generation")
        await self.projects.mark_generating(
            request.project_id,
            request.model_dump(mode="json", exclude={"project_id", "owner_id"}),
        )
        self._check_cancelled(cancel_event)

        await self._emit(on_progress, "search", 10, "Collecting papers")
        papers = await self.discovery.collect_papers(
            request.topic,
            request.owner_id,
            library_paper_ids=request.library_paper_ids,
            use_library_only=request.use_library_only,
            sources=request.sources,
            max_results=request.max_results,
        )
        if not papers:
            raise NoPapersFound(f"No papers found for topic {request.topic!r}")
        await self.discovery.ensure_ingested(papers, request.owner_id)
        await self._emit(on_progress, "search", 20, f"Found {len(papers)} papers", {"papers": len(papers)})
        self._check_cancelled(cancel_event)

        await self._emit(on_progress, "outline", 25, "Planning outline")
        outline = await self.outline_generator.generate(request.topic, request.paper_type, papers)
        await self._emit(on_progress, "outline", 30, f"Outline with {len(outline.sections)} sections")
        self._check_cancelled(cancel_event)

        await self._emit(on_progress, "context", 35, "Retrieving evidence")
        contexts = await build_section_contexts(outline, papers, self.retriever)
        await self._emit(on_progress, "context", 40, "Evidence ready")
        self._check_cancelled(cancel_event)

        papers_map = {p.id: p for p in papers}
        run_context = CitationContext(
            project_id=request.project_id,
            citation_style=request.citation_style,
            owner_id=request.owner_id,
        )
        total_tokens = request.max_tokens or settings.generation_max_tokens
        per_section_tokens = max(settings.min_section_tokens, total_tokens // max(1, len(contexts)))

        drafts = await self._generate_sections(
            request, contexts, run_context, papers_map, per_section_tokens, cancel_event, on_progress,
        )
        self._check_cancelled(cancel_event)

        await self._emit(on_progress, "quality", 85, "Reviewing sections")
        sections = await self._review_sections(
            request, contexts, drafts, run_context, papers_map, per_section_tokens, tracker,
        )
        self._check_cancelled(cancel_event)

        await self._emit(on_progress, "saving", 95, "Saving paper")
        valid_ids = set(papers_map)
        valid_strs = {str(pid) for pid in valid_ids}
        for section in sections:
            dropped = [c for c in section.citations if c.paper_id not in valid_ids]
            if dropped:
                logger.warning("Dropping %d citations to unknown papers in %s", len(dropped), section.section_key)
                section.citations = [c for c in section.citations if c.paper_id in valid_ids]
            section.content = strip_foreign_markers(section.content, valid_strs)

        content = "\n\n".join([f"# {outline.title}", *(s.content for s in sections)])
        citation_map = build_citation_map(sections)
        self._check_cancelled(cancel_event)
        await self.projects.save_result(
            request.project_id,
            content,
            {key: entry.model_dump(mode="json") for key, entry in citation_map.items()},
        )

        scores = [s.quality_score for s in sections]
        quality_score = round(sum(scores) / len(scores), 1) if scores else 0.0
        logger.info(
            "Generation complete for project %s: %d sections, %d citations, evidence %s",
            request.project_id, len(sections), len(citation_map), tracker.stats(),
        )
        await self._emit(on_progress, "complete", 100, "Generation complete", {"quality_score": quality_score})
        return PipelineResult(
            project_id=request.project_id,
            content=content,
            outline=outline,
            sections=sections,
            citations=citation_map,
            papers_used=len(papers),
            quality_score=quality_score,
        )

    async def _generate_sections(
        self,
        request: PipelineRequest,
        contexts: list[SectionContext],
        run_context: CitationContext,
        papers_map: dict[uuid.UUID, PaperRecord],
        max_tokens: int,
        cancel_event: asyncio.Event | None,
        on_progress: ProgressCallback | None,
    ) -> list[SectionDraft]:
        total = len(contexts)
        done = 0

        async def _one(context: SectionContext) -> SectionDraft:
            nonlocal done
            self._check_cancelled(cancel_event)
            draft = await self.section_generator.generate(
                context, run_context, papers_map, max_tokens,
                topic=request.topic, temperature=request.temperature,
            )
            done += 1
            await self._emit(
                on_progress, "generation", 45 + (40 * done) // total, f"Drafted {context.title}",
                {"section": context.section_key},
            )
            return draft

        await self._emit(on_progress, "generation", 45, f"Drafting {total} sections")
        if request.concurrent_sections:
            tasks = [asyncio.create_task(_one(c)) for c in contexts]
            try:
                drafts = list(await asyncio.gather(*tasks))
            except BaseException:
                # One failed section fails the run; siblings must not keep calling the model.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        else:
            drafts = [await _one(context) for context in contexts]

        order = {c.section_key: i for i, c in enumerate(contexts)}
        drafts.sort(key=lambda d: order.get(d.section_key, len(order)))
        return drafts

    async def _rewrite(
        self,
        request: PipelineRequest,
        context: SectionContext,
        run_context: CitationContext,
        papers_map: dict[uuid.UUID, PaperRecord],
        max_tokens: int,
    ) -> SectionDraft | None:
        try:
            return await self.section_generator.generate(
                context, run_context, papers_map, max_tokens,
                topic=request.topic,
                temperature=request.temperature,
                notes=OVERLAP_NOTE.format(title=context.title),
            )
        except Exception as e:
            failure = RewriteFailure(f"Rewrite of {context.section_key} failed: {e}")
            logger.warning("%s; keeping original", failure, exc_info=True)
            return None

    async def _review_sections(
        self,
        request: PipelineRequest,
        contexts: list[SectionContext],
        drafts: list[SectionDraft],
        run_context: CitationContext,
        papers_map: dict[uuid.UUID, PaperRecord],
        max_tokens: int,
        tracker: EvidenceTracker,
    ) -> list[GeneratedSection]:
        contexts_by_key = {c.section_key: c for c in contexts}
        assembled: list[str] = []
        sections: list[GeneratedSection] = []

        for draft in drafts:
            context = contexts_by_key[draft.section_key]
            content = ensure_heading(draft.content, draft.title, draft.section_key)
            citations: list[UsedCitation] = list(draft.citations)
            used_chunk_ids = set(draft.used_chunk_ids)
            rewritten = False
            issues: list[str] = []

            if assembled:
                overlap = four_gram_overlap_ratio(content, "\n\n".join(assembled))
                if overlap > settings.overlap_threshold:
                    logger.info("Section %s overlaps earlier content (%.2f); rewriting once", draft.section_key, overlap)
                    fresh = tracker.filter_unused(context.context_chunks)
                    rewrite_context = context.model_copy(
                        update={"context_chunks": fresh or context.context_chunks},
                    )
                    redo = await self._rewrite(request, rewrite_context, run_context, papers_map, max_tokens)
                    if redo is not None:
                        content = ensure_heading(redo.content, redo.title, redo.section_key)
                        citations = list(redo.citations)
                        used_chunk_ids = set(redo.used_chunk_ids)
                        rewritten = True

            try:
                review = self.reviewer.review(
                    draft.section_key, content, citations, context.context_chunks, context.expected_words,
                )
                score = float(review.score)
                issues.extend(review.issues)
            except Exception as e:
                logger.warning("%s", QualityCheckError(f"Review of {draft.section_key} failed: {e}"), exc_info=True)
                score = float(settings.default_review_score)

            if self.detector is not None:
                try:
                    report = await self.detector.check(draft.title, content, context.context_chunks)
                    score = score * (1 - report.ungrounded_ratio * 0.5)
                    if report.ungrounded_ratio > UNGROUNDED_ISSUE_RATIO:
                        issues.append(
                            f"{round(report.ungrounded_ratio * 100)}% of claims are not grounded in the evidence"
                        )
                except Exception:
                    logger.warning("Grounding check failed for %s", draft.section_key, exc_info=True)

            tracker.track_usage(
                [c for c in context.context_chunks if c.chunk_id in used_chunk_ids], draft.section_key,
            )
            assembled.append(content)
            sections.append(GeneratedSection(
                section_key=draft.section_key,
                title=draft.title,
                content=content,
                citations=citations,
                quality_score=round(score, 1),
                issues=issues,
                rewritten=rewritten,
            ))
        return sections
