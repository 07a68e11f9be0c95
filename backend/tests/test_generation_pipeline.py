import asyncio
import json
import uuid

import pytest

from conftest import FakeCitationStore, FakeEmbedder, completion, fake_openai_client, tool_call
from genpaper.core.exceptions import NO_CONTENT_MESSAGE, CancellationError, FatalError, UserActionError
from genpaper.schemas import (
    GeneratedOutline,
    GeneratedSection,
    OutlineSection,
    PaperRecord,
    PipelineRequest,
    RetrievedChunk,
    SectionDraft,
    SectionReview,
    UsedCitation,
)
from genpaper.services.citation_service import CitationService
from genpaper.services.discovery import DiscoveryService
from genpaper.services.generation_pipeline import (
    OVERLAP_NOTE,
    GenerationPipeline,
    build_citation_map,
    ensure_heading,
    strip_foreign_markers,
)
from genpaper.services.quality import HallucinationDetector
from genpaper.services.section_generator import SectionGenerator

REPEATED = "Analytical engines compute tables with punched cards and store intermediate results in a mill."
DISTINCT = "Difference engines tabulate polynomials through repeated mechanical addition of finite differences."


def _paper(title="Analytical Engines"):
    return PaperRecord(id=uuid.uuid4(), title=title, authors=["Ada Lovelace"], publication_year=2020)


def _request(**overrides):
    values = dict(
        project_id=uuid.uuid4(),
        owner_id=uuid.uuid4(),
        topic="Analytical computing",
        use_library_only=True,
    )
    values.update(overrides)
    return PipelineRequest(**values)


class FakePaperStore:
    def __init__(self, papers):
        self.papers = list(papers)

    async def library_papers(self, owner_id, paper_ids=None):
        return [p for p in self.papers if not paper_ids or p.id in paper_ids]

    async def upsert_papers(self, papers):
        return []

    async def papers_without_chunks(self, paper_ids):
        list(paper_ids)
        return set()


class FakeSearchClient:
    def __init__(self):
        self.calls = []

    async def search(self, topic, sources, max_results):
        self.calls.append(topic)
        return []


class FakeOutlineGenerator:
    def __init__(self, *sections, on_generate=None):
        self.sections = sections
        self.on_generate = on_generate

    async def generate(self, topic, paper_type, papers):
        if self.on_generate is not None:
            self.on_generate()
        ids = [p.id for p in papers]
        return GeneratedOutline(
            title=topic,
            paper_type=paper_type,
            sections=[
                OutlineSection(key=key, title=title, candidate_paper_ids=ids, expected_words=100)
                for key, title in self.sections
            ],
        )


class FakeRetriever:
    def __init__(self, chunks):
        self.chunks = chunks

    async def search(self, query, paper_ids, limit=10):
        return [c for c in self.chunks if c.paper_id in set(paper_ids)][:limit]


class FakeProjectStore:
    def __init__(self):
        self.generating = []
        self.failed = []
        self.saved = []

    async def mark_generating(self, project_id, config=None):
        self.generating.append((project_id, config))

    async def mark_failed(self, project_id, message):
        self.failed.append((project_id, message))

    async def save_result(self, project_id, content, citation_map):
        self.saved.append((project_id, content, citation_map))


class ScriptedSectionGenerator:
    """Every draft repeats the same paragraph; rewrites return `rewrite_text` when set."""

    def __init__(self, rewrite_text=None):
        self.rewrite_text = rewrite_text
        self.calls = []

    async def generate(self, context, run_context, papers, max_tokens, topic="", notes=None, temperature=None):
        self.calls.append((context.section_key, notes))
        text = self.rewrite_text if notes and self.rewrite_text else REPEATED
        return SectionDraft(section_key=context.section_key, title=context.title, content=text)


def _pipeline(papers, section_generator, *sections, on_generate=None, chunks=(), **kwargs):
    projects = FakeProjectStore()
    pipeline = GenerationPipeline(
        DiscoveryService(FakeSearchClient(), FakePaperStore(papers)),
        FakeOutlineGenerator(*sections, on_generate=on_generate),
        FakeRetriever(list(chunks)),
        section_generator,
        CitationService(FakeCitationStore(papers)),
        projects,
        **kwargs,
    )
    return pipeline, projects


def test_ensure_heading_levels():
    assert ensure_heading("Body", "Background", "background") == "## Background\n\nBody"
    assert ensure_heading("Body", "Details", "methods.1") == "### Details\n\nBody"
    assert ensure_heading("  # Own heading\ntext ", "Ignored", "x") == "# Own heading\ntext"


def test_strip_foreign_markers_keeps_known_ids():
    known = str(uuid.uuid4())
    content = f"Known claim [CITE: {known}]. Invented claim [CITE: made-up]."
    assert strip_foreign_markers(content, {known}) == f"Known claim [CITE: {known}]. Invented claim."


def test_library_only_run_end_to_end():
    paper = _paper()
    chunk = RetrievedChunk(
        chunk_id=uuid.uuid4(), paper_id=paper.id, chunk_index=0,
        content="Analytical engines compute tables with punched cards.",
    )

    def responder(kwargs):
        if any(m["role"] == "tool" for m in kwargs["messages"]):
            return completion(content=f"Analytical engines compute tables with punched cards [CITE: {paper.id}].")
        args = json.dumps({"paper_id": str(paper.id), "reason": "engines"})
        return completion(tool_calls=[tool_call("call-1", "add_citation", args)])

    client, completions = fake_openai_client(responder)
    citation_service = CitationService(FakeCitationStore([paper]))
    search = FakeSearchClient()
    projects = FakeProjectStore()
    pipeline = GenerationPipeline(
        DiscoveryService(search, FakePaperStore([paper])),
        FakeOutlineGenerator(("background", "Background")),
        FakeRetriever([chunk]),
        SectionGenerator(client, citation_service),
        citation_service,
        projects,
        detector=HallucinationDetector(FakeEmbedder()),
    )
    events = []
    request = _request(library_paper_ids=[paper.id])

    result = asyncio.run(pipeline.run(request, on_progress=events.append))

    assert search.calls == []
    assert len(completions.calls) == 2
    assert result.papers_used == 1
    assert result.content.startswith("# Analytical computing\n\n## Background")
    assert f"[CITE: {paper.id}]" in result.content
    assert len(result.citations) == 1
    key, entry = next(iter(result.citations.items()))
    assert key.startswith("cite-")
    assert entry.paper_id == paper.id
    assert projects.saved[0][1] == result.content
    assert "project_id" not in projects.generating[0][1]
    assert [e.progress for e in events] == sorted(e.progress for e in events)
    assert events[-1].stage == "complete" and events[-1].progress == 100


def test_overlapping_section_is_rewritten_once():
    paper = _paper()
    generator = ScriptedSectionGenerator(rewrite_text=DISTINCT)
    pipeline, _ = _pipeline([paper], generator, ("background", "Background"), ("methods", "Methods"))

    result = asyncio.run(pipeline.run(_request()))

    assert generator.calls == [
        ("background", None),
        ("methods", None),
        ("methods", OVERLAP_NOTE.format(title="Methods")),
    ]
    first, second = result.sections
    assert not first.rewritten
    assert second.rewritten and DISTINCT in second.content


def test_rewrite_is_not_repeated_when_overlap_persists():
    paper = _paper()
    generator = ScriptedSectionGenerator()
    pipeline, _ = _pipeline([paper], generator, ("background", "Background"), ("methods", "Methods"))

    result = asyncio.run(pipeline.run(_request(concurrent_sections=True)))

    assert len(generator.calls) == 3
    assert [s.section_key for s in result.sections] == ["background", "methods"]
    assert result.sections[1].rewritten


def test_no_papers_marks_project_failed():
    pipeline, projects = _pipeline([], ScriptedSectionGenerator(), ("background", "Background"))
    request = _request()

    with pytest.raises(UserActionError) as excinfo:
        asyncio.run(pipeline.run(request))

    assert excinfo.value.user_message == NO_CONTENT_MESSAGE
    assert projects.failed == [(request.project_id, NO_CONTENT_MESSAGE)]
    assert projects.saved == []


def test_cancelled_before_start_does_nothing():
    pipeline, projects = _pipeline([_paper()], ScriptedSectionGenerator(), ("background", "Background"))
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(CancellationError):
        asyncio.run(pipeline.run(_request(), cancel_event=cancel))
    assert projects.generating == [] and projects.failed == []


def test_cancellation_between_stages_stops_generation():
    cancel = asyncio.Event()
    generator = ScriptedSectionGenerator()
    pipeline, projects = _pipeline(
        [_paper()], generator, ("background", "Background"), on_generate=cancel.set,
    )
    request = _request()

    with pytest.raises(CancellationError):
        asyncio.run(pipeline.run(request, cancel_event=cancel))

    assert generator.calls == []
    assert projects.failed == [(request.project_id, "Generation was cancelled.")]
    assert projects.saved == []


def test_build_citation_map_dedupes_papers():
    a, b = uuid.uuid4(), uuid.uuid4()
    sections = [
        GeneratedSection(section_key="s1", title="One", content="", citations=[
            UsedCitation(paper_id=a, cite_key="ka", citation_text="(Lovelace, 2020)"),
            UsedCitation(paper_id=b, cite_key="kb", citation_text="(Turing, 1950)"),
        ]),
        GeneratedSection(section_key="s2", title="Two", content="", citations=[
            UsedCitation(paper_id=a, cite_key="ka", citation_text="(Lovelace, 2020)"),
        ]),
    ]
    citation_map = build_citation_map(sections)
    assert len(citation_map) == 2
    assert all(key.startswith("cite-") for key in citation_map)
    assert {e.paper_id for e in citation_map.values()} == {a, b}


class FailingRewriteGenerator(ScriptedSectionGenerator):
    async def generate(self, context, run_context, papers, max_tokens, topic="", notes=None, temperature=None):
        if notes:
            raise RuntimeError("model unavailable")
        return await super().generate(context, run_context, papers, max_tokens, topic=topic)


class BrokenReviewer:
    def review(self, section_key, content, citations, chunks, expected_words):
        raise ValueError("reviewer crashed")


class FixedReviewer:
    def review(self, section_key, content, citations, chunks, expected_words):
        return SectionReview(section=section_key, passed=True, score=80)


class BrokenDetector:
    async def check(self, section_title, content, evidence):
        raise RuntimeError("embedding service down")


def test_failed_rewrite_keeps_original_draft():
    generator = FailingRewriteGenerator()
    pipeline, projects = _pipeline([_paper()], generator, ("background", "Background"), ("methods", "Methods"))

    result = asyncio.run(pipeline.run(_request()))

    assert len(generator.calls) == 2
    second = result.sections[1]
    assert REPEATED in second.content
    assert not second.rewritten
    assert len(projects.saved) == 1


def test_reviewer_failure_uses_default_score():
    pipeline, _ = _pipeline(
        [_paper()], ScriptedSectionGenerator(), ("background", "Background"), reviewer=BrokenReviewer(),
    )

    result = asyncio.run(pipeline.run(_request()))

    assert result.sections[0].quality_score == 75.0
    assert result.quality_score == 75.0


def test_grounding_check_failure_leaves_score_unchanged():
    pipeline, _ = _pipeline(
        [_paper()], ScriptedSectionGenerator(), ("background", "Background"),
        reviewer=FixedReviewer(), detector=BrokenDetector(),
    )

    result = asyncio.run(pipeline.run(_request()))

    assert result.quality_score == 80.0


def test_section_failure_fails_run_without_saving():
    class ExplodingGenerator:
        async def generate(self, context, run_context, papers, max_tokens, topic="", notes=None, temperature=None):
            raise RuntimeError("boom")

    pipeline, projects = _pipeline([_paper()], ExplodingGenerator(), ("background", "Background"))
    request = _request()

    with pytest.raises(FatalError):
        asyncio.run(pipeline.run(request))

    assert projects.saved == []
    assert projects.failed == [(request.project_id, "An unexpected error occurred. Please try again.")]


def test_concurrent_section_failure_cancels_siblings():
    finished = []

    class SlowAndFailingGenerator:
        async def generate(self, context, run_context, papers, max_tokens, topic="", notes=None, temperature=None):
            if context.section_key == "background":
                await asyncio.sleep(0.01)
                raise RuntimeError("boom")
            await asyncio.sleep(0.2)
            finished.append(context.section_key)
            return SectionDraft(section_key=context.section_key, title=context.title, content=DISTINCT)

    pipeline, projects = _pipeline(
        [_paper()], SlowAndFailingGenerator(), ("background", "Background"), ("methods", "Methods"),
    )

    async def scenario():
        with pytest.raises(FatalError):
            await pipeline.run(_request(concurrent_sections=True))
        await asyncio.sleep(0.3)

    asyncio.run(scenario())
    assert finished == []
    assert projects.saved == []


def test_rewrite_sees_only_unused_evidence():
    paper = _paper()
    used = RetrievedChunk(
        chunk_id=uuid.uuid4(), paper_id=paper.id, chunk_index=0,
        content="Analytical engines read punched cards to select operations.",
    )
    fresh = RetrievedChunk(
        chunk_id=uuid.uuid4(), paper_id=paper.id, chunk_index=1,
        content="Gears carry digits in the mill.",
    )
    seen_chunks = []

    class EvidenceRecordingGenerator:
        async def generate(self, context, run_context, papers, max_tokens, topic="", notes=None, temperature=None):
            seen_chunks.append((context.section_key, notes is not None, [c.chunk_id for c in context.context_chunks]))
            return SectionDraft(
                section_key=context.section_key,
                title=context.title,
                content=DISTINCT if notes else REPEATED,
                used_chunk_ids=[c.chunk_id for c in context.context_chunks if "punched" in c.content],
            )

    pipeline, _ = _pipeline(
        [paper], EvidenceRecordingGenerator(), ("background", "Background"), ("methods", "Methods"),
        chunks=[used, fresh],
    )

    result = asyncio.run(pipeline.run(_request()))

    assert seen_chunks[:2] == [
        ("background", False, [used.chunk_id, fresh.chunk_id]),
        ("methods", False, [used.chunk_id, fresh.chunk_id]),
    ]
    assert seen_chunks[2] == ("methods", True, [fresh.chunk_id])
    assert result.sections[1].rewritten
