import asyncio
import uuid
from types import SimpleNamespace

import pytest

from conftest import FakeCitationStore
from genpaper.core.exceptions import UnresolvedSourceReference
from genpaper.schemas import SourceRef
from genpaper.services.citation_service import (
    CitationContext,
    CitationService,
    make_cite_key,
    titles_match,
)
from genpaper.services.tools import CITATION_NEEDED, AddCitationTool


def _paper(title, year=2020, doi=None, authors=("Ada Lovelace",)):
    return SimpleNamespace(
        id=uuid.uuid4(),
        title=title,
        authors=list(authors),
        publication_year=year,
        venue=None,
        doi=doi,
        url=None,
        paper_metadata={},
    )


def test_make_cite_key_prefers_doi():
    project = uuid.uuid4()
    assert make_cite_key(project, "Any", 2020, "https://doi.org/10.1/AE") == "10.1/ae"


def test_make_cite_key_hash_is_stable_per_project():
    project, other = uuid.uuid4(), uuid.uuid4()
    key = make_cite_key(project, "Analytical Engines", 2020, None)
    assert len(key) == 16
    assert key == make_cite_key(project, "analytical engines", 2020, None)
    assert key != make_cite_key(other, "Analytical Engines", 2020, None)


def test_titles_match():
    assert titles_match("Attention Is All You Need", "Attention is all you need.")
    assert not titles_match("Attention Is All You Need", "Recurrent networks for speech")
    assert titles_match("Engines, Analytical", "Analytical Engines")
    assert titles_match("Sketch of the Analytical Engine", "Sketch of the Analytical Engines")


def test_resolve_by_id_doi_and_title():
    by_doi = _paper("Analytical Engines", doi="10.1/AE")
    by_title = _paper("Computing Machinery and Intelligence", year=1950)
    service = CitationService(FakeCitationStore([by_doi, by_title]))

    async def scenario():
        assert await service.resolve(SourceRef(paper_id=by_title.id)) is by_title
        assert await service.resolve(SourceRef(doi="https://doi.org/10.1/ae")) is by_doi
        assert await service.resolve(SourceRef(title="computing machinery and intelligence", year=1951)) is by_title

    asyncio.run(scenario())


def test_resolve_unknown_reference_raises():
    service = CitationService(FakeCitationStore([_paper("Analytical Engines")]))
    with pytest.raises(UnresolvedSourceReference):
        asyncio.run(service.resolve(SourceRef(title="Something else entirely", year=2020)))


def test_first_seen_order_is_stable():
    a, b = _paper("Analytical Engines"), _paper("Difference Engines")
    service = CitationService(FakeCitationStore([a, b]))
    project = uuid.uuid4()

    async def scenario():
        first = await service.add(project, SourceRef(paper_id=a.id))
        second = await service.add(project, SourceRef(paper_id=b.id))
        again = await service.add(project, SourceRef(paper_id=a.id))
        return first, second, again

    first, second, again = asyncio.run(scenario())
    assert (first.first_seen_order, second.first_seen_order, again.first_seen_order) == (1, 2, 1)
    assert first.is_new and second.is_new and not again.is_new


def test_concurrent_adds_converge_on_one_row():
    paper = _paper("Analytical Engines")
    store = FakeCitationStore([paper])
    service = CitationService(store)
    project = uuid.uuid4()

    async def scenario():
        return await asyncio.gather(*(service.add(project, SourceRef(paper_id=paper.id)) for _ in range(10)))

    results = asyncio.run(scenario())
    assert len(store.rows) == 1
    assert sum(r.is_new for r in results) == 1
    assert {r.cite_key for r in results} == {results[0].cite_key}


def test_context_serializes_adds_for_same_paper():
    paper = _paper("Analytical Engines")
    store = FakeCitationStore([paper])
    service = CitationService(store)
    context = CitationContext(uuid.uuid4())

    async def scenario():
        return await asyncio.gather(
            *(service.add(context.project_id, SourceRef(paper_id=paper.id), context=context) for _ in range(8))
        )

    results = asyncio.run(scenario())
    assert store.upsert_calls == 1
    assert sum(r.is_new for r in results) == 1


def test_add_citation_tool_records_once_and_returns_marker():
    paper = _paper("Analytical Engines", authors=("Ada Lovelace", "Alan Turing"))
    service = CitationService(FakeCitationStore([paper]))
    tool = AddCitationTool(service, CitationContext(uuid.uuid4()), allowed_paper_ids=[paper.id])

    async def scenario():
        first = await tool.execute({"paper_id": str(paper.id), "reason": "engines"})
        await tool.execute({"paper_id": str(paper.id), "reason": "again"})
        return first

    reply = asyncio.run(scenario())
    assert f"[CITE: {paper.id}]" in reply
    assert "(Lovelace & Turing, 2020)" in reply
    assert len(tool.used) == 1


def test_add_citation_tool_unresolved_and_foreign_sources():
    allowed, foreign = _paper("Analytical Engines"), _paper("Difference Engines")
    service = CitationService(FakeCitationStore([allowed, foreign]))
    tool = AddCitationTool(service, CitationContext(uuid.uuid4()), allowed_paper_ids=[allowed.id])

    async def scenario():
        missing = await tool.execute({"title": "Unrelated survey of gardening", "year": 2001, "reason": "x"})
        outside = await tool.execute({"paper_id": str(foreign.id), "reason": "x"})
        return missing, outside

    missing, outside = asyncio.run(scenario())
    assert CITATION_NEEDED in missing and CITATION_NEEDED in outside
    assert tool.unresolved == 1
    assert tool.used == []
