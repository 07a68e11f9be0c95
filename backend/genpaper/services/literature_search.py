import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx

from genpaper.core.config import get_settings
from genpaper.schemas import PaperMetadata
from genpaper.services.extraction import USER_AGENT, parse_crossref_message
from genpaper.utils.text import normalize_doi

settings = get_settings()
logger = logging.getLogger(__name__)

ATOM_NS = {"atom": "http://www.w3.org/2005/Atom", "arxiv": "http://arxiv.org/schemas/atom"}


class SearchProvider(ABC):
    """A literature source queried by free text."""

    name: str

    def __init__(self, timeout: float = 20.0):
        self.timeout = timeout

    @abstractmethod
    async def search(self, query: str, limit: int) -> list[PaperMetadata]:
        pass

    async def _get(self, url: str, params: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            resp = await client.get(url, params=params, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            return resp


def _rebuild_abstract(inverted: dict[str, list[int]] | None) -> str | None:
    if not inverted:
        return None
    positions: dict[int, str] = {}
    for word, indexes in inverted.items():
        for i in indexes:
            positions[i] = word
    return " ".join(positions[i] for i in sorted(positions)) or None


class OpenAlexProvider(SearchProvider):
    name = "openalex"
    url = "https://api.openalex.org/works"

    async def search(self, query: str, limit: int) -> list[PaperMetadata]:
        params: dict[str, Any] = {"search": query, "per-page": min(limit, 200)}
        if settings.crossref_mailto:
            params["mailto"] = settings.crossref_mailto
        resp = await self._get(self.url, params)
        papers = []
        for work in resp.json().get("results") or []:
            title = (work.get("title") or work.get("display_name") or "").strip()
            if not title:
                continue
            location = work.get("best_oa_location") or work.get("primary_location") or {}
            venue = (location.get("source") or {}).get("display_name")
            papers.append(PaperMetadata(
                title=title,
                authors=[
                    a["author"]["display_name"]
                    for a in work.get("authorships") or []
                    if (a.get("author") or {}).get("display_name")
                ],
                abstract=_rebuild_abstract(work.get("abstract_inverted_index")),
                year=work.get("publication_year"),
                venue=venue,
                doi=normalize_doi(work.get("doi")),
                url=location.get("landing_page_url") or work.get("id"),
                pdf_url=location.get("pdf_url") or (work.get("open_access") or {}).get("oa_url"),
                citation_count=work.get("cited_by_count") or 0,
                source=self.name,
            ))
        return papers


class CrossrefProvider(SearchProvider):
    name = "crossref"
    url = "https://api.crossref.org/works"

    async def search(self, query: str, limit: int) -> list[PaperMetadata]:
        params: dict[str, Any] = {"query": query, "rows": min(limit, 100)}
        if settings.crossref_mailto:
            params["mailto"] = settings.crossref_mailto
        resp = await self._get(self.url, params)
        papers = []
        for item in (resp.json().get("message") or {}).get("items") or []:
            fields = parse_crossref_message(item)
            if not fields["title"]:
                continue
            pdf_url = next(
                (link.get("URL") for link in item.get("link") or [] if link.get("content-type") == "application/pdf"),
                None,
            )
            papers.append(PaperMetadata(
                title=fields["title"],
                authors=fields["authors"],
                abstract=fields["abstract"],
                year=fields["year"],
                venue=fields["venue"],
                doi=fields["doi"],
                url=item.get("URL"),
                pdf_url=pdf_url,
                citation_count=item.get("is-referenced-by-count") or 0,
                source=self.name,
            ))
        return papers


class ArxivProvider(SearchProvider):
    name = "arxiv"
    url = "https://export.arxiv.org/api/query"

    async def search(self, query: str, limit: int) -> list[PaperMetadata]:
        params = {
            "search_query": f"all:{query}",
            "start": 0,
            "max_results": min(limit, 100),
            "sortBy": "relevance",
            "sortOrder": "descending",
        }
        resp = await self._get(self.url, params)
        return parse_arxiv_feed(resp.text)


def parse_arxiv_feed(xml_text: str) -> list[PaperMetadata]:
    root = ET.fromstring(xml_text)
    papers = []
    for entry in root.findall("atom:entry", ATOM_NS):
        title = re.sub(r"\s+", " ", (entry.findtext("atom:title", default="", namespaces=ATOM_NS) or "").strip())
        if not title:
            continue
        summary = re.sub(r"\s+", " ", (entry.findtext("atom:summary", default="", namespaces=ATOM_NS) or "").strip())
        published = entry.findtext("atom:published", default="", namespaces=ATOM_NS) or ""
        authors = [
            a.findtext("atom:name", default="", namespaces=ATOM_NS).strip()
            for a in entry.findall("atom:author", ATOM_NS)
        ]

        link, pdf_url = "", None
        for lnk in entry.findall("atom:link", ATOM_NS):
            if lnk.attrib.get("rel") == "alternate":
                link = lnk.attrib.get("href", "")
            elif lnk.attrib.get("title") == "pdf":
                pdf_url = lnk.attrib.get("href")

        papers.append(PaperMetadata(
            title=title,
            authors=[a for a in authors if a],
            abstract=summary or None,
            year=int(published[:4]) if published[:4].isdigit() else None,
            venue=entry.findtext("arxiv:journal_ref", default=None, namespaces=ATOM_NS) or "arXiv",
            doi=normalize_doi(entry.findtext("arxiv:doi", default=None, namespaces=ATOM_NS)),
            url=link or entry.findtext("atom:id", default=None, namespaces=ATOM_NS),
            pdf_url=pdf_url,
            source="arxiv",
        ))
    return papers


DEFAULT_PROVIDERS: dict[str, type[SearchProvider]] = {
    "openalex": OpenAlexProvider,
    "crossref": CrossrefProvider,
    "arxiv": ArxivProvider,
}


class LiteratureSearchClient:
    """Fan-out search across providers. Results may contain cross-provider duplicates."""

    def __init__(self, providers: Sequence[SearchProvider] | None = None):
        if providers is None:
            providers = [cls() for cls in DEFAULT_PROVIDERS.values()]
        self.providers = {p.name: p for p in providers}

    async def search(self, query: str, sources: Sequence[str] | None = None, limit: int = 25) -> list[PaperMetadata]:
        selected = [self.providers[s] for s in (sources or settings.default_search_sources) if s in self.providers]
        if not selected:
            logger.warning("No known search providers among %s", sources)
            return []

        results = await asyncio.gather(*(p.search(query, limit) for p in selected), return_exceptions=True)
        papers: list[PaperMetadata] = []
        for provider, result in zip(selected, results):
            if isinstance(result, BaseException):
                logger.warning("Search provider %s failed: %s", provider.name, result, exc_info=result)
                continue
            papers.extend(result)
        logger.info("Literature search %r returned %d results from %d providers", query[:80], len(papers), len(selected))
        return papers
