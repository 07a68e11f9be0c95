import asyncio
import logging
import uuid
from typing import Iterable, Sequence

from sqlalchemy import select, exists, or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.config import get_settings
from genpaper.core.database import async_session_maker
from genpaper.core.exceptions import QuotaExceeded
from genpaper.models import Paper, LibraryPaper, PaperChunk, JobStatus, JobPriority
from genpaper.schemas import PaperMetadata, PaperRecord
from genpaper.services.literature_search import LiteratureSearchClient
from genpaper.utils.text import normalize_doi, normalize_title, paper_id_for

settings = get_settings()
logger = logging.getLogger(__name__)


def _has_chunks(paper_id_column):
    return exists().where(PaperChunk.paper_id == paper_id_column)


def _to_record(paper: Paper, has_content: bool) -> PaperRecord:
    record = PaperRecord.model_validate(paper)
    return record.model_copy(update={"has_content": has_content})


class PaperStore:
    """Paper, library and chunk-presence queries used by discovery."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.session_maker = session_maker or async_session_maker

    async def library_papers(
        self, owner_id: uuid.UUID, paper_ids: Sequence[uuid.UUID] | None = None
    ) -> list[PaperRecord]:
        query = (
            select(Paper, _has_chunks(Paper.id))
            .join(LibraryPaper, LibraryPaper.paper_id == Paper.id)
            .where(LibraryPaper.owner_id == owner_id)
            .order_by(LibraryPaper.added_at)
        )
        if paper_ids:
            query = query.where(Paper.id.in_(list(paper_ids)))
        async with self.session_maker() as db:
            rows = (await db.execute(query)).all()
        return [_to_record(paper, bool(has)) for paper, has in rows]

    async def upsert_papers(self, papers: Sequence[PaperMetadata]) -> list[PaperRecord]:
        """Insert unseen papers and return stored records in input order."""
        if not papers:
            return []
        values = []
        for p in papers:
            pid = paper_id_for(p.doi, p.title, p.authors[0] if p.authors else None, p.year)
            values.append({
                "id": pid,
                "title": p.title[:1000],
                "authors": p.authors,
                "abstract": p.abstract,
                "publication_year": p.year,
                "venue": (p.venue or "")[:500] or None,
                "doi": normalize_doi(p.doi),
                "url": p.url,
                "pdf_url": p.pdf_url,
                "citation_count": p.citation_count,
                "source": p.source,
            })
        dois = [v["doi"] for v in values if v["doi"]]
        async with self.session_maker() as db:
            await db.execute(insert(Paper).values(values).on_conflict_do_nothing())
            await db.commit()
            conditions = [Paper.id.in_([v["id"] for v in values])]
            if dois:
                conditions.append(Paper.doi.in_(dois))
            rows = (await db.execute(select(Paper, _has_chunks(Paper.id)).where(or_(*conditions)))).all()

        by_id = {paper.id: (paper, has) for paper, has in rows}
        by_doi = {paper.doi: (paper, has) for paper, has in rows if paper.doi}
        records = []
        for v in values:
            found = by_doi.get(v["doi"]) if v["doi"] else None
            found = found or by_id.get(v["id"])
            if found:
                records.append(_to_record(found[0], bool(found[1])))
        return records

    async def papers_without_chunks(self, paper_ids: Iterable[uuid.UUID]) -> set[uuid.UUID]:
        ids = list(paper_ids)
        if not ids:
            return set()
        async with self.session_maker() as db:
            result = await db.execute(select(Paper.id).where(Paper.id.in_(ids), ~_has_chunks(Paper.id)))
            return set(result.scalars().all())


def deduplicate_metadata(
    papers: Iterable[PaperMetadata], existing: Iterable[PaperRecord] = ()
) -> list[PaperMetadata]:
    """Drop duplicates by DOI first, then normalized title. Existing records win."""
    seen_dois: set[str] = set()
    seen_titles: set[str] = set()
    for record in existing:
        if record.doi:
            seen_dois.add(normalize_doi(record.doi))
        seen_titles.add(normalize_title(record.title))

    unique = []
    for paper in papers:
        doi = normalize_doi(paper.doi)
        title = normalize_title(paper.title)
        if not title or (doi and doi in seen_dois) or title in seen_titles:
            continue
        if doi:
            seen_dois.add(doi)
        seen_titles.add(title)
        unique.append(paper)
    return unique


class DiscoveryService:
    def __init__(self, search_client: LiteratureSearchClient | None = None, store: PaperStore | None = None, queue=None):
        self.search_client = search_client or LiteratureSearchClient()
        self.store = store or PaperStore()
        self.queue = queue

    async def collect_papers(
        self,
        topic: str,
        owner_id: uuid.UUID,
        *,
        library_paper_ids: Sequence[uuid.UUID] | None = None,
        use_library_only: bool = False,
        include_library: bool = True,
        sources: Sequence[str] | None = None,
        max_results: int = 25,
    ) -> list[PaperRecord]:
        library: list[PaperRecord] = []
        if include_library or use_library_only:
            library = await self.store.library_papers(owner_id, library_paper_ids)

        if use_library_only:
            logger.info("Library-only discovery for %s: %d papers", owner_id, len(library))
            return library[:max_results]

        external = await self.search_client.search(topic, sources, max_results)
        fresh = deduplicate_metadata(external, existing=library)
        stored = await self.store.upsert_papers(fresh)
        papers = library + [p for p in stored if p.id not in {lib.id for lib in library}]
        logger.info(
            "Discovery for %r: %d library + %d external (%d after dedup)",
            topic[:80], len(library), len(external), len(papers),
        )
        return papers[:max_results]

    async def ensure_ingested(
        self, papers: Sequence[PaperRecord], owner_id: uuid.UUID, timeout: float | None = None
    ) -> set[uuid.UUID]:
        """Queue papers without chunks and wait for them; returns ids that have content.

        Failed, poisoned or URL-less papers simply contribute no chunks.
        """
        missing = await self.store.papers_without_chunks(p.id for p in papers)
        ready = {p.id for p in papers if p.id not in missing}
        if not missing or self.queue is None:
            return ready

        jobs: dict[uuid.UUID, str] = {}
        for paper in papers:
            if paper.id not in missing:
                continue
            if not paper.pdf_url:
                logger.info("Paper %s has no PDF URL; skipping ingestion", paper.id)
                continue
            try:
                jobs[paper.id] = await self.queue.add_job(
                    paper.id, paper.pdf_url, paper.title, owner_id, JobPriority.HIGH
                )
            except QuotaExceeded as e:
                logger.warning("Ingestion stopped for %s: %s", owner_id, e)
                break

        wait = settings.ingestion_wait_seconds if timeout is None else timeout
        statuses = await asyncio.gather(*(self.queue.wait_for_job(job_id, wait) for job_id in jobs.values()))
        for paper_id, status in zip(jobs, statuses):
            if status == JobStatus.COMPLETED:
                ready.add(paper_id)
            else:
                logger.info("Paper %s ingestion ended %s; no chunks", paper_id, status)
        return ready
