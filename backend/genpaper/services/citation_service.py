"""Idempotent citation recording.

A citation row is created only through CitationStore.upsert, a single
INSERT ... ON CONFLICT DO NOTHING. Concurrent adds of the same source in the
same project therefore converge on one row; exactly one caller sees is_new.
"""

import asyncio
import hashlib
import logging
import uuid
from typing import Any

from rapidfuzz import fuzz, utils
from sqlalchemy import select, func, update, literal, or_
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.database import async_session_maker
from genpaper.core.exceptions import UnresolvedSourceReference
from genpaper.models import Paper, ProjectCitation
from genpaper.schemas import SourceRef, CitationResult
from genpaper.services.citation_formatter import to_csl
from genpaper.utils.text import normalize_doi, normalize_title, title_tokens

logger = logging.getLogger(__name__)

MAX_ORDER_RETRIES = 3
TOKEN_SORT_THRESHOLD = 80
RATIO_THRESHOLD = 90


def make_cite_key(project_id: uuid.UUID, title: str, year: int | None, doi: str | None) -> str:
    normalized = normalize_doi(doi)
    if normalized:
        return normalized
    raw = f"{project_id}|{(title or '').lower()}|{year if year is not None else ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def titles_match(a: str, b: str) -> bool:
    norm_a, norm_b = normalize_title(a), normalize_title(b)
    if not norm_a or not norm_b:
        return False
    if fuzz.token_sort_ratio(a, b, processor=utils.default_process) >= TOKEN_SORT_THRESHOLD:
        return True
    return fuzz.ratio(norm_a, norm_b) >= RATIO_THRESHOLD


class CitationContext:
    """Run-scoped citation state threaded explicitly through one generation run."""

    def __init__(self, project_id: uuid.UUID, citation_style: str = "apa", owner_id: uuid.UUID | None = None):
        self.project_id = project_id
        self.citation_style = citation_style
        self.owner_id = owner_id
        self.cache: dict[uuid.UUID, CitationResult] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def lock_for(self, paper_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(paper_id)
        if lock is None:
            lock = self._locks[paper_id] = asyncio.Lock()
        return lock


class CitationStore:
    """Postgres access for paper resolution and citation rows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.session_maker = session_maker or async_session_maker

    async def get_paper(self, paper_id: uuid.UUID) -> Paper | None:
        async with self.session_maker() as db:
            return await db.get(Paper, paper_id)

    async def find_paper_by_doi(self, doi: str) -> Paper | None:
        async with self.session_maker() as db:
            result = await db.execute(select(Paper).where(func.lower(Paper.doi) == doi).limit(1))
            return result.scalar_one_or_none()

    async def title_candidates(self, title: str, year: int | None, limit: int = 200) -> list[Paper]:
        query = select(Paper)
        if year is not None:
            query = query.where(Paper.publication_year.between(year - 1, year + 1))
        else:
            words = sorted(title_tokens(title), key=len, reverse=True)[:2]
            if not words:
                return []
            query = query.where(or_(*[Paper.title.ilike(f"%{w}%") for w in words]))
        async with self.session_maker() as db:
            result = await db.execute(query.limit(limit))
            return list(result.scalars().all())

    async def upsert(
        self,
        project_id: uuid.UUID,
        paper_id: uuid.UUID | None,
        cite_key: str,
        csl: dict[str, Any],
        reason: str,
        quote: str | None,
    ) -> CitationResult:
        for attempt in range(MAX_ORDER_RETRIES):
            try:
                return await self._upsert_once(project_id, paper_id, cite_key, csl, reason, quote)
            except IntegrityError:
                # Another new citation took the same first_seen_order
                if attempt >= MAX_ORDER_RETRIES - 1:
                    raise
                logger.debug("first_seen_order collision for %s in %s, retrying", cite_key, project_id)
        raise RuntimeError("unreachable")

    async def _upsert_once(
        self,
        project_id: uuid.UUID,
        paper_id: uuid.UUID | None,
        cite_key: str,
        csl: dict[str, Any],
        reason: str,
        quote: str | None,
    ) -> CitationResult:
        next_order = (
            select(func.coalesce(func.max(ProjectCitation.first_seen_order), 0) + 1)
            .where(ProjectCitation.project_id == project_id)
            .scalar_subquery()
        )
        stmt = (
            insert(ProjectCitation)
            .values(
                id=uuid.uuid4(),
                project_id=project_id,
                paper_id=paper_id,
                cite_key=cite_key,
                csl_json=csl,
                first_seen_order=next_order,
                reason=reason,
                quote=quote,
            )
            .on_conflict_do_nothing(index_elements=["project_id", "cite_key"])
            .returning(ProjectCitation.first_seen_order)
        )
        async with self.session_maker() as db:
            created = (await db.execute(stmt)).scalar_one_or_none()
            if created is not None:
                await db.commit()
                return CitationResult(
                    cite_key=cite_key, csl=csl, is_new=True, first_seen_order=created, paper_id=paper_id,
                )

            existing = (
                await db.execute(
                    select(ProjectCitation).where(
                        ProjectCitation.project_id == project_id,
                        ProjectCitation.cite_key == cite_key,
                    )
                )
            ).scalar_one()
            stored = dict(existing.csl_json or {})
            missing = {k: v for k, v in csl.items() if k not in stored}
            if missing:
                # Existing keys win on the right-hand side of ||
                await db.execute(
                    update(ProjectCitation)
                    .where(ProjectCitation.id == existing.id)
                    .values(csl_json=literal(missing, JSONB).op("||", return_type=JSONB)(ProjectCitation.csl_json))
                    .execution_options(synchronize_session=False)
                )
                stored = {**missing, **stored}
            await db.commit()
            return CitationResult(
                cite_key=existing.cite_key,
                csl=stored,
                is_new=False,
                first_seen_order=existing.first_seen_order,
                paper_id=existing.paper_id,
            )

    async def list_for_project(self, project_id: uuid.UUID) -> list[ProjectCitation]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ProjectCitation)
                .where(ProjectCitation.project_id == project_id)
                .order_by(ProjectCitation.first_seen_order)
            )
            return list(result.scalars().all())


class CitationService:
    def __init__(self, store: CitationStore | None = None):
        self.store = store or CitationStore()

    async def resolve(self, ref: SourceRef) -> Any:
        """Resolve by paper id, then DOI, then fuzzy title within ±1 year."""
        if ref.paper_id is not None:
            paper = await self.store.get_paper(ref.paper_id)
            if paper is not None:
                return paper

        doi = normalize_doi(ref.doi)
        if doi:
            paper = await self.store.find_paper_by_doi(doi)
            if paper is not None:
                return paper

        if ref.title:
            for candidate in await self.store.title_candidates(ref.title, ref.year):
                if titles_match(ref.title, candidate.title):
                    return candidate

        raise UnresolvedSourceReference(
            f"No paper matches reference (paper_id={ref.paper_id}, doi={ref.doi}, title={ref.title!r}, year={ref.year})"
        )

    async def _record(self, project_id: uuid.UUID, paper: Any, reason: str, quote: str | None) -> CitationResult:
        cite_key = make_cite_key(project_id, paper.title, paper.publication_year, paper.doi)
        return await self.store.upsert(project_id, paper.id, cite_key, to_csl(paper), reason, quote)

    async def add(
        self,
        project_id: uuid.UUID,
        source_ref: SourceRef,
        reason: str = "",
        quote: str | None = None,
        context: CitationContext | None = None,
    ) -> CitationResult:
        paper = await self.resolve(source_ref)
        if context is None:
            return await self._record(project_id, paper, reason, quote)

        async with context.lock_for(paper.id):
            cached = context.cache.get(paper.id)
            if cached is not None:
                return cached.model_copy(update={"is_new": False})
            result = await self._record(project_id, paper, reason, quote)
            context.cache[paper.id] = result
            logger.debug("Citation %s recorded for project %s (new=%s)", result.cite_key, project_id, result.is_new)
            return result
