"""Hybrid (vector + keyword) chunk retrieval with reciprocal rank fusion."""

import asyncio
import logging
import math
import uuid
from typing import Hashable, Iterable, Mapping, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.config import get_settings
from genpaper.core.database import async_session_maker
from genpaper.models import Paper, PaperChunk, SectionType
from genpaper.schemas import RetrievedChunk, SectionContext, GeneratedOutline, PaperRecord

settings = get_settings()
logger = logging.getLogger(__name__)

MIN_CHUNKS_PER_SECTION = 3
MAX_CHUNKS_PER_SECTION = 20
NAME_PARTICLES = {"van", "von", "de", "del", "der", "da", "di", "le", "la", "du", "dos", "das", "ter", "ten"}


def rrf_fuse(
    vector_ids: Sequence[Hashable],
    keyword_ids: Sequence[Hashable],
    k: int | None = None,
    vector_weight: float | None = None,
    keyword_weight: float | None = None,
) -> dict[Hashable, float]:
    """Weighted reciprocal rank fusion over 1-based ranks.

    An item absent from one list simply gets no contribution from it.
    """
    k = settings.rrf_k if k is None else k
    vector_weight = settings.vector_weight if vector_weight is None else vector_weight
    keyword_weight = settings.keyword_weight if keyword_weight is None else keyword_weight

    scores: dict[Hashable, float] = {}
    for rank, item in enumerate(vector_ids, start=1):
        scores[item] = scores.get(item, 0.0) + vector_weight / (k + rank)
    for rank, item in enumerate(keyword_ids, start=1):
        scores[item] = scores.get(item, 0.0) + keyword_weight / (k + rank)
    return scores


def citation_boost(citation_count: int | None, cap: float | None = None, rate: float | None = None) -> float:
    cap = settings.citation_boost_cap if cap is None else cap
    rate = settings.citation_boost_rate if rate is None else rate
    return 1.0 + min(cap, rate * math.log1p(max(citation_count or 0, 0)))


def chunk_budget(expected_words: int) -> int:
    budget = math.ceil(max(expected_words, 0) / settings.words_per_chunk)
    return max(MIN_CHUNKS_PER_SECTION, min(MAX_CHUNKS_PER_SECTION, budget))


def fuse_hits(
    vector_hits: Sequence[RetrievedChunk],
    keyword_hits: Sequence[RetrievedChunk],
    limit: int,
) -> list[RetrievedChunk]:
    """Fuse two ranked hit lists, apply the citation boost and break ties deterministically."""
    by_id: dict[uuid.UUID, RetrievedChunk] = {}
    for hit in list(vector_hits) + list(keyword_hits):
        by_id.setdefault(hit.chunk_id, hit)

    fused = rrf_fuse([h.chunk_id for h in vector_hits], [h.chunk_id for h in keyword_hits])
    ranked = [
        by_id[chunk_id].model_copy(update={"score": score * citation_boost(by_id[chunk_id].citation_count)})
        for chunk_id, score in fused.items()
    ]
    ranked.sort(key=lambda c: (-c.score, str(c.paper_id), c.chunk_index))
    return ranked[:limit]


def deduplicate_chunks(chunks: Iterable[RetrievedChunk], prefix_chars: int = 100) -> list[RetrievedChunk]:
    seen: set[str] = set()
    unique = []
    for chunk in chunks:
        key = chunk.content[:prefix_chars].lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(chunk)
    return unique


def balance_chunks(chunks: Iterable[RetrievedChunk], max_per_paper: int | None = None) -> list[RetrievedChunk]:
    """Keep rank order but cap how many chunks any single paper contributes."""
    max_per_paper = max_per_paper or settings.max_chunks_per_paper
    counts: dict[uuid.UUID, int] = {}
    balanced = []
    for chunk in chunks:
        if counts.get(chunk.paper_id, 0) >= max_per_paper:
            continue
        counts[chunk.paper_id] = counts.get(chunk.paper_id, 0) + 1
        balanced.append(chunk)
    return balanced


def get_first_author_last_name(authors: Sequence[str] | None) -> str:
    """Family name of the first author, keeping particles such as "van der"."""
    if not authors or not (authors[0] or "").strip():
        return "Unknown"
    name = authors[0].strip()
    if "," in name:
        return name.split(",", 1)[0].strip()
    parts = name.split()
    if len(parts) == 1:
        return parts[0]
    start = len(parts) - 1
    while start > 1 and parts[start - 1].lower() in NAME_PARTICLES:
        start -= 1
    return " ".join(parts[start:])


def format_chunks_for_prompt(chunks: Sequence[RetrievedChunk], papers: Mapping[uuid.UUID, PaperRecord]) -> str:
    blocks = []
    for i, chunk in enumerate(chunks, start=1):
        paper = papers.get(chunk.paper_id)
        if paper is not None:
            header = f'[{i}] paper_id={chunk.paper_id} | {get_first_author_last_name(paper.authors)} ({paper.publication_year or "n.d."}) "{paper.title}"'
        else:
            header = f"[{i}] paper_id={chunk.paper_id}"
        blocks.append(f"{header}\n{chunk.content.strip()}")
    return "\n\n".join(blocks)


def _row_to_chunk(row, score: float) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=row.id,
        paper_id=row.paper_id,
        chunk_index=row.chunk_index,
        content=row.content,
        score=float(score or 0.0),
        citation_count=row.citation_count or 0,
        section_type=SectionType(row.section_type) if row.section_type else None,
    )


class HybridRetriever:
    def __init__(self, embedder, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self.embedder = embedder
        self.session_maker = session_maker or async_session_maker

    def _base_query(self, *extra):
        return (
            select(
                PaperChunk.id,
                PaperChunk.paper_id,
                PaperChunk.chunk_index,
                PaperChunk.content,
                PaperChunk.section_type,
                Paper.citation_count,
                *extra,
            )
            .join(Paper, Paper.id == PaperChunk.paper_id)
        )

    async def _vector_hits(self, db: AsyncSession, query: str, paper_ids: list[uuid.UUID], limit: int) -> list[RetrievedChunk]:
        try:
            query_vec = await self.embedder.embed(query)
        except Exception:
            logger.warning("Query embedding failed; using keyword ranking only", exc_info=True)
            return []
        distance = PaperChunk.embedding.cosine_distance(query_vec)
        stmt = (
            self._base_query((1 - distance).label("similarity"))
            .where(
                PaperChunk.paper_id.in_(paper_ids),
                PaperChunk.embedding.is_not(None),
                distance <= 1 - settings.min_vector_score,
            )
            .order_by(distance, PaperChunk.paper_id, PaperChunk.chunk_index)
            .limit(limit)
        )
        rows = (await db.execute(stmt)).all()
        return [_row_to_chunk(r, r.similarity) for r in rows]

    async def _keyword_hits(self, db: AsyncSession, query: str, paper_ids: list[uuid.UUID], limit: int) -> list[RetrievedChunk]:
        tsquery = func.websearch_to_tsquery("english", query)
        rank = func.ts_rank_cd(PaperChunk.content_tsv, tsquery, 32)
        stmt = (
            self._base_query(rank.label("rank"))
            .where(PaperChunk.paper_id.in_(paper_ids), PaperChunk.content_tsv.op("@@")(tsquery))
            .order_by(rank.desc(), PaperChunk.paper_id, PaperChunk.chunk_index)
            .limit(limit)
        )
        rows = (await db.execute(stmt)).all()
        return [_row_to_chunk(r, r.rank) for r in rows]

    async def search(self, query: str, paper_ids: Sequence[uuid.UUID], limit: int = 10) -> list[RetrievedChunk]:
        ids = list(paper_ids)
        if not ids or not query.strip():
            return []
        async with self.session_maker() as db:
            vector_hits = await self._vector_hits(db, query, ids, limit * 2)
            keyword_hits = await self._keyword_hits(db, query, ids, limit * 2)
        return fuse_hits(vector_hits, keyword_hits, limit)


async def build_section_contexts(
    outline: GeneratedOutline,
    papers: Sequence[PaperRecord],
    retriever: HybridRetriever,
) -> list[SectionContext]:
    """One context per outline section, retrieved only from that section's candidates."""
    all_ids = [p.id for p in papers]

    async def _build(section) -> SectionContext:
        candidates = section.candidate_paper_ids or all_ids
        budget = chunk_budget(section.expected_words)
        query = " ".join([section.title, *section.key_points]).strip()
        hits = await retriever.search(query, candidates, limit=budget * 2)
        chunks = balance_chunks(deduplicate_chunks(hits))[:budget]
        return SectionContext(
            section_key=section.key,
            title=section.title,
            key_points=section.key_points,
            candidate_paper_ids=candidates,
            context_chunks=chunks,
            expected_words=section.expected_words,
        )

    contexts = await asyncio.gather(*(_build(s) for s in outline.sections))
    logger.info(
        "Built %d section contexts (%d chunks total)",
        len(contexts), sum(len(c.context_chunks) for c in contexts),
    )
    return list(contexts)
