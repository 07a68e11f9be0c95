import logging
import uuid

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpaper.core.config import get_settings
from genpaper.core.database import async_session_maker
from genpaper.models import PaperChunk
from genpaper.schemas import Chunk
from genpaper.services.embedding import EmbeddingService
from genpaper.utils.chunk_signals import ChunkSignalDetector
from genpaper.utils.text import (
    normalize_text, split_into_windows, clamp_at_sentence, truncate_utf8, chunk_id,
)

settings = get_settings()
logger = logging.getLogger(__name__)


class ContentChunker:
    """Deterministic segmentation plus rule-based metadata and embeddings."""

    def __init__(
        self,
        embedder: EmbeddingService | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        chunk_size: int | None = None,
        overlap: int | None = None,
        min_size: int | None = None,
    ):
        self.embedder = embedder
        self.session_maker = session_maker or async_session_maker
        self.chunk_size = chunk_size or settings.chunk_size
        self.overlap = settings.chunk_overlap if overlap is None else overlap
        self.min_size = min_size or settings.min_chunk_size

    def chunk(self, text: str, paper_id: uuid.UUID) -> list[Chunk]:
        if not text:
            return []
        capped = truncate_utf8(text, settings.max_chunk_input_bytes)
        if len(capped) < len(text):
            logger.warning("Paper %s text truncated to %d bytes before chunking", paper_id, settings.max_chunk_input_bytes)
        normalized = normalize_text(capped)

        windows = split_into_windows(normalized, self.chunk_size, self.overlap, self.min_size)
        chunks: list[Chunk] = []
        for index, window in enumerate(windows):
            content = clamp_at_sentence(window, settings.max_chunk_size)
            chunks.append(
                Chunk(
                    id=chunk_id(paper_id, index, content),
                    paper_id=paper_id,
                    index=index,
                    content=content,
                    metadata=ChunkSignalDetector.analyze(content, index),
                )
            )
        return chunks

    async def chunk_and_embed(self, text: str, paper_id: uuid.UUID) -> list[Chunk]:
        chunks = self.chunk(text, paper_id)
        if not chunks or self.embedder is None:
            return chunks
        vectors = await self.embedder.embed_many([c.content for c in chunks])
        return [c.model_copy(update={"embedding": v}) for c, v in zip(chunks, vectors)]

    async def store_chunks(self, paper_id: uuid.UUID, chunks: list[Chunk]) -> int:
        """Replace a paper's chunk rows with the given chunks."""
        async with self.session_maker() as db:
            await db.execute(delete(PaperChunk).where(PaperChunk.paper_id == paper_id))
            for c in chunks:
                db.add(
                    PaperChunk(
                        id=c.id,
                        paper_id=paper_id,
                        chunk_index=c.index,
                        content=c.content,
                        embedding=c.embedding,
                        section_type=c.metadata.section_type.value if c.metadata.section_type else None,
                        has_citations=c.metadata.has_citations,
                        has_figures=c.metadata.has_figures,
                        has_data=c.metadata.has_data,
                        is_conclusion=c.metadata.is_conclusion,
                        complexity_score=c.metadata.complexity_score,
                        key_terms=c.metadata.key_terms,
                    )
                )
            await db.commit()
        logger.info("Stored %d chunks for paper %s", len(chunks), paper_id)
        return len(chunks)

    async def process(self, text: str, paper_id: uuid.UUID) -> int:
        chunks = await self.chunk_and_embed(text, paper_id)
        return await self.store_chunks(paper_id, chunks)
