import asyncio
import logging
from typing import Sequence

from openai import AsyncOpenAI, APIConnectionError, RateLimitError, APIStatusError

from genpaper.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

BATCH_SIZE = 64
INITIAL_RETRY_DELAY = 1.0
MAX_INPUT_CHARS = 8000


class EmbeddingService:
    """Batched OpenAI embeddings with backoff on transient provider errors."""

    def __init__(self, client: AsyncOpenAI, model: str | None = None, max_retries: int | None = None):
        self.client = client
        self.model = model or settings.openai_embedding_model
        self.max_retries = max_retries or settings.openai_max_retries

    async def _create_with_retry(self, inputs: list[str]) -> list[list[float]]:
        delay = INITIAL_RETRY_DELAY
        for attempt in range(self.max_retries):
            try:
                response = await self.client.embeddings.create(model=self.model, input=inputs)
                ordered = sorted(response.data, key=lambda d: d.index)
                return [list(d.embedding) for d in ordered]
            except (APIConnectionError, RateLimitError) as e:
                if attempt >= self.max_retries - 1:
                    raise
                logger.warning(
                    "Embedding call failed (attempt %s/%s): %s. Retrying in %.1fs...",
                    attempt + 1, self.max_retries, type(e).__name__, delay,
                )
            except APIStatusError as e:
                if e.status_code != 429 or attempt >= self.max_retries - 1:
                    raise
                logger.warning(
                    "Embedding call rate limited (attempt %s/%s). Retrying in %.1fs...",
                    attempt + 1, self.max_retries, delay,
                )
            await asyncio.sleep(delay)
            delay *= 2
        raise RuntimeError("embedding retries exhausted")

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), BATCH_SIZE):
            batch = [t[:MAX_INPUT_CHARS] or " " for t in texts[start:start + BATCH_SIZE]]
            vectors.extend(await self._create_with_retry(batch))
        logger.debug("Embedded %d texts with %s", len(vectors), self.model)
        return vectors

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(y * y for y in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
