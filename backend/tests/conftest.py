"""Shared fakes for the test suite; nothing here touches a database or the network."""

import asyncio
import hashlib
import re
from types import SimpleNamespace

from genpaper.schemas import CitationResult
from genpaper.utils.text import normalize_doi

EMBED_DIM = 64


def bag_of_words_vector(text: str, dim: int = EMBED_DIM) -> list[float]:
    vector = [0.0] * dim
    for word in re.findall(r"[a-z]+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vector[bucket] += 1.0
    return vector


class FakeEmbedder:
    """Deterministic bag-of-words embeddings: shared words mean higher cosine similarity."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed_many(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("embedding backend unavailable")
        return [bag_of_words_vector(t) for t in texts]

    async def embed(self, text):
        return (await self.embed_many([text]))[0]


def completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls, role="assistant")
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def tool_call(call_id: str, name: str, arguments: str):
    return SimpleNamespace(id=call_id, type="function", function=SimpleNamespace(name=name, arguments=arguments))


class FakeChatCompletions:
    """Stands in for client.chat.completions; `responder(kwargs)` builds each reply."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.responder(kwargs)
        if isinstance(reply, Exception):
            raise reply
        return reply


def fake_openai_client(responder):
    completions = FakeChatCompletions(responder)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class FakeCitationStore:
    """In-memory citation store; check-and-insert in upsert is atomic like ON CONFLICT DO NOTHING."""

    def __init__(self, papers):
        self.papers = {p.id: p for p in papers}
        self.rows = {}
        self.upsert_calls = 0

    async def get_paper(self, paper_id):
        return self.papers.get(paper_id)

    async def find_paper_by_doi(self, doi):
        return next((p for p in self.papers.values() if normalize_doi(p.doi) == doi), None)

    async def title_candidates(self, title, year, limit=200):
        return [
            p for p in self.papers.values()
            if year is None or p.publication_year is None or abs(p.publication_year - year) <= 1
        ]

    async def upsert(self, project_id, paper_id, cite_key, csl, reason, quote):
        self.upsert_calls += 1
        await asyncio.sleep(0)
        key = (project_id, cite_key)
        existing = self.rows.get(key)
        if existing is not None:
            return existing.model_copy(update={"is_new": False})
        order = sum(1 for pid, _ in self.rows if pid == project_id) + 1
        result = CitationResult(cite_key=cite_key, csl=csl, is_new=True, first_seen_order=order, paper_id=paper_id)
        self.rows[key] = result
        return result
