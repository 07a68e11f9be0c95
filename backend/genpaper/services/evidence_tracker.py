import re
import uuid
from typing import Iterable, Sequence

from genpaper.schemas import RetrievedChunk


def content_hash(text: str) -> str:
    """Whitespace- and punctuation-insensitive fingerprint of a chunk."""
    normalized = re.sub(r"\s+", " ", (text or "").lower())
    normalized = re.sub(r"[^\w\s]", "", normalized).strip()
    if len(normalized) <= 100:
        return normalized
    return f"{normalized[:50]}::{normalized[-50:]}"


class EvidenceTracker:
    """Per-run ledger of evidence chunks already used by earlier sections."""

    def __init__(self) -> None:
        self._used: dict[str, str] = {}

    @staticmethod
    def key_for(paper_id: uuid.UUID, content: str) -> str:
        return f"{paper_id}:{content_hash(content)}"

    def track_usage(self, chunks: Iterable[RetrievedChunk], section_key: str) -> int:
        added = 0
        for chunk in chunks:
            key = self.key_for(chunk.paper_id, chunk.content)
            if key not in self._used:
                self._used[key] = section_key
                added += 1
        return added

    def is_already_used(self, paper_id: uuid.UUID, content: str) -> bool:
        return self.key_for(paper_id, content) in self._used

    def filter_unused(self, chunks: Sequence[RetrievedChunk]) -> list[RetrievedChunk]:
        return [c for c in chunks if not self.is_already_used(c.paper_id, c.content)]

    def clear(self) -> None:
        self._used.clear()

    def stats(self) -> dict[str, int]:
        sections: dict[str, int] = {}
        for section in self._used.values():
            sections[section] = sections.get(section, 0) + 1
        return {"total_used": len(self._used), "sections": len(sections)}
