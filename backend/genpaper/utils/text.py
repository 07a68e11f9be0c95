"""Text normalization, segmentation and similarity helpers."""

import re
import uuid

CHUNK_NAMESPACE = uuid.UUID("7d3f2b9e-4c1a-5e8b-9f60-2a1d4c8e7b35")
PAPER_NAMESPACE = uuid.UUID("0b6a3e51-92c4-5d7f-8e1b-6c4f2a9d3e70")

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(\[])")
_WORD = re.compile(r"\S+")


def normalize_text(text: str) -> str:
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def normalize_title(title: str | None) -> str:
    """Lowercase alphanumerics only; used for dedup and fuzzy matching."""
    return re.sub(r"[^a-z0-9]", "", (title or "").lower())


def title_tokens(title: str | None) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", (title or "").lower()))


def normalize_doi(doi: str | None) -> str | None:
    if not doi:
        return None
    value = doi.strip().lower()
    value = re.sub(r"^(https?://(dx\.)?doi\.org/|doi:\s*)", "", value)
    value = value.rstrip(".,;)")
    return value or None


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]


def word_count(text: str) -> int:
    return len(_WORD.findall(text or ""))


def _tail_overlap(text: str, overlap: int) -> str:
    if overlap <= 0 or len(text) <= overlap:
        return ""
    tail = text[-overlap:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1:]
    return tail.strip()


def _split_long_paragraph(paragraph: str, size: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for sentence in split_sentences(paragraph) or [paragraph]:
        while len(sentence) > size:
            cut = sentence.rfind(" ", 0, size)
            if cut <= size // 2:
                cut = size
            head, sentence = sentence[:cut].strip(), sentence[cut:].strip()
            if current:
                pieces.append(current)
                current = ""
            pieces.append(head)
        if current and len(current) + 1 + len(sentence) > size:
            pieces.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}".strip()
    if current:
        pieces.append(current)
    return pieces


def split_into_windows(text: str, size: int, overlap: int, min_size: int) -> list[str]:
    """Paragraph-preserving windows of at most ~size chars with tail overlap.

    Windows shorter than min_size are merged into the previous window.
    """
    if not text or len(text) < min_size:
        return []

    paragraphs: list[str] = []
    for para in text.split("\n\n"):
        para = para.strip()
        if not para:
            continue
        if len(para) > size:
            paragraphs.extend(_split_long_paragraph(para, size))
        else:
            paragraphs.append(para)

    windows: list[str] = []
    current = ""
    for para in paragraphs:
        if current and len(current) + 2 + len(para) > size:
            windows.append(current)
            prefix = _tail_overlap(current, overlap)
            current = f"{prefix}\n\n{para}" if prefix else para
        else:
            current = f"{current}\n\n{para}" if current else para
    if current:
        windows.append(current)

    merged: list[str] = []
    for window in windows:
        if merged and len(window) < min_size:
            merged[-1] = f"{merged[-1]}\n\n{window}"
        else:
            merged.append(window)
    return merged


def clamp_at_sentence(text: str, max_size: int) -> str:
    """Clamp to max_size, preferring a sentence end past 80% of the budget."""
    if len(text) <= max_size:
        return text
    head = text[:max_size]
    boundary = max(head.rfind(". "), head.rfind("! "), head.rfind("? "), head.rfind(".\n"))
    if boundary >= int(max_size * 0.8):
        return head[: boundary + 1].strip()
    return head.strip()


def truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def chunk_id(paper_id: uuid.UUID, index: int, content: str) -> uuid.UUID:
    return uuid.uuid5(CHUNK_NAMESPACE, f"{paper_id}|{index}|{content[:100]}")


def paper_id_for(doi: str | None, title: str, first_author: str | None, year: int | None) -> uuid.UUID:
    """Stable paper id: DOI when known, else title|first author|year."""
    normalized = normalize_doi(doi)
    if normalized:
        return uuid.uuid5(PAPER_NAMESPACE, f"doi:{normalized}")
    key = f"{normalize_title(title)}|{(first_author or '').strip().lower()}|{year or ''}"
    return uuid.uuid5(PAPER_NAMESPACE, key)


def _ngrams(text: str, n: int, min_word_len: int = 0) -> set[str]:
    words = [w for w in re.findall(r"[a-z0-9']+", text.lower()) if len(w) > min_word_len]
    return {" ".join(words[i:i + n]) for i in range(len(words) - n + 1)}


def four_gram_overlap_ratio(candidate: str, reference: str) -> float:
    """Share of the candidate's word 4-grams that also occur in reference."""
    candidate_grams = _ngrams(candidate, 4)
    if not candidate_grams:
        return 0.0
    reference_grams = _ngrams(reference, 4)
    if not reference_grams:
        return 0.0
    return len(candidate_grams & reference_grams) / len(candidate_grams)


def internal_duplication_score(content: str, n: int = 5) -> int:
    """100 for no repeated n-grams within the text, falling to 0 at 10% repetition."""
    sentences = [s for s in re.split(r"[.!?]+", content) if len(s.strip()) > 20]
    if len(sentences) < 3:
        return 100
    seen: set[str] = set()
    duplicates = 0
    for sentence in sentences:
        words = [w for w in sentence.lower().split() if len(w) > 2]
        for i in range(len(words) - n + 1):
            gram = " ".join(words[i:i + n])
            if gram in seen:
                duplicates += 1
            else:
                seen.add(gram)
    if not seen:
        return 100
    return round(max(0.0, 100 - (duplicates / len(seen)) * 1000))
