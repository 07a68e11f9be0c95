"""Rule-based structural signals for retrieval chunks."""

import re
from collections import Counter

from genpaper.models import SectionType
from genpaper.schemas import ChunkMetadata

STOP_WORDS = frozenset({
    "about", "above", "after", "again", "against", "also", "although", "among", "another",
    "because", "been", "before", "being", "below", "between", "both", "could", "does", "doing",
    "down", "during", "each", "either", "else", "even", "ever", "every", "from", "further",
    "have", "having", "here", "however", "into", "itself", "just", "least", "less", "like",
    "many", "more", "most", "much", "must", "neither", "other", "others", "ours", "over",
    "same", "several", "should", "since", "some", "such", "than", "that", "their", "theirs",
    "them", "themselves", "then", "there", "therefore", "these", "they", "this", "those",
    "through", "thus", "under", "until", "upon", "very", "were", "what", "when", "where",
    "whether", "which", "while", "with", "within", "without", "would", "your", "yours",
    "will", "shall", "might", "only", "well", "used", "using", "based", "study", "paper",
    "results", "result", "show", "shows", "shown", "found", "table", "figure", "data",
})


class ChunkSignalDetector:
    """Detect section type and content signals in a chunk of paper text."""

    SECTION_PATTERNS: list[tuple[SectionType, str]] = [
        (SectionType.ABSTRACT, r"^\s*(?:\d+\.?\s*)?abstract\s*(?:[:.\-]|$)"),
        (SectionType.INTRODUCTION, r"^\s*(?:\d+\.?\s*)?(?:introduction|background)\s*(?:[:.\-]|$)"),
        (
            SectionType.METHODS,
            r"^\s*(?:\d+\.?\s*)?(?:materials\s+and\s+methods|methods?|methodology|experimental\s+design)\s*(?:[:.\-]|$)",
        ),
        (SectionType.RESULTS, r"^\s*(?:\d+\.?\s*)?(?:results|findings)\s*(?:[:.\-]|$)"),
        (SectionType.DISCUSSION, r"^\s*(?:\d+\.?\s*)?discussion\s*(?:[:.\-]|$)"),
        (
            SectionType.CONCLUSION,
            r"^\s*(?:\d+\.?\s*)?(?:conclusions?|concluding\s+remarks|summary)\s*(?:[:.\-]|$)",
        ),
    ]

    CITATION_PATTERNS = [
        r"\[\d+\]",
        r"\[\d+(?:\s*[-,]\s*\d+)+\]",
        r"\([A-Z][a-z]+(?:\s+et\s+al\.?)?,?\s*\d{4}\)",
        r"[A-Z][a-z]+\s+(?:et\s+al\.?\s+)?\(\d{4}\)",
    ]

    FIGURE_PATTERNS = [
        r"\b(?:Fig(?:ure)?\.?|Table|Chart|Diagram|Plot|Scheme)\s*\d+",
    ]

    DATA_PATTERNS = [
        r"\d+(?:\.\d+)?\s*%",
        r"\bp\s*[<>=≤≥]\s*0?\.\d+",
        r"\b(?:95|99|90)\s*%\s*CI\b|\bCI\s*[=:]?\s*\[",
        r"\b[nN]\s*=\s*\d+",
        r"\br\s*=\s*-?0?\.\d+",
        r"\bM\s*=\s*\d",
        r"\bSD\s*=\s*\d",
        r"±\s*\d",
        r"\b\d+(?:\.\d+)?\s*(?:mg|kg|ml|mm|cm|km|ms|Hz|kHz|GB|MB|°C)\b",
    ]

    CONCLUSION_PATTERNS = [
        r"\bin\s+conclusion\b",
        r"\bto\s+summarize\b",
        r"\bin\s+summary\b",
        r"\bwe\s+conclude\s+that\b",
        r"\bthis\s+study\s+demonstrates\b",
        r"\bour\s+findings\s+suggest\b",
        r"\bfuture\s+research\s+should\b",
        r"\bfuture\s+work\b",
        r"\blimitations\s+of\s+this\s+study\b",
    ]

    ABSTRACT_HINTS = [r"\bthis\s+paper\b", r"\bthis\s+study\b", r"\bwe\s+present\b", r"\bwe\s+propose\b"]
    METHODS_HINTS = [r"\bparticipants\b", r"\brecruited\b", r"\b\d+\s+participants\b", r"\bwere\s+randomly\s+assigned\b"]
    RESULTS_HINTS = [r"\bthe\s+results\s+show\b", r"\bwe\s+found\s+that\b", r"\banalysis\s+revealed\b"]
    DISCUSSION_HINTS = [r"\bthese\s+findings\s+suggest\b", r"\bconsistent\s+with\b", r"\bin\s+contrast\s+to\s+prior\b"]

    _section_compiled = [(t, re.compile(p, re.IGNORECASE)) for t, p in SECTION_PATTERNS]
    _citation_compiled = [re.compile(p) for p in CITATION_PATTERNS]
    _figure_compiled = [re.compile(p, re.IGNORECASE) for p in FIGURE_PATTERNS]
    _data_compiled = [re.compile(p) for p in DATA_PATTERNS]
    _conclusion_compiled = [re.compile(p, re.IGNORECASE) for p in CONCLUSION_PATTERNS]
    _abstract_compiled = [re.compile(p, re.IGNORECASE) for p in ABSTRACT_HINTS]
    _methods_compiled = [re.compile(p, re.IGNORECASE) for p in METHODS_HINTS]
    _results_compiled = [re.compile(p, re.IGNORECASE) for p in RESULTS_HINTS]
    _discussion_compiled = [re.compile(p, re.IGNORECASE) for p in DISCUSSION_HINTS]

    @staticmethod
    def _any(patterns: list[re.Pattern], text: str) -> bool:
        return any(p.search(text) for p in patterns)

    @classmethod
    def detect_section_type(cls, content: str, chunk_index: int) -> SectionType | None:
        head = content[:200]
        for line in head.splitlines() or [head]:
            for section_type, pattern in cls._section_compiled:
                if pattern.match(line):
                    return section_type

        if chunk_index == 0 and cls._any(cls._abstract_compiled, content):
            return SectionType.ABSTRACT
        if cls._any(cls._methods_compiled, content):
            return SectionType.METHODS
        data_hits = sum(1 for p in cls._data_compiled if p.search(content))
        if data_hits >= 2 or cls._any(cls._results_compiled, content):
            return SectionType.RESULTS
        if cls._any(cls._discussion_compiled, content):
            return SectionType.DISCUSSION
        if cls._any(cls._conclusion_compiled, content):
            return SectionType.CONCLUSION
        return None

    @classmethod
    def has_citations(cls, content: str) -> bool:
        return cls._any(cls._citation_compiled, content)

    @classmethod
    def has_figures(cls, content: str) -> bool:
        return cls._any(cls._figure_compiled, content)

    @classmethod
    def has_data(cls, content: str) -> bool:
        return cls._any(cls._data_compiled, content)

    @classmethod
    def is_conclusion(cls, content: str) -> bool:
        return cls._any(cls._conclusion_compiled, content)

    @staticmethod
    def complexity_score(content: str) -> float:
        """Blend of sentence length (60%) and long-word ratio (40%), in [0, 1]."""
        sentences = [s for s in re.split(r"[.!?]+", content) if s.strip()]
        words = re.findall(r"[A-Za-z]+", content)
        if not sentences or not words:
            return 0.5
        avg_words = len(content.split()) / len(sentences)
        long_ratio = sum(1 for w in words if len(w) >= 8) / len(words)
        score = min(1.0, avg_words / 35) * 0.6 + min(1.0, long_ratio / 0.4) * 0.4
        return round(max(0.0, min(1.0, score)), 3)

    @staticmethod
    def key_terms(content: str, limit: int = 5) -> list[str]:
        cleaned = re.sub(r"[^a-z0-9\s-]", " ", content.lower())
        words = [
            w.strip("-") for w in cleaned.split()
            if len(w.strip("-")) >= 4 and w.strip("-") not in STOP_WORDS and not w.strip("-").isdigit()
        ]
        counts = Counter(words)
        first_seen = {w: i for i, w in reversed(list(enumerate(words)))}
        ranked = sorted(counts, key=lambda w: (-counts[w], first_seen[w]))
        return ranked[:limit]

    @classmethod
    def analyze(cls, content: str, chunk_index: int) -> ChunkMetadata:
        section_type = cls.detect_section_type(content, chunk_index)
        return ChunkMetadata(
            section_type=section_type,
            has_citations=cls.has_citations(content),
            has_figures=cls.has_figures(content),
            has_data=cls.has_data(content),
            is_conclusion=section_type == SectionType.CONCLUSION or cls.is_conclusion(content),
            complexity_score=cls.complexity_score(content),
            key_terms=cls.key_terms(content),
        )
