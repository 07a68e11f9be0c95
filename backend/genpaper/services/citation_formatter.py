"""CSL record construction and deterministic inline/bibliography rendering."""

import re
import uuid
from typing import Any, Iterable, Protocol

CITE_MARKER = re.compile(r"\[CITE:\s*([^\]\s]+)\s*\]")
ANONYMOUS = "Anonymous"
NO_DATE = "n.d."


class StoredCitation(Protocol):
    paper_id: uuid.UUID | None
    cite_key: str
    csl_json: dict[str, Any]
    first_seen_order: int


def parse_author(name: str) -> dict[str, str]:
    """"Last, First" and "First Last" become family/given; single names stay literal."""
    name = re.sub(r"\s+", " ", (name or "").strip())
    if not name:
        return {"literal": ANONYMOUS}
    if "," in name:
        family, _, given = name.partition(",")
        family, given = family.strip(), given.strip()
        return {"family": family, "given": given} if given else {"literal": family}
    parts = name.split(" ")
    if len(parts) == 1:
        return {"literal": parts[0]}
    return {"family": parts[-1], "given": " ".join(parts[:-1])}


def to_csl(paper: Any) -> dict[str, Any]:
    """Build an article-journal CSL record from a paper row or record."""
    meta = getattr(paper, "paper_metadata", None) or {}
    csl: dict[str, Any] = {
        "type": "article-journal",
        "title": paper.title,
        "author": [parse_author(a) for a in (paper.authors or []) if a and str(a).strip()],
    }
    year = getattr(paper, "publication_year", None)
    if year:
        csl["issued"] = {"date-parts": [[int(year)]]}
    optional = {
        "container-title": getattr(paper, "venue", None),
        "page": meta.get("page"),
        "volume": meta.get("volume"),
        "issue": meta.get("issue"),
        "DOI": getattr(paper, "doi", None),
        "URL": getattr(paper, "url", None),
    }
    csl.update({k: v for k, v in optional.items() if v})
    return csl


def _family(author: dict[str, Any]) -> str:
    return author.get("family") or author.get("literal") or ANONYMOUS


def _initials(given: str) -> str:
    return " ".join(f"{part[0].upper()}." for part in re.split(r"[\s\-]+", given) if part)


def csl_year(csl: dict[str, Any]) -> str:
    try:
        return str(csl["issued"]["date-parts"][0][0])
    except (KeyError, IndexError, TypeError):
        return NO_DATE


def format_inline(csl: dict[str, Any], style: str = "apa", number: int | None = None) -> str:
    if style == "ieee":
        return f"[{number or 1}]"

    authors = csl.get("author") or []
    year = csl_year(csl)
    if not authors:
        names = ANONYMOUS
    elif len(authors) == 1:
        names = _family(authors[0])
    elif len(authors) == 2:
        joiner = " and " if style in ("mla", "chicago") else " & "
        names = f"{_family(authors[0])}{joiner}{_family(authors[1])}"
    else:
        names = f"{_family(authors[0])} et al."

    if style == "mla":
        return f"({names})"
    if style in ("chicago", "harvard"):
        return f"({names} {year})"
    return f"({names}, {year})"


def _apa_authors(authors: list[dict[str, Any]]) -> str:
    names = []
    for a in authors:
        if a.get("family") and a.get("given"):
            names.append(f"{a['family']}, {_initials(a['given'])}")
        else:
            names.append(_family(a))
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f", & {names[-1]}"


def _full_name_authors(authors: list[dict[str, Any]], last_joiner: str) -> str:
    names = []
    for i, a in enumerate(authors):
        if a.get("family") and a.get("given"):
            names.append(f"{a['family']}, {a['given']}" if i == 0 else f"{a['given']} {a['family']}")
        else:
            names.append(_family(a))
    if len(names) <= 2:
        return last_joiner.join(names)
    return ", ".join(names[:-1]) + f",{last_joiner}{names[-1]}"


def _ieee_authors(authors: list[dict[str, Any]]) -> str:
    names = [
        f"{_initials(a['given'])} {a['family']}" if a.get("family") and a.get("given") else _family(a)
        for a in authors
    ]
    if len(names) <= 2:
        return " and ".join(names)
    return ", ".join(names[:-1]) + f", and {names[-1]}"


def format_reference(csl: dict[str, Any], style: str = "apa", number: int | None = None) -> str:
    authors = csl.get("author") or [{"literal": ANONYMOUS}]
    title = (csl.get("title") or "Untitled").rstrip(".")
    year = csl_year(csl)
    container = csl.get("container-title")
    volume, issue, page = csl.get("volume"), csl.get("issue"), csl.get("page")
    doi, url = csl.get("DOI"), csl.get("URL")
    link = f"https://doi.org/{doi}" if doi else url

    if style == "ieee":
        parts = [f"[{number or 1}] {_ieee_authors(authors)}, \"{title},\""]
        if container:
            parts.append(f"{container},")
        if volume:
            parts.append(f"vol. {volume},")
        if issue:
            parts.append(f"no. {issue},")
        if page:
            parts.append(f"pp. {page},")
        parts.append(f"{year}.")
        if doi:
            parts.append(f"doi: {doi}.")
        return " ".join(parts)

    if style == "mla":
        ref = f"{_full_name_authors(authors, ', and ' if len(authors) > 2 else ' and ')}. \"{title}.\""
        details = [container] if container else []
        if volume:
            details.append(f"vol. {volume}")
        if issue:
            details.append(f"no. {issue}")
        details.append(year)
        if page:
            details.append(f"pp. {page}")
        return f"{ref} {', '.join(details)}."

    if style == "chicago":
        ref = f"{_full_name_authors(authors, ' and ')}. {year}. \"{title}.\""
        if container:
            ref += f" {container}"
            if volume:
                ref += f" {volume}"
            if issue:
                ref += f" ({issue})"
            if page:
                ref += f": {page}"
            ref += "."
        return f"{ref} {link}." if link else ref

    if style == "harvard":
        ref = f"{_apa_authors(authors).replace(', &', ' and')} ({year}) '{title}'"
        if container:
            ref += f", {container}"
            if volume:
                ref += f", {volume}" + (f"({issue})" if issue else "")
            if page:
                ref += f", pp. {page}"
        ref += "."
        return f"{ref} Available at: {link}." if link else ref

    ref = f"{_apa_authors(authors)} ({year}). {title}."
    if container:
        ref += f" {container}"
        if volume:
            ref += f", {volume}" + (f"({issue})" if issue else "")
        if page:
            ref += f", {page}"
        ref += "."
    return f"{ref} {link}" if link else ref


def citation_numbers(citations: Iterable[StoredCitation]) -> dict[str, int]:
    """Numeric labels by rank of first_seen_order, keyed by cite_key."""
    ordered = sorted(citations, key=lambda c: c.first_seen_order)
    return {c.cite_key: rank for rank, c in enumerate(ordered, start=1)}


def render_markers(content: str, citations: Iterable[StoredCitation], style: str = "apa") -> str:
    """Replace [CITE: id] markers (paper id or cite key) with inline citations.

    Markers that match no known citation are removed.
    """
    citations = list(citations)
    numbers = citation_numbers(citations)
    by_ref: dict[str, StoredCitation] = {}
    for c in citations:
        by_ref[c.cite_key] = c
        if c.paper_id is not None:
            by_ref[str(c.paper_id)] = c

    def _replace(match: re.Match) -> str:
        citation = by_ref.get(match.group(1))
        if citation is None:
            return ""
        return format_inline(citation.csl_json, style, numbers[citation.cite_key])

    return clean_citation_artifacts(CITE_MARKER.sub(_replace, content))


_TOOL_LEAKS = (
    re.compile(r"<tool_call>.*?</tool_call>", re.S),
    re.compile(r"\badd_citation\s*\([^)]*\)"),
    re.compile(r"\{\s*\"(?:paper_id|doi|title)\"\s*:[^{}]*\}"),
)


def clean_citation_artifacts(text: str) -> str:
    """Strip leaked tool syntax, empty markers and brackets, and doubled spaces."""
    for pattern in _TOOL_LEAKS:
        text = pattern.sub("", text)
    text = re.sub(r"\[CITE:\s*\]", "", text)
    text = re.sub(r"\(\s*\)|\[\s*\]", "", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r" +([.,;:])", r"\1", text)
    return text.strip()
