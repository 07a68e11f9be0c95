"""Tiered PDF text extraction: DOI lookup, GROBID, text layer, OCR, fallback."""

import asyncio
import io
import logging
import re
import time
import xml.etree.ElementTree as ET
from typing import Any, Awaitable

import fitz
import httpx
import pytesseract
from PIL import Image

from genpaper.core.config import get_settings
from genpaper.core.exceptions import ExtractionFailure
from genpaper.models import ExtractionMethod, ExtractionConfidence
from genpaper.schemas import ExtractionOptions, ExtractionResult, ExtractionMetadata
from genpaper.utils.text import normalize_text, normalize_doi, word_count

settings = get_settings()
logger = logging.getLogger(__name__)

USER_AGENT = "Genpaper/2.0 Academic Research Tool"
TEI_NS = {"tei": "http://www.tei-c.org/ns/1.0"}
MAX_OCR_PAGES = 30

DOI_PATTERN = re.compile(r"(?:doi|DOI)\s*:?\s*(10\.\d+/[^\s]+)")
AUTHORS_PATTERN = re.compile(r"(?:authors?|by)\s*:?\s*([^.\n]+)", re.IGNORECASE)
ABSTRACT_PATTERN = re.compile(
    r"abstract\s*[:.\-]?\s*(.+?)(?:\n\s*(?:\d+\.?\s*)?(?:introduction|keywords|background|1\s)|\Z)",
    re.IGNORECASE | re.DOTALL,
)


def find_doi(text: str) -> str | None:
    match = DOI_PATTERN.search(text or "")
    if not match:
        return None
    return normalize_doi(match.group(1))


def guess_title(text: str) -> str | None:
    lines = [line.strip() for line in (text or "").split("\n") if line.strip()]
    for line in lines[:5]:
        if 10 <= len(line) <= 200 and "@" not in line:
            return line
    return None


def guess_authors(text: str) -> list[str]:
    match = AUTHORS_PATTERN.search((text or "")[:3000])
    if not match:
        return []
    parts = re.split(r",|&|\band\b", match.group(1))
    return [p.strip() for p in parts if p.strip()][:10]


def guess_abstract(text: str) -> str | None:
    match = ABSTRACT_PATTERN.search((text or "")[:10000])
    if not match:
        return None
    abstract = re.sub(r"\s+", " ", match.group(1)).strip()
    return abstract[:2000] or None


def _strip_markup(text: str | None) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", " ", text or "")).strip()


def parse_crossref_message(message: dict[str, Any]) -> dict[str, Any]:
    titles = message.get("title") or []
    venues = message.get("container-title") or []
    authors = []
    for author in message.get("author") or []:
        name = f"{author.get('given', '')} {author.get('family', '')}".strip()
        if name:
            authors.append(name)
    year = None
    for field in ("published", "published-print", "published-online", "issued"):
        parts = (message.get(field) or {}).get("date-parts") or []
        if parts and parts[0] and parts[0][0]:
            year = int(parts[0][0])
            break
    return {
        "title": titles[0] if titles else None,
        "authors": authors,
        "abstract": _strip_markup(message.get("abstract")) or None,
        "venue": venues[0] if venues else None,
        "doi": normalize_doi(message.get("DOI")),
        "year": year,
    }


def parse_tei(tei_xml: str) -> dict[str, Any]:
    root = ET.fromstring(tei_xml)
    title = root.findtext(".//tei:teiHeader//tei:titleStmt/tei:title", default="", namespaces=TEI_NS).strip()

    authors = []
    for pers in root.findall(".//tei:sourceDesc//tei:author/tei:persName", TEI_NS):
        forenames = " ".join((f.text or "").strip() for f in pers.findall("tei:forename", TEI_NS))
        surname = pers.findtext("tei:surname", default="", namespaces=TEI_NS).strip()
        name = f"{forenames} {surname}".strip()
        if name:
            authors.append(name)

    abstract_el = root.find(".//tei:profileDesc/tei:abstract", TEI_NS)
    abstract = " ".join("".join(abstract_el.itertext()).split()) if abstract_el is not None else ""

    paragraphs = []
    for div in root.findall(".//tei:text/tei:body/tei:div", TEI_NS):
        head = div.findtext("tei:head", default="", namespaces=TEI_NS).strip()
        if head:
            paragraphs.append(head)
        for p in div.findall("tei:p", TEI_NS):
            text = " ".join("".join(p.itertext()).split())
            if text:
                paragraphs.append(text)

    doi = root.findtext(".//tei:sourceDesc//tei:idno[@type='DOI']", default="", namespaces=TEI_NS)
    return {
        "title": title or None,
        "authors": authors,
        "abstract": abstract or None,
        "body": "\n\n".join(paragraphs),
        "doi": normalize_doi(doi),
    }


class PdfExtractor:
    """Turn PDF bytes into normalized text, trying cheaper and more confident strategies first."""

    def __init__(
        self,
        min_text_chars: int | None = None,
        scanned_page_chars: int | None = None,
    ):
        self.min_text_chars = min_text_chars or settings.min_text_layer_chars
        self.scanned_page_chars = scanned_page_chars or settings.scanned_page_chars

    # Low-level readers, overridable for tests

    def _read_pages(self, pdf_bytes: bytes) -> list[str]:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return [page.get_text("text") for page in doc]

    def _ocr_pages(self, pdf_bytes: bytes) -> str:
        texts: list[str] = []
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for i in range(min(doc.page_count, MAX_OCR_PAGES)):
                pix = doc[i].get_pixmap(matrix=fitz.Matrix(2, 2))
                img = Image.open(io.BytesIO(pix.tobytes("ppm")))
                texts.append(pytesseract.image_to_string(img))
        return "\n\n".join(texts)

    async def _lookup_doi(self, doi: str) -> dict[str, Any] | None:
        params = {"mailto": settings.crossref_mailto} if settings.crossref_mailto else None
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.get(
                f"https://api.crossref.org/works/{doi}",
                params=params,
                headers={"User-Agent": USER_AGENT},
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
        return parse_crossref_message(resp.json().get("message") or {})

    async def _grobid_parse(self, pdf_bytes: bytes, endpoint: str) -> dict[str, Any] | None:
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(
                f"{endpoint}/api/processFulltextDocument",
                files={"input": ("document.pdf", pdf_bytes, "application/pdf")},
                data={"includeRawCitations": "1", "includeRawAffiliations": "1"},
                headers={"User-Agent": USER_AGENT},
            )
            resp.raise_for_status()
        return parse_tei(resp.text)

    async def _attempt(self, name: str, step: Awaitable[Any], timeout_s: float, notes: list[str]) -> Any:
        try:
            return await asyncio.wait_for(step, timeout=timeout_s)
        except asyncio.TimeoutError:
            notes.append(f"{name} timed out after {timeout_s:.0f}s")
            logger.warning("Extraction step %s timed out", name)
        except Exception as e:
            notes.append(f"{name} failed: {type(e).__name__}: {str(e)[:200]}")
            logger.warning("Extraction step %s failed", name, exc_info=True)
        return None

    def _result(
        self,
        started: float,
        full_text: str,
        method: ExtractionMethod,
        confidence: ExtractionConfidence,
        page_count: int,
        is_scanned: bool,
        notes: list[str],
        **fields: Any,
    ) -> ExtractionResult:
        text = normalize_text(full_text)
        return ExtractionResult(
            full_text=text,
            extraction_method=method,
            confidence=confidence,
            title=fields.get("title"),
            authors=tuple(fields.get("authors") or ()),
            abstract=fields.get("abstract"),
            doi=fields.get("doi"),
            venue=fields.get("venue"),
            year=fields.get("year"),
            metadata=ExtractionMetadata(
                word_count=word_count(text),
                page_count=page_count,
                is_scanned=is_scanned,
                processing_notes=list(notes),
            ),
            extraction_time_ms=int((time.monotonic() - started) * 1000),
        )

    async def extract(self, pdf_bytes: bytes, options: ExtractionOptions | None = None) -> ExtractionResult:
        options = options or ExtractionOptions()
        timeout_s = max(options.max_timeout_ms, 1) / 1000
        started = time.monotonic()
        notes: list[str] = []
        partials: list[str] = []

        pages = await self._attempt("text-read", asyncio.to_thread(self._read_pages, pdf_bytes), timeout_s, notes)
        pages = pages or []
        first_page = pages[0] if pages else ""
        is_scanned = len(first_page.strip()) < self.scanned_page_chars
        layer_text = normalize_text("\n\n".join(pages))
        if layer_text:
            partials.append(layer_text)

        doi = find_doi(first_page)
        if doi:
            meta = await self._attempt("doi-lookup", self._lookup_doi(doi), timeout_s, notes)
            if meta and (meta.get("title") or meta.get("abstract")):
                parts = [meta.get("title") or "", meta.get("abstract") or ""]
                if not is_scanned and len(layer_text) >= self.min_text_chars:
                    parts.append(layer_text)
                notes.append(f"metadata resolved via DOI {doi}")
                return self._result(
                    started, "\n\n".join(p for p in parts if p), ExtractionMethod.DOI_LOOKUP,
                    ExtractionConfidence.HIGH, len(pages), is_scanned, notes,
                    **{**meta, "doi": meta.get("doi") or doi},
                )
            if meta is None:
                notes.append(f"DOI {doi} not resolved")

        if options.grobid_endpoint:
            tei = await self._attempt(
                "grobid", self._grobid_parse(pdf_bytes, options.grobid_endpoint), timeout_s, notes
            )
            if tei:
                body = "\n\n".join(p for p in (tei.get("title"), tei.get("abstract"), tei.get("body")) if p)
                if len(body) >= self.min_text_chars:
                    return self._result(
                        started, body, ExtractionMethod.GROBID, ExtractionConfidence.HIGH,
                        len(pages), is_scanned, notes, **tei,
                    )
                if body:
                    partials.append(body)

        if not is_scanned and len(layer_text) >= self.min_text_chars:
            return self._result(
                started, layer_text, ExtractionMethod.TEXT_LAYER, ExtractionConfidence.MEDIUM,
                len(pages), is_scanned, notes,
                title=guess_title(layer_text), authors=guess_authors(layer_text),
                abstract=guess_abstract(layer_text), doi=doi,
            )

        if options.enable_ocr and is_scanned:
            ocr_text = await self._attempt("ocr", asyncio.to_thread(self._ocr_pages, pdf_bytes), timeout_s, notes)
            ocr_text = normalize_text(ocr_text or "")
            if len(ocr_text) >= self.min_text_chars:
                return self._result(
                    started, ocr_text, ExtractionMethod.OCR, ExtractionConfidence.LOW,
                    len(pages), is_scanned, notes,
                    title=guess_title(ocr_text), authors=guess_authors(ocr_text),
                    abstract=guess_abstract(ocr_text), doi=doi,
                )
            notes.append(f"OCR produced only {len(ocr_text)} characters")
            if ocr_text:
                partials.append(ocr_text)
        elif is_scanned:
            notes.append("document appears scanned; OCR not enabled")

        best = max(partials, key=len, default="")
        if best.strip():
            notes.append("returned best partial text")
            return self._result(
                started, best, ExtractionMethod.FALLBACK, ExtractionConfidence.LOW,
                len(pages), is_scanned, notes,
                title=guess_title(best), doi=doi,
            )

        raise ExtractionFailure("All extraction strategies exhausted", notes=notes)
