import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable

from pydantic import ValidationError

from genpaper.core.exceptions import UnresolvedSourceReference
from genpaper.schemas import SourceRef, UsedCitation
from genpaper.services.citation_formatter import format_inline

logger = logging.getLogger(__name__)

CITATION_NEEDED = "[citation needed]"


class ToolExecutionError(RuntimeError):
    """Raised when a tool execution fails."""
    pass


class BaseTool(ABC):
    """Base class for agent tools."""

    name: str
    description: str

    @abstractmethod
    async def execute(self, args: Any) -> str:
        pass

    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query or term to look up"},
            },
            "required": ["query"],
        }

    def openai_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters(),
            },
        }


class AddCitationTool(BaseTool):
    """Record a citation through the citation service while a section is written."""

    name = "add_citation"
    description = (
        "Record a citation for a source you rely on. Call this whenever a claim depends on one of the "
        "provided papers, then place the returned [CITE: ...] marker right after that claim."
    )

    def __init__(self, service, context, allowed_paper_ids: Iterable[uuid.UUID] | None = None):
        self.service = service
        self.context = context
        self.allowed_paper_ids = set(allowed_paper_ids) if allowed_paper_ids is not None else None
        self.used: list[UsedCitation] = []
        self.unresolved = 0

    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "paper_id": {"type": "string", "description": "Id of the paper as listed in the evidence"},
                "doi": {"type": "string", "description": "DOI of the source, if known"},
                "title": {"type": "string", "description": "Title of the source when no id or DOI is known"},
                "year": {"type": "integer", "description": "Publication year"},
                "reason": {"type": "string", "description": "What the source supports"},
                "quote": {"type": "string", "description": "Short supporting quote from the evidence"},
            },
            "required": ["reason"],
        }

    async def execute(self, args: Any) -> str:
        if not isinstance(args, dict):
            raise ToolExecutionError("Arguments must be a JSON object.")
        try:
            ref = SourceRef(
                paper_id=args.get("paper_id") or None,
                doi=args.get("doi") or None,
                title=args.get("title") or None,
                year=args.get("year") or None,
            )
        except ValidationError as e:
            raise ToolExecutionError(f"Invalid source reference: {e.errors()[0].get('msg')}")

        try:
            paper = await self.service.resolve(ref)
        except UnresolvedSourceReference:
            self.unresolved += 1
            logger.info("Unresolved citation in project %s: %s", self.context.project_id, ref)
            return f"Source not found. Write {CITATION_NEEDED} after this claim instead of a marker."

        if self.allowed_paper_ids is not None and paper.id not in self.allowed_paper_ids:
            return f"This source is not part of the provided evidence. Write {CITATION_NEEDED} instead."

        result = await self.service.add(
            self.context.project_id,
            SourceRef(paper_id=paper.id),
            reason=str(args.get("reason") or ""),
            quote=args.get("quote"),
            context=self.context,
        )

        inline = format_inline(result.csl, self.context.citation_style, result.first_seen_order)
        if result.paper_id is not None and all(u.paper_id != result.paper_id for u in self.used):
            self.used.append(UsedCitation(paper_id=result.paper_id, cite_key=result.cite_key, citation_text=inline))
        return f"Citation recorded as {inline}. Insert [CITE: {result.paper_id}] after the supported claim."
