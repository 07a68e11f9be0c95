from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from genpaper.api.v1.deps import CitationServiceDep, require_project
from genpaper.core.exceptions import UnresolvedSourceReference
from genpaper.models import Project
from genpaper.schemas import CitationCreate, CitationResponse, CitationResult, CitationStyle
from genpaper.services.citation_formatter import citation_numbers, format_inline, format_reference

router = APIRouter()

OwnedProject = Annotated[Project, Depends(require_project)]


@router.post("/{project_id}/citations", response_model=CitationResult)
async def add_citation(data: CitationCreate, project: OwnedProject, citation_service: CitationServiceDep):
    try:
        return await citation_service.add(project.id, data.source_ref, reason=data.reason, quote=data.quote)
    except UnresolvedSourceReference as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/{project_id}/citations", response_model=list[CitationResponse])
async def list_citations(
    project: OwnedProject,
    citation_service: CitationServiceDep,
    style: Annotated[CitationStyle | None, Query()] = None,
):
    style = style or project.citation_style
    rows = await citation_service.store.list_for_project(project.id)
    numbers = citation_numbers(rows)
    return [
        CitationResponse(
            id=row.id,
            cite_key=row.cite_key,
            paper_id=row.paper_id,
            csl_json=row.csl_json,
            first_seen_order=row.first_seen_order,
            reason=row.reason,
            quote=row.quote,
            inline=format_inline(row.csl_json, style, numbers[row.cite_key]),
            reference=format_reference(row.csl_json, style, numbers[row.cite_key]),
        )
        for row in rows
    ]
