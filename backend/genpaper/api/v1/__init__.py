from fastapi import APIRouter
from genpaper.api.v1 import ingestion, projects, citations

router = APIRouter()

router.include_router(ingestion.router, prefix="/ingestion", tags=["ingestion"])
router.include_router(projects.router, prefix="/projects", tags=["projects"])
router.include_router(citations.router, prefix="/projects", tags=["citations"])
