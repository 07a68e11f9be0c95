import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from genpaper.core.config import get_settings
from genpaper.core.database import engine, Base
from genpaper.api.v1 import router as api_router
from genpaper.services import (
    CitationService,
    ContentChunker,
    DiscoveryService,
    EmbeddingService,
    GenerationPipeline,
    GenerationRuns,
    HallucinationDetector,
    HybridRetriever,
    LiteratureSearchClient,
    OutlineGenerator,
    PaperStore,
    PdfExtractor,
    PdfProcessingQueue,
    PdfStorage,
    ProcessingJobStore,
    ProjectStore,
    SectionGenerator,
    StatusBroadcaster,
)
from genpaper.services.llm_client import build_openai_client
# Import all models to register them with Base
from genpaper import models  # noqa: F401

settings = get_settings()

_log_level = os.getenv("LOG_LEVEL", "DEBUG" if settings.debug else "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.INFO)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        # pgvector must exist before the chunk table is created
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

    client = build_openai_client()
    embedder = EmbeddingService(client)
    job_store = ProcessingJobStore()
    queue = PdfProcessingQueue(
        job_store,
        PdfExtractor(),
        ContentChunker(embedder),
        StatusBroadcaster(),
        PdfStorage(),
    )
    citation_service = CitationService()
    projects = ProjectStore()

    app.state.job_store = job_store
    app.state.queue = queue
    app.state.citation_service = citation_service
    app.state.projects = projects
    app.state.runs = GenerationRuns()
    app.state.pipeline = GenerationPipeline(
        DiscoveryService(LiteratureSearchClient(), PaperStore(), queue),
        OutlineGenerator(client),
        HybridRetriever(embedder),
        SectionGenerator(client, citation_service),
        citation_service,
        projects,
        detector=HallucinationDetector(embedder),
    )

    recovered = await queue.recover()
    logger.info("Processing queue ready (%d jobs recovered)", recovered)
    interrupted = await projects.reset_stale()
    if interrupted:
        logger.warning("Marked %d interrupted generations as failed", interrupted)
    yield
    await queue.shutdown()
    await client.close()


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Literature-grounded academic paper generation service",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Requested-With", "X-User-Id"],
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}
