from genpaper.services.processing_queue import PdfProcessingQueue
from genpaper.services.job_store import ProcessingJobStore
from genpaper.services.status_broadcast import StatusBroadcaster
from genpaper.services.extraction import PdfExtractor
from genpaper.services.chunker import ContentChunker
from genpaper.services.embedding import EmbeddingService
from genpaper.services.storage import PdfStorage
from genpaper.services.discovery import DiscoveryService, PaperStore
from genpaper.services.literature_search import LiteratureSearchClient
from genpaper.services.retrieval import HybridRetriever
from genpaper.services.outline import OutlineGenerator
from genpaper.services.section_generator import SectionGenerator
from genpaper.services.quality import SectionReviewer, HallucinationDetector
from genpaper.services.citation_service import CitationService, CitationStore, CitationContext
from genpaper.services.generation_pipeline import GenerationPipeline, ProjectStore
from genpaper.services.generation_runs import GenerationRuns

__all__ = [
    "PdfProcessingQueue",
    "ProcessingJobStore",
    "StatusBroadcaster",
    "PdfExtractor",
    "ContentChunker",
    "EmbeddingService",
    "PdfStorage",
    "DiscoveryService",
    "PaperStore",
    "LiteratureSearchClient",
    "HybridRetriever",
    "OutlineGenerator",
    "SectionGenerator",
    "SectionReviewer",
    "HallucinationDetector",
    "CitationService",
    "CitationStore",
    "CitationContext",
    "GenerationPipeline",
    "ProjectStore",
    "GenerationRuns"
]
