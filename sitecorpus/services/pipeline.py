"""Wiring of the pipeline components behind the API and CLI."""

from dataclasses import dataclass

from sitecorpus.config import Settings, get_settings
from sitecorpus.db.repository import SupabaseRecordStore
from sitecorpus.db.store import RecordStore
from sitecorpus.services.capture import CaptureOrchestrator, PageCapturer
from sitecorpus.services.content_fetcher import ContentFetcher, FirecrawlContentFetcher
from sitecorpus.services.dispatcher import IndexingDispatcher
from sitecorpus.services.index_service import GeminiFileSearchIndex, IndexService
from sitecorpus.services.indexing import IndexingDecoupler
from sitecorpus.services.reconciler import Reconciler
from sitecorpus.services.single_url import SingleUrlService
from sitecorpus.services.site_crawler import SiteCrawlerFetcher
from sitecorpus.services.status import StatusService


@dataclass
class Pipeline:
    """All pipeline components sharing one store, fetcher and index."""

    store: RecordStore
    capture: CaptureOrchestrator
    reconciler: Reconciler
    indexing: IndexingDecoupler
    dispatcher: IndexingDispatcher
    status: StatusService
    urls: SingleUrlService


def build_fetcher(settings: Settings) -> ContentFetcher:
    if settings.content_fetcher == "crawler":
        return SiteCrawlerFetcher()
    return FirecrawlContentFetcher()


def build_pipeline(
    settings: Settings | None = None,
    store: RecordStore | None = None,
    fetcher: ContentFetcher | None = None,
    index_service: IndexService | None = None,
) -> Pipeline:
    """Assemble a pipeline; any collaborator can be supplied explicitly."""
    settings = settings or get_settings()
    store = store or SupabaseRecordStore()
    fetcher = fetcher or build_fetcher(settings)
    index_service = index_service or GeminiFileSearchIndex()

    indexing = IndexingDecoupler(store, index_service, settings)
    dispatcher = IndexingDispatcher(
        indexing.index, max_attempts=settings.indexing_max_attempts
    )
    capturer = PageCapturer(store, fetcher, settings)
    reconciler = Reconciler(store, fetcher, dispatcher, capturer, settings)
    capture = CaptureOrchestrator(
        store,
        fetcher,
        index_service,
        reconciler,
        dispatcher,
        capturer,
        settings,
    )
    return Pipeline(
        store=store,
        capture=capture,
        reconciler=reconciler,
        indexing=indexing,
        dispatcher=dispatcher,
        status=StatusService(store, settings),
        urls=SingleUrlService(store, fetcher, capturer, dispatcher, settings),
    )


# Global pipeline instance
_pipeline: Pipeline | None = None


def get_pipeline() -> Pipeline:
    """Get or create the global pipeline instance."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Pipeline | None) -> None:
    """Replace the global pipeline (primarily for testing)."""
    global _pipeline
    _pipeline = pipeline
