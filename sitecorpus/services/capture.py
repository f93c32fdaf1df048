"""Discovery and batch content capture.

PageCapturer is the shared fetch -> validate -> write path used both for
first contact with a website and for NEW URLs found during reconcile.
CaptureOrchestrator drives a full first-contact capture, delegates to the
Reconciler when the website is already known, and recovers capture jobs
that were interrupted while their batch was still running remotely.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Iterable, Literal, Sequence

import logfire

from sitecorpus.config import Settings, get_settings
from sitecorpus.db.store import RecordStore
from sitecorpus.exceptions import DiscoveryError, FetchBatchError, IndexServiceError
from sitecorpus.models.fetch_models import BatchStatus, FetchedPage
from sitecorpus.models.pipeline_models import CaptureResult
from sitecorpus.models.website_models import (
    CaptureMode,
    Job,
    JobCreate,
    JobStatus,
    JobType,
    Page,
    PageStatus,
    PageUpsert,
    Website,
    WebsiteCreate,
    WebsiteUpdate,
    utc_now,
)
from sitecorpus.services import domain_resolver
from sitecorpus.services.content_fetcher import ContentFetcher
from sitecorpus.services.content_hasher import content_hash
from sitecorpus.services.index_service import IndexService
from sitecorpus.services.job_tracker import JobTracker

if TYPE_CHECKING:
    from sitecorpus.services.dispatcher import IndexingDispatcher
    from sitecorpus.services.reconciler import Reconciler

# capture: first contact; sync_new: found by reconcile; sync_retry: re-capture of a known row
Lineage = Literal["capture", "sync_new", "sync_retry"]

NOT_RETURNED = "Not returned by fetch batch"


def filter_discovered(urls: Iterable[str], domain: str) -> tuple[list[str], int]:
    """Normalize, same-domain filter and dedupe enumerated URLs.

    Returns:
        Tuple of (kept URLs in discovery order, number discarded)
    """
    kept: list[str] = []
    seen: set[str] = set()
    discarded = 0
    for url in urls:
        if not domain_resolver.is_same_domain(url, domain):
            discarded += 1
            continue
        normalized = domain_resolver.normalize_url(url)
        if normalized not in seen:
            seen.add(normalized)
            kept.append(normalized)
    return kept, discarded


def page_metadata(result: FetchedPage) -> dict:
    return {
        key: value
        for key, value in {
            "title": result.title,
            "description": result.description,
            "og_image": result.og_image,
            "language": result.language,
        }.items()
        if value is not None
    }


@dataclass
class BatchOutcome:
    """Pages written from one fetch batch."""

    batch_id: str
    results: list[FetchedPage] = field(default_factory=list)
    written: list[Page] = field(default_factory=list)


class PageCapturer:
    """Fetches URLs as one batch and writes complete results to the ledger."""

    def __init__(
        self,
        store: RecordStore,
        fetcher: ContentFetcher,
        settings: Settings | None = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self._settings = settings or get_settings()

    async def fetch(self, urls: list[str], tracker: JobTracker) -> BatchStatus:
        """Submit and await one batch; the batch id is persisted before waiting.

        Raises:
            FetchBatchError: If the batch cannot be submitted, fails or times out
        """
        batch_id = await self._fetcher.fetch_batch(urls)
        tracker.record_batch(batch_id)
        return await self._fetcher.await_batch(
            batch_id,
            poll_interval=self._settings.batch_poll_interval_seconds,
            max_wait=self._settings.batch_max_wait_seconds,
            on_progress=tracker.on_batch_progress,
        )

    async def capture(
        self,
        website: Website,
        urls: list[str],
        tracker: JobTracker,
        lineage: Lineage,
    ) -> BatchOutcome:
        """Fetch ``urls`` and write every complete result as ready_for_indexing."""
        status = await self.fetch(urls, tracker)
        written = self.write_results(
            website, status.results, tracker, status.batch_id, lineage, submitted=urls
        )
        return BatchOutcome(batch_id=status.batch_id, results=status.results, written=written)

    def write_results(
        self,
        website: Website,
        results: list[FetchedPage],
        tracker: JobTracker,
        batch_id: str | None,
        lineage: Lineage,
        submitted: Sequence[str] | None = None,
    ) -> list[Page]:
        """Validate each result and upsert the complete ones.

        Incomplete results are recorded as job errors and never written. A
        failed write is recorded and does not stop the remaining pages.
        Every URL in ``submitted`` that the batch did not return is recorded
        as a job error too.
        """
        written: list[Page] = []
        returned: set[str] = set()
        now = utc_now()

        for result in results:
            if not result.url:
                tracker.record_error("Result has no source URL", stage="validate")
                continue
            url = domain_resolver.normalize_url(result.url)
            returned.add(url)
            if not result.text or not result.text.strip():
                tracker.record_error(
                    result.error or "Empty content", url=url, stage="validate"
                )
                continue

            if lineage == "capture":
                lineage_fields = {"created_by_job_id": tracker.id}
            elif lineage == "sync_new":
                lineage_fields = {
                    "created_by_sync_id": tracker.id,
                    "last_updated_by_sync_id": tracker.id,
                }
            else:
                lineage_fields = {"last_updated_by_sync_id": tracker.id}
            try:
                page = self._store.upsert_page(
                    PageUpsert(
                        website_id=website.id,
                        url=url,
                        path=domain_resolver.path_of(url),
                        title=result.title,
                        status=PageStatus.READY_FOR_INDEXING,
                        content_hash=content_hash(result.text),
                        markdown_content=result.text,
                        http_status_code=result.http_status,
                        last_scraped=now,
                        last_seen=now,
                        capture_count=1,
                        missing_count=0,
                        error_message=None,
                        metadata=page_metadata(result),
                        fetch_batch_id=batch_id,
                        **lineage_fields,
                    )
                )
            except Exception as e:
                logfire.error(
                    "Failed to write page",
                    url=url,
                    job_id=tracker.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                tracker.record_error(f"Write failed: {e}", url=url, stage="write")
                continue
            written.append(page)

        not_returned = [
            url
            for url in dict.fromkeys(domain_resolver.normalize_url(u) for u in submitted or ())
            if url not in returned
        ]
        for url in not_returned:
            tracker.record_error(NOT_RETURNED, url=url, stage="validate")

        logfire.info(
            "Batch results written",
            website_id=website.id,
            job_id=tracker.id,
            batch_id=batch_id,
            result_count=len(results),
            written_count=len(written),
            not_returned_count=len(not_returned),
        )
        return written


class CaptureOrchestrator:
    """First-contact capture of a website.

    Dependencies are injected so each can be replaced in tests.
    """

    def __init__(
        self,
        store: RecordStore,
        fetcher: ContentFetcher,
        index_service: IndexService,
        reconciler: "Reconciler",
        dispatcher: "IndexingDispatcher | None" = None,
        capturer: PageCapturer | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self._index_service = index_service
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._capturer = capturer or PageCapturer(store, fetcher, self._settings)

    async def capture(self, seed: str, display_name: str | None = None) -> CaptureResult:
        """Capture a website, or reconcile it when it was captured before.

        Raises:
            InvalidSeedError: If the seed or display name is rejected
        """
        resolved = domain_resolver.resolve(seed)
        name = domain_resolver.validate_display_name(display_name, resolved.base_domain)

        with logfire.span("capture {domain}", domain=resolved.base_domain):
            website = self._store.get_website_by_domain(resolved.base_domain)
            created = False

            if website is not None:
                page_counts = self._store.count_pages_by_status(website.id)
                if sum(page_counts.values()) > 0:
                    logfire.info(
                        "Website already captured, delegating to reconcile",
                        website_id=website.id,
                        domain=website.domain,
                    )
                    return await self._delegate_to_reconcile(website)

                recovered = await self.recover(website)
                if recovered is not None:
                    return recovered
            else:
                website = await self._create_website(resolved, name)
                created = True

            return await self._run(website, created)

    async def _delegate_to_reconcile(self, website: Website) -> CaptureResult:
        result = await self._reconciler.reconcile(website.id)
        return CaptureResult(
            website_id=website.id,
            job_id=result.job_id,
            outcome="reconciled" if result.status == JobStatus.COMPLETED else "failed",
            discovered=result.discovered,
            captured=result.updated,
            errors=result.errors,
        )

    async def _create_website(
        self, resolved: domain_resolver.ResolvedSeed, name: str
    ) -> Website:
        store_id: str | None = None
        try:
            store_id = await self._index_service.create_container(name)
        except IndexServiceError as e:
            # The indexing phase creates the container when it is missing
            logfire.warning(
                "Index container creation failed, continuing without one",
                domain=resolved.base_domain,
                error=str(e),
            )

        try:
            return self._store.create_website(
                WebsiteCreate(
                    seed_url=resolved.seed_url,
                    domain=resolved.base_domain,
                    display_name=name,
                    index_store_id=store_id,
                    crawl_interval_hours=self._settings.sync_interval_hours,
                )
            )
        except Exception:
            # Lost a race with a concurrent capture of the same domain
            existing = self._store.get_website_by_domain(resolved.base_domain)
            if existing is None:
                raise
            return existing

    async def _run(self, website: Website, created: bool) -> CaptureResult:
        tracker = JobTracker.open(
            self._store,
            JobCreate(
                website_id=website.id,
                job_type=JobType.CAPTURE,
                capture_mode=CaptureMode.INITIAL,
                metadata={"seed_url": website.seed_url},
            ),
            progress_interval=self._settings.batch_progress_log_seconds,
        )
        if created:
            self._store.update_website(website.id, WebsiteUpdate(created_by_job_id=tracker.id))

        discovered = 0
        try:
            raw_urls = await self._fetcher.enumerate(website.seed_url)
            urls, discarded = filter_discovered(raw_urls, website.domain)
            discovered = len(urls)
            if not urls:
                raise DiscoveryError(f"No URLs discovered for {website.domain}")
            tracker.record_discovered(discovered)
            tracker.metadata["discovery"] = {
                "enumerated": len(raw_urls),
                "kept": discovered,
                "discarded_cross_domain": discarded,
            }

            outcome = await self._capturer.capture(website, urls, tracker, lineage="capture")
        except (DiscoveryError, FetchBatchError) as e:
            tracker.fail(e, discovered=discovered, stage="fetch")
            return CaptureResult(
                website_id=website.id,
                job_id=tracker.id,
                outcome="failed",
                discovered=discovered,
                errors=tracker.errors,
            )
        except Exception as e:
            tracker.fail(e, discovered=discovered)
            raise

        tracker.seal(
            discovered=discovered,
            updated=len(outcome.written),
            metadata={"results_returned": len(outcome.results)},
        )
        self._trigger_indexing(website.id, tracker.id)

        return CaptureResult(
            website_id=website.id,
            job_id=tracker.id,
            outcome="captured",
            discovered=discovered,
            captured=len(outcome.written),
            errors=tracker.errors,
        )

    def _trigger_indexing(self, website_id: str, job_id: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher.submit(website_id, job_id)

    async def recover(self, website: Website) -> CaptureResult | None:
        """Resume or settle a running capture job for a website with no pages.

        Returns None when there is nothing to recover and a fresh capture
        should run.
        """
        running = self._store.find_jobs(website.id, JobType.CAPTURE, JobStatus.RUNNING)
        if not running:
            return None

        job = running[0]
        stuck_after = timedelta(seconds=self._settings.stuck_job_age_seconds)
        age = utc_now() - job.started_at if job.started_at else stuck_after

        if age < stuck_after:
            logfire.info(
                "Capture already running for website",
                website_id=website.id,
                job_id=job.id,
            )
            return CaptureResult(
                website_id=website.id,
                job_id=job.id,
                outcome="still_running",
                discovered=job.urls_discovered,
            )

        tracker = JobTracker(
            self._store, job, progress_interval=self._settings.batch_progress_log_seconds
        )
        if not job.batch_ids:
            tracker.fail(
                FetchBatchError("Interrupted before a batch was submitted"),
                discovered=job.urls_discovered,
                stage="recover",
            )
            return None

        return await self._recover_batch(website, job, tracker)

    async def _recover_batch(
        self, website: Website, job: Job, tracker: JobTracker
    ) -> CaptureResult:
        batch_id = job.batch_ids[-1]
        logfire.info(
            "Recovering stuck capture job",
            website_id=website.id,
            job_id=job.id,
            batch_id=batch_id,
        )
        try:
            status = await self._fetcher.batch_status(batch_id)
        except FetchBatchError as e:
            status = BatchStatus(batch_id=batch_id, status="failed", error=str(e))

        if status.status == "scraping":
            tracker.record_progress(status, force=True)
            return CaptureResult(
                website_id=website.id,
                job_id=job.id,
                outcome="still_running",
                discovered=job.urls_discovered,
            )

        if status.status == "failed":
            tracker.fail(
                FetchBatchError(
                    f"Batch {batch_id} failed: {status.error or 'unknown error'}",
                    batch_id=batch_id,
                ),
                discovered=job.urls_discovered,
                stage="recover",
            )
            return CaptureResult(
                website_id=website.id,
                job_id=job.id,
                outcome="failed",
                discovered=job.urls_discovered,
                errors=tracker.errors,
            )

        written = self._capturer.write_results(
            website, status.results, tracker, batch_id, lineage="capture"
        )
        # The submitted URL list is not persisted, only the batch size
        missing = status.total - len(status.results)
        if missing > 0:
            tracker.record_error(f"{NOT_RETURNED}: {missing} URLs", stage="validate")
        discovered = job.urls_discovered or status.total
        tracker.seal(
            discovered=discovered,
            updated=len(written),
            metadata={"recovered": True, "results_returned": len(status.results)},
        )
        self._trigger_indexing(website.id, job.id)
        return CaptureResult(
            website_id=website.id,
            job_id=job.id,
            outcome="recovered",
            discovered=discovered,
            captured=len(written),
            errors=tracker.errors,
        )
