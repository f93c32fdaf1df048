"""Incremental re-synchronization of a previously captured website.

A reconcile run heals pages left retryable by earlier runs, enumerates the
site again, and classifies every URL as NEW, EXISTING or MISSING against
the page ledger. NEW pages are captured, EXISTING active pages are
re-fetched and compared, and MISSING pages accumulate a miss-count until
they cross the deletion threshold. Index removal itself is left to the
indexing phase.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from statistics import fmean
from typing import TYPE_CHECKING, Any

import logfire

from sitecorpus.config import Settings, get_settings
from sitecorpus.constants import GONE_STATUS_CODES
from sitecorpus.db.store import RecordStore
from sitecorpus.exceptions import (
    DiscoveryError,
    FetchBatchError,
    ReconcileNotAllowedError,
    WebsiteNotFoundError,
)
from sitecorpus.models.fetch_models import FetchedPage
from sitecorpus.models.pipeline_models import ReconcileResult
from sitecorpus.models.website_models import (
    RETRYABLE_STATUSES,
    CaptureMode,
    JobCreate,
    JobStatus,
    JobType,
    Page,
    PageStatus,
    PageUpdate,
    Website,
    WebsiteUpdate,
    utc_now,
)
from sitecorpus.services import lifecycle
from sitecorpus.services.capture import (
    NOT_RETURNED,
    PageCapturer,
    filter_discovered,
    page_metadata,
)
from sitecorpus.services.content_fetcher import ContentFetcher
from sitecorpus.services.content_hasher import has_changed_significantly
from sitecorpus.services.domain_resolver import normalize_url
from sitecorpus.services.job_tracker import JobTracker

if TYPE_CHECKING:
    from sitecorpus.services.dispatcher import IndexingDispatcher


@dataclass
class Categorization:
    """Discovered URLs classified against the page ledger."""

    new: list[str] = field(default_factory=list)
    existing: list[Page] = field(default_factory=list)
    missing: list[Page] = field(default_factory=list)


def categorize(discovered: list[str], pages: list[Page]) -> Categorization:
    """Split discovered URLs into NEW, EXISTING and MISSING.

    Deleted pages that show up again count as NEW. Pages already marked
    for deletion are not counted as missing a second time.
    """
    by_url = {page.url: page for page in pages}
    seen = set(discovered)
    result = Categorization()

    for url in discovered:
        page = by_url.get(url)
        if page is None or page.status == PageStatus.DELETED:
            result.new.append(url)
        else:
            result.existing.append(page)

    for page in pages:
        if page.url in seen:
            continue
        if page.status in (PageStatus.DELETED, PageStatus.READY_FOR_DELETION):
            continue
        result.missing.append(page)

    return result


@dataclass
class _RunStats:
    healed_requeued: int = 0
    healed_refetched: int = 0
    healed_failed: int = 0
    new_written: int = 0
    changed: int = 0
    unchanged: int = 0
    empty_content: int = 0
    not_returned: int = 0
    restored: int = 0
    marked_for_deletion: int = 0
    similarities: list[float] = field(default_factory=list)
    http_errors: Counter = field(default_factory=Counter)
    missing_counts: list[int] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return self.healed_requeued + self.healed_refetched + self.new_written + self.changed


class Reconciler:
    """Sync engine for websites that already have pages."""

    def __init__(
        self,
        store: RecordStore,
        fetcher: ContentFetcher,
        dispatcher: "IndexingDispatcher | None" = None,
        capturer: PageCapturer | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._capturer = capturer or PageCapturer(store, fetcher, self._settings)

    async def reconcile(self, website_id: str) -> ReconcileResult:
        """Run one reconcile pass.

        Raises:
            WebsiteNotFoundError: If the website does not exist
            ReconcileNotAllowedError: If the website has no pages yet
        """
        website = self._store.get_website(website_id)
        if website is None:
            raise WebsiteNotFoundError(f"Website not found: {website_id}")
        if sum(self._store.count_pages_by_status(website_id).values()) == 0:
            raise ReconcileNotAllowedError(
                f"Website {website.domain} has no pages; run a capture first"
            )

        tracker = JobTracker.open(
            self._store,
            JobCreate(
                website_id=website_id,
                job_type=JobType.CAPTURE,
                capture_mode=CaptureMode.INCREMENTAL,
                metadata={"seed_url": website.seed_url},
            ),
            progress_interval=self._settings.batch_progress_log_seconds,
        )
        stats = _RunStats()
        discovered = 0

        with logfire.span("reconcile {domain}", domain=website.domain, job_id=tracker.id):
            try:
                await self._self_heal(website, tracker, stats)

                raw_urls = await self._fetcher.enumerate(website.seed_url)
                urls, discarded = filter_discovered(raw_urls, website.domain)
                discovered = len(urls)
                if not urls:
                    raise DiscoveryError(f"No URLs discovered for {website.domain}")
                tracker.record_discovered(discovered)

                pages = self._store.get_pages(website_id)
                groups = categorize(urls, pages)
                tracker.metadata["categorization"] = {
                    "discovered": discovered,
                    "discarded_cross_domain": discarded,
                    "new": len(groups.new),
                    "existing": len(groups.existing),
                    "missing": len(groups.missing),
                }
                logfire.info(
                    "URLs categorized",
                    website_id=website_id,
                    job_id=tracker.id,
                    **tracker.metadata["categorization"],
                )

                if groups.new:
                    outcome = await self._capturer.capture(
                        website, groups.new, tracker, lineage="sync_new"
                    )
                    stats.new_written = len(outcome.written)

                gone = await self._refresh_existing(groups.existing, tracker, stats)

                self._record_misses(groups.missing + gone, stats)
                self._mark_for_deletion(website_id, tracker, stats)
            except (DiscoveryError, FetchBatchError) as e:
                tracker.fail(e, discovered=discovered, updated=stats.updated, stage="fetch")
                return self._result(website_id, tracker, JobStatus.FAILED, discovered, stats)
            except Exception as e:
                tracker.fail(e, discovered=discovered, updated=stats.updated)
                raise

            tracker.seal(
                discovered=discovered,
                updated=stats.updated,
                deleted=stats.marked_for_deletion,
                metadata=self._statistics(stats),
            )
            self._store.update_website(website_id, WebsiteUpdate(last_full_crawl=utc_now()))

        if self._dispatcher is not None:
            self._dispatcher.submit(website_id, tracker.id)

        return self._result(website_id, tracker, JobStatus.COMPLETED, discovered, stats)

    # =========================================================================
    # Step 0: self-healing
    # =========================================================================

    async def _self_heal(
        self, website: Website, tracker: JobTracker, stats: _RunStats
    ) -> None:
        pages = self._store.get_pages(website.id, RETRYABLE_STATUSES)
        if not pages:
            return

        requeue: dict[PageStatus, list[str]] = defaultdict(list)
        refetch: list[Page] = []
        for page in pages:
            if page.has_content:
                target = lifecycle.requeue_status(page)
                lifecycle.check_page_transition(page, target)
                requeue[target].append(page.id)
            else:
                refetch.append(page)

        for target, page_ids in requeue.items():
            self._store.update_pages(
                page_ids,
                PageUpdate(
                    status=target,
                    error_message=None,
                    last_updated_by_sync_id=tracker.id,
                ),
            )
            stats.healed_requeued += len(page_ids)

        if refetch:
            await self._refetch_incomplete(website, refetch, tracker, stats)

        logfire.info(
            "Self-healing complete",
            website_id=website.id,
            job_id=tracker.id,
            requeued=stats.healed_requeued,
            refetched=stats.healed_refetched,
            still_failing=stats.healed_failed,
        )

    async def _refetch_incomplete(
        self,
        website: Website,
        pages: list[Page],
        tracker: JobTracker,
        stats: _RunStats,
    ) -> None:
        written_urls: set[str] = set()
        returned_urls: set[str] | None = None
        reason = "Re-capture returned no usable content"
        try:
            outcome = await self._capturer.capture(
                website, [p.url for p in pages], tracker, lineage="sync_retry"
            )
            written_urls = {p.url for p in outcome.written}
            returned_urls = {normalize_url(r.url) for r in outcome.results if r.url}
        except FetchBatchError as e:
            logfire.warning(
                "Self-healing batch failed, pages stay retryable",
                website_id=website.id,
                job_id=tracker.id,
                page_count=len(pages),
                error=str(e),
            )
            tracker.record_error(str(e), stage="self_heal")
            reason = f"Re-capture failed: {e}"

        failed = [p for p in pages if p.url not in written_urls]
        stats.healed_refetched += len(pages) - len(failed)
        stats.healed_failed += len(failed)
        by_reason: dict[str, list[str]] = defaultdict(list)
        for page in failed:
            lifecycle.check_transition(page.status, PageStatus.ERROR)
            if returned_urls is not None and page.url not in returned_urls:
                by_reason[NOT_RETURNED].append(page.id)
            else:
                by_reason[reason].append(page.id)
        for message, page_ids in by_reason.items():
            self._store.update_pages(
                page_ids, PageUpdate(status=PageStatus.ERROR, error_message=message)
            )

    # =========================================================================
    # Step 3: EXISTING pages
    # =========================================================================

    async def _refresh_existing(
        self,
        existing: list[Page],
        tracker: JobTracker,
        stats: _RunStats,
    ) -> list[Page]:
        """Re-fetch active pages, restore pages marked for deletion, reset presence.

        Returns:
            Pages that answered with a gone status and must count as missed
        """
        now = utc_now()
        active = [p for p in existing if p.status == PageStatus.ACTIVE]
        present: list[str] = []
        gone: list[Page] = []

        for page in existing:
            if page.status == PageStatus.READY_FOR_DELETION:
                self._restore(page, tracker, now, stats)
            elif page.status != PageStatus.ACTIVE:
                present.append(page.id)

        if active:
            status = await self._capturer.fetch([p.url for p in active], tracker)
            results = {
                normalize_url(r.url): r for r in status.results if r.url
            }
            for page in active:
                result = results.get(page.url)
                if result is None:
                    stats.not_returned += 1
                    present.append(page.id)
                elif result.http_status in GONE_STATUS_CODES:
                    stats.http_errors[str(result.http_status)] += 1
                    gone.append(page)
                elif not result.text or not result.text.strip():
                    stats.empty_content += 1
                    present.append(page.id)
                else:
                    self._compare(page, result, status.batch_id, tracker, now, stats)

        if present:
            self._store.update_pages(present, PageUpdate(last_seen=now, missing_count=0))

        return gone

    def _restore(
        self, page: Page, tracker: JobTracker, now: datetime, stats: _RunStats
    ) -> None:
        target = lifecycle.revert_status(page)
        lifecycle.check_transition(page.status, target)
        self._store.update_page(
            page.id,
            PageUpdate(
                status=target,
                missing_count=0,
                last_seen=now,
                error_message=None,
                last_updated_by_sync_id=tracker.id,
            ),
        )
        stats.restored += 1
        logfire.info(
            "Page observed again, deletion cancelled",
            url=page.url,
            status=target.value,
        )

    def _compare(
        self,
        page: Page,
        result: FetchedPage,
        batch_id: str,
        tracker: JobTracker,
        now: datetime,
        stats: _RunStats,
    ) -> None:
        check = has_changed_significantly(
            result.text, page.markdown_content, self._settings.similarity_threshold
        )
        stats.similarities.append(check.similarity)

        if not check.changed:
            # Hash follows the live page; stored text stays the indexed version
            update = PageUpdate(
                content_hash=check.digest,
                last_scraped=now,
                last_seen=now,
                missing_count=0,
                capture_count=page.capture_count + 1,
                http_status_code=result.http_status,
                error_message=None,
                last_updated_by_sync_id=tracker.id,
            )
        else:
            lifecycle.check_transition(page.status, PageStatus.READY_FOR_RE_INDEXING)
            update = PageUpdate(
                status=PageStatus.READY_FOR_RE_INDEXING,
                title=result.title or page.title,
                markdown_content=result.text,
                content_hash=check.digest,
                metadata={**page.metadata, **page_metadata(result)},
                last_scraped=now,
                last_seen=now,
                missing_count=0,
                capture_count=page.capture_count + 1,
                http_status_code=result.http_status,
                error_message=None,
                index_document_id=None,
                index_operation_id=None,
                stale_index_document_id=page.index_document_id or page.stale_index_document_id,
                last_updated_by_sync_id=tracker.id,
                fetch_batch_id=batch_id,
            )

        try:
            self._store.update_page(page.id, update)
        except Exception as e:
            logfire.error(
                "Failed to update page",
                url=page.url,
                job_id=tracker.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            tracker.record_error(f"Write failed: {e}", url=page.url, stage="write")
            return

        if check.changed:
            stats.changed += 1
            logfire.info(
                "Content changed significantly",
                url=page.url,
                similarity=round(check.similarity, 4),
            )
        else:
            stats.unchanged += 1

    # =========================================================================
    # Steps 4-5: misses and deletion threshold
    # =========================================================================

    def _record_misses(self, pages: list[Page], stats: _RunStats) -> None:
        if not pages:
            return
        updated = self._store.increment_missing_count([p.id for p in pages])
        stats.missing_counts = [p.missing_count for p in updated]

    def _mark_for_deletion(
        self, website_id: str, tracker: JobTracker, stats: _RunStats
    ) -> None:
        threshold = self._settings.deletion_threshold
        candidates = [
            page
            for page in self._store.get_pages_missing_at_least(website_id, threshold)
            if page.status not in (PageStatus.READY_FOR_DELETION, PageStatus.DELETED)
        ]
        if not candidates:
            return
        for page in candidates:
            lifecycle.check_transition(page.status, PageStatus.READY_FOR_DELETION)
        self._store.update_pages(
            [p.id for p in candidates],
            PageUpdate(
                status=PageStatus.READY_FOR_DELETION,
                last_updated_by_sync_id=tracker.id,
            ),
        )
        stats.marked_for_deletion = len(candidates)
        logfire.info(
            "Pages marked for deletion",
            website_id=website_id,
            job_id=tracker.id,
            count=len(candidates),
            threshold=threshold,
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    def _statistics(self, stats: _RunStats) -> dict[str, Any]:
        similarities = stats.similarities
        return {
            "self_heal": {
                "requeued": stats.healed_requeued,
                "refetched": stats.healed_refetched,
                "still_failing": stats.healed_failed,
            },
            "content_changes": {
                "new": stats.new_written,
                "changed": stats.changed,
                "unchanged": stats.unchanged,
                "empty_content": stats.empty_content,
                "not_returned": stats.not_returned,
            },
            "similarity": {
                "average": round(fmean(similarities), 4) if similarities else None,
                "min": round(min(similarities), 4) if similarities else None,
                "max": round(max(similarities), 4) if similarities else None,
                "threshold": self._settings.similarity_threshold,
                "pages_compared": len(similarities),
            },
            "http_errors": dict(stats.http_errors),
            "missing": {
                "incremented": len(stats.missing_counts),
                "max_missing_count": max(stats.missing_counts, default=0),
                "distribution": {
                    str(count): n for count, n in sorted(Counter(stats.missing_counts).items())
                },
                "marked_for_deletion": stats.marked_for_deletion,
                "deletion_threshold": self._settings.deletion_threshold,
            },
            "status_changes": {
                "ready_for_indexing": stats.new_written + stats.healed_refetched,
                "requeued": stats.healed_requeued,
                "ready_for_re_indexing": stats.changed,
                "ready_for_deletion": stats.marked_for_deletion,
                "restored": stats.restored,
                "error": stats.healed_failed,
            },
        }

    @staticmethod
    def _result(
        website_id: str,
        tracker: JobTracker,
        status: JobStatus,
        discovered: int,
        stats: _RunStats,
    ) -> ReconcileResult:
        return ReconcileResult(
            website_id=website_id,
            job_id=tracker.id,
            status=status,
            discovered=discovered,
            updated=stats.updated,
            deleted=stats.marked_for_deletion,
            errored=len(tracker.errors),
            errors=tracker.errors,
        )
