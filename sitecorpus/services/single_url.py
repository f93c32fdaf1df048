"""On-request operations on a single URL of a known website.

Adding a URL fetches it on its own, writes it through the same validation
and upsert path as a batch capture and hands the website to the indexing
dispatcher. Re-indexing forces a fresh fetch of a known page and requeues
it when its text moved; restoring does the same for a deleted page.
Removal only marks the page, the indexing phase retires its document.

Every fetch runs under a manual capture job so the request shows up in the
website's job history.
"""

from dataclasses import replace
from typing import TYPE_CHECKING

import logfire

from sitecorpus.config import Settings, get_settings
from sitecorpus.db.store import RecordStore
from sitecorpus.exceptions import (
    InvalidTransitionError,
    InvalidUrlError,
    PageNotFoundError,
    WebsiteNotFoundError,
)
from sitecorpus.models.fetch_models import FetchedPage
from sitecorpus.models.pipeline_models import UrlRequestResult
from sitecorpus.models.website_models import (
    CaptureMode,
    JobCreate,
    JobType,
    Page,
    PageStatus,
    PageUpdate,
    Website,
    utc_now,
)
from sitecorpus.services import domain_resolver, lifecycle
from sitecorpus.services.capture import PageCapturer, page_metadata
from sitecorpus.services.content_fetcher import ContentFetcher
from sitecorpus.services.content_hasher import content_hash
from sitecorpus.services.job_tracker import JobTracker

if TYPE_CHECKING:
    from sitecorpus.services.dispatcher import IndexingDispatcher

QUEUED_STATUSES = frozenset({PageStatus.READY_FOR_INDEXING, PageStatus.READY_FOR_RE_INDEXING})
REMOVED_STATUSES = frozenset({PageStatus.READY_FOR_DELETION, PageStatus.DELETED})


def usable(result: FetchedPage) -> FetchedPage:
    """The fetch result, with its text dropped when the page answered an error status."""
    if result.http_status is not None and result.http_status >= 400:
        return replace(result, text=None, error=result.error or f"HTTP {result.http_status}")
    return result


class SingleUrlService:
    """Adds, re-indexes, restores and removes individual pages."""

    def __init__(
        self,
        store: RecordStore,
        fetcher: ContentFetcher,
        capturer: PageCapturer | None = None,
        dispatcher: "IndexingDispatcher | None" = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self._settings = settings or get_settings()
        self._capturer = capturer or PageCapturer(store, fetcher, self._settings)
        self._dispatcher = dispatcher

    def _website(self, website_id: str) -> Website:
        website = self._store.get_website(website_id)
        if website is None:
            raise WebsiteNotFoundError(f"Website not found: {website_id}")
        return website

    def _page(self, website: Website, url: str) -> Page:
        normalized = domain_resolver.normalize_url(url)
        page = self._store.get_page_by_url(website.id, normalized)
        if page is None:
            raise PageNotFoundError(f"No page for {normalized} in {website.domain}")
        return page

    def _open_job(self, website: Website, url: str, request: str) -> JobTracker:
        return JobTracker.open(
            self._store,
            JobCreate(
                website_id=website.id,
                job_type=JobType.CAPTURE,
                capture_mode=CaptureMode.MANUAL,
                metadata={"url": url, "request": request},
            ),
        )

    async def _fetch(self, url: str, tracker: JobTracker) -> FetchedPage:
        try:
            result = await self._fetcher.fetch_one(url)
        except Exception as e:
            tracker.fail(e, discovered=1, stage="fetch")
            raise
        # Rows stay keyed on the requested URL even when the fetch was redirected
        return usable(replace(result, url=url))

    def _trigger_indexing(self, website_id: str, job_id: str | None) -> None:
        if self._dispatcher is not None:
            self._dispatcher.submit(website_id, job_id)

    # =========================================================================
    # Add
    # =========================================================================

    async def add_url(self, website_id: str, url: str) -> UrlRequestResult:
        """Capture one URL of a website and queue it for indexing.

        A page that is already active is left alone, and one that is
        already queued only triggers an indexing run.

        Raises:
            WebsiteNotFoundError: If the website does not exist
            InvalidUrlError: If the URL is not on the website's domain
            InvalidTransitionError: If the existing page cannot be requeued
        """
        website = self._website(website_id)
        if not domain_resolver.is_same_domain(url, website.domain):
            raise InvalidUrlError(f"URL {url} is not on {website.domain}")
        normalized = domain_resolver.normalize_url(url)
        page = self._store.get_page_by_url(website.id, normalized)

        if page is not None and page.status == PageStatus.ACTIVE:
            return UrlRequestResult(
                website_id=website.id,
                url=normalized,
                outcome="already_active",
                status=page.status,
                previous_hash=page.content_hash,
                new_hash=page.content_hash,
            )
        if page is not None and page.status in QUEUED_STATUSES:
            self._trigger_indexing(website.id, None)
            return UrlRequestResult(
                website_id=website.id,
                url=normalized,
                outcome="queued",
                status=page.status,
                previous_hash=page.content_hash,
                new_hash=page.content_hash,
            )
        if page is not None:
            lifecycle.check_transition(page.status, PageStatus.READY_FOR_INDEXING)

        with logfire.span("add url {url}", url=normalized, website_id=website.id):
            tracker = self._open_job(website, normalized, "add")
            result = await self._fetch(normalized, tracker)
            written = self._capturer.write_results(
                website,
                [result],
                tracker,
                None,
                lineage="capture" if page is None else "sync_retry",
                submitted=[normalized],
            )
            if not written:
                if page is not None:
                    self._record_failure(page, result, tracker)
                tracker.seal(discovered=1, updated=0)
                return UrlRequestResult(
                    website_id=website.id,
                    url=normalized,
                    outcome="failed",
                    job_id=tracker.id,
                    status=page.status if page is not None else None,
                    errors=tracker.errors,
                )

            tracker.seal(discovered=1, updated=1)
            self._trigger_indexing(website.id, tracker.id)

        logfire.info("URL added", url=normalized, website_id=website.id, job_id=tracker.id)
        return UrlRequestResult(
            website_id=website.id,
            url=normalized,
            outcome="queued",
            job_id=tracker.id,
            status=written[0].status,
            content_changed=True,
            previous_hash=page.content_hash if page is not None else None,
            new_hash=written[0].content_hash,
            errors=tracker.errors,
        )

    # =========================================================================
    # Re-index and restore
    # =========================================================================

    async def reindex_url(self, website_id: str, url: str) -> UrlRequestResult:
        """Re-fetch a known page and requeue it if its text changed.

        Pages that are not active are always requeued.

        Raises:
            WebsiteNotFoundError: If the website does not exist
            PageNotFoundError: If the website has no page for the URL
            InvalidTransitionError: If the page cannot be requeued from its status
        """
        website = self._website(website_id)
        page = self._page(website, url)
        return await self._refetch(website, page, "reindex")

    async def restore_page(self, website_id: str, url: str) -> UrlRequestResult:
        """Bring a deleted page back through a fresh fetch.

        Raises:
            WebsiteNotFoundError: If the website does not exist
            PageNotFoundError: If the website has no page for the URL
            InvalidTransitionError: If the page is not deleted
        """
        website = self._website(website_id)
        page = self._page(website, url)
        if page.status != PageStatus.DELETED:
            raise InvalidTransitionError(
                f"Page {page.url} is {page.status.value}, only deleted pages can be restored"
            )
        return await self._refetch(website, page, "restore")

    async def _refetch(self, website: Website, page: Page, request: str) -> UrlRequestResult:
        with logfire.span("{request} url {url}", request=request, url=page.url):
            tracker = self._open_job(website, page.url, request)
            result = await self._fetch(page.url, tracker)
            now = utc_now()

            if not result.is_complete:
                tracker.record_error(
                    result.error or "Empty content", url=page.url, stage="validate"
                )
                status = self._record_failure(page, result, tracker)
                tracker.seal(discovered=1, updated=0)
                return UrlRequestResult(
                    website_id=website.id,
                    url=page.url,
                    outcome="failed",
                    job_id=tracker.id,
                    status=status,
                    previous_hash=page.content_hash,
                    errors=tracker.errors,
                )

            digest = content_hash(result.text)
            changed = page.markdown_content is None or digest != content_hash(
                page.markdown_content
            )

            if not changed and page.status == PageStatus.ACTIVE:
                self._store.update_page(
                    page.id,
                    PageUpdate(
                        content_hash=digest,
                        last_scraped=now,
                        last_seen=now,
                        missing_count=0,
                        capture_count=page.capture_count + 1,
                        http_status_code=result.http_status,
                        error_message=None,
                        last_updated_by_sync_id=tracker.id,
                    ),
                )
                tracker.seal(discovered=1, updated=0)
                logfire.info("Page unchanged, nothing to re-index", url=page.url)
                return UrlRequestResult(
                    website_id=website.id,
                    url=page.url,
                    outcome="unchanged",
                    job_id=tracker.id,
                    status=page.status,
                    previous_hash=page.content_hash,
                    new_hash=digest,
                )

            target = lifecycle.requeue_status(page)
            try:
                lifecycle.check_transition(page.status, target)
            except InvalidTransitionError as e:
                tracker.fail(e, discovered=1, stage="write")
                raise
            self._store.update_page(
                page.id,
                PageUpdate(
                    status=target,
                    title=result.title or page.title,
                    markdown_content=result.text,
                    content_hash=digest,
                    metadata={**page.metadata, **page_metadata(result)},
                    last_scraped=now,
                    last_seen=now,
                    missing_count=0,
                    capture_count=page.capture_count + 1,
                    http_status_code=result.http_status,
                    error_message=None,
                    index_document_id=None,
                    index_operation_id=None,
                    stale_index_document_id=page.index_document_id
                    or page.stale_index_document_id,
                    last_updated_by_sync_id=tracker.id,
                ),
            )
            tracker.seal(discovered=1, updated=1)
            self._trigger_indexing(website.id, tracker.id)

        logfire.info(
            "Page requeued for indexing",
            url=page.url,
            request=request,
            status=target.value,
            content_changed=changed,
        )
        return UrlRequestResult(
            website_id=website.id,
            url=page.url,
            outcome="queued",
            job_id=tracker.id,
            status=target,
            content_changed=changed,
            previous_hash=page.content_hash,
            new_hash=digest,
        )

    def _record_failure(
        self, page: Page, result: FetchedPage, tracker: JobTracker
    ) -> PageStatus:
        """Store the fetch failure on the page; returns the page's resulting status."""
        message = result.error or "Empty content"
        status = page.status
        if lifecycle.can_transition(page.status, PageStatus.ERROR):
            status = PageStatus.ERROR
        self._store.update_page(
            page.id,
            PageUpdate(
                status=status,
                error_message=message,
                http_status_code=result.http_status,
                last_updated_by_sync_id=tracker.id,
            ),
        )
        return status

    # =========================================================================
    # Removal
    # =========================================================================

    def mark_deleted(self, website_id: str, url: str) -> UrlRequestResult:
        """Mark a page for deletion; the next indexing run retires its document.

        A page still linked from the website is restored by the next reconcile.

        Raises:
            WebsiteNotFoundError: If the website does not exist
            PageNotFoundError: If the website has no page for the URL
        """
        website = self._website(website_id)
        page = self._page(website, url)
        if page.status in REMOVED_STATUSES:
            return UrlRequestResult(
                website_id=website.id,
                url=page.url,
                outcome="marked_for_deletion",
                status=page.status,
            )

        lifecycle.check_transition(page.status, PageStatus.READY_FOR_DELETION)
        self._store.update_page(
            page.id, PageUpdate(status=PageStatus.READY_FOR_DELETION, error_message=None)
        )
        logfire.info("Page marked for deletion on request", url=page.url, website_id=website.id)
        self._trigger_indexing(website.id, None)
        return UrlRequestResult(
            website_id=website.id,
            url=page.url,
            outcome="marked_for_deletion",
            status=PageStatus.READY_FOR_DELETION,
        )
