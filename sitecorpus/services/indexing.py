"""Indexing phase: drain staged pages into the semantic index.

Runs independently of capture and reconcile. Each run picks up one bounded
batch of pages, deletions first and then ready_for_indexing and
ready_for_re_indexing pages oldest first, and:

- retires index documents of pages marked for deletion, then tombstones them
- uploads the captured text of (re-)indexed pages, records the upload
  operation handle on the page right away, polls the operation and only
  promotes the page to active once the service reports the document active
- retries the delete of stale documents still attached to active pages
- retires the stale document of a re-indexed page before uploading; when
  that delete fails the upload still goes ahead and the stale handle stays
  on the page until a later run retires it

Every page is claimed by the run before any index call. A claim only
succeeds while the page is still in the status the run read and no other
live run holds it, and each write back is conditional on the same status
and claim, so overlapping runs never upload a page twice and a page moved
elsewhere mid-run is never promoted. Claims are released when the run ends
and expire after ``index_claim_timeout_seconds`` if a run dies.

Any failure leaves the page in its ready state with an error message, so
the next run retries it. Writes happen after every sub-batch.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Iterator, Sequence, TypeVar

import logfire

from sitecorpus.config import Settings, get_settings
from sitecorpus.db.store import RecordStore
from sitecorpus.exceptions import IndexServiceError, WebsiteNotFoundError
from sitecorpus.models.index_models import DocumentMetadata, DocumentState, OperationResult
from sitecorpus.models.pipeline_models import IndexResult
from sitecorpus.models.website_models import (
    JobCreate,
    JobType,
    Page,
    PageStatus,
    PageUpdate,
    Website,
    WebsiteUpdate,
    utc_now,
)
from sitecorpus.services import lifecycle
from sitecorpus.services.index_service import IndexService
from sitecorpus.services.job_tracker import JobTracker

T = TypeVar("T")

UPLOAD_STATUSES = (PageStatus.READY_FOR_INDEXING, PageStatus.READY_FOR_RE_INDEXING)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class PageOutcome:
    """What one page's indexing attempt produced, written after its sub-batch."""

    page: Page
    state: str
    update: PageUpdate | None = None
    error: str | None = None
    # Document the run created; removed again if the page moved on meanwhile
    new_document_id: str | None = None


@dataclass
class _RunStats:
    indexed: int = 0
    deleted: int = 0
    skipped: int = 0
    states: Counter = field(default_factory=Counter)


class IndexingDecoupler:
    """Uploads staged pages and promotes them once the index accepts them."""

    def __init__(
        self,
        store: RecordStore,
        index_service: IndexService,
        settings: Settings | None = None,
    ):
        self._store = store
        self._index = index_service
        self._settings = settings or get_settings()

    async def index(self, website_id: str, job_id: str | None = None) -> IndexResult:
        """Run one indexing pass for a website.

        Args:
            website_id: Website to drain
            job_id: Optional producing job; uploads are limited to its pages

        Raises:
            WebsiteNotFoundError: If the website does not exist
            IndexServiceError: If the index container cannot be created
        """
        website = self._store.get_website(website_id)
        if website is None:
            raise WebsiteNotFoundError(f"Website not found: {website_id}")

        tracker = JobTracker.open(
            self._store,
            JobCreate(
                website_id=website_id,
                job_type=JobType.INDEXING,
                parent_job_id=job_id,
            ),
        )
        stats = _RunStats()
        limit = self._settings.index_batch_limit
        total = 0

        with logfire.span("index {domain}", domain=website.domain, job_id=tracker.id):
            try:
                container_id = await self._ensure_container(website)

                # Deletions are never scoped to a job and go first
                deletions = self._store.get_pages_for_indexing(
                    website_id, [PageStatus.READY_FOR_DELETION], limit
                )
                remaining = limit - len(deletions)
                uploads = (
                    self._store.get_pages_for_indexing(
                        website_id, list(UPLOAD_STATUSES), remaining, job_id
                    )
                    if remaining > 0
                    else []
                )
                remaining -= len(uploads)
                sweeps = (
                    self._store.get_pages_with_stale_documents(website_id, remaining)
                    if remaining > 0
                    else []
                )
                deletions = self._claim(deletions, tracker, stats)
                uploads = self._claim(uploads, tracker, stats)
                sweeps = self._claim(sweeps, tracker, stats)
                total = len(deletions) + len(uploads) + len(sweeps)
                tracker.record_discovered(total)
                logfire.info(
                    "Pages staged for indexing",
                    website_id=website_id,
                    job_id=tracker.id,
                    deletions=len(deletions),
                    uploads=len(uploads),
                    stale_documents=len(sweeps),
                    skipped=stats.skipped,
                )

                await self._run_sub_batches(deletions, self._delete_page, tracker, stats)
                await self._run_sub_batches(
                    uploads,
                    lambda page: self._upload_page(container_id, page, tracker),
                    tracker,
                    stats,
                )
                await self._run_sub_batches(sweeps, self._retire_stale, tracker, stats)
            except Exception as e:
                tracker.fail(e, discovered=total, updated=stats.indexed, deleted=stats.deleted)
                raise
            finally:
                self._release(tracker)

            document_states = {
                state: stats.states.get(state, 0)
                for state in ("active", "processing", "failed", "error", "deleted")
            }
            tracker.seal(
                discovered=total,
                updated=stats.indexed,
                deleted=stats.deleted,
                metadata={"document_states": document_states, "skipped": stats.skipped},
            )

        return IndexResult(
            website_id=website_id,
            job_id=tracker.id,
            indexed=stats.indexed,
            deleted=stats.deleted,
            errors=tracker.errors,
            document_states=document_states,
        )

    async def _ensure_container(self, website: Website) -> str:
        if website.index_store_id:
            return website.index_store_id
        container_id = await self._index.create_container(website.display_name)
        self._store.update_website(website.id, WebsiteUpdate(index_store_id=container_id))
        logfire.info(
            "Index container created for website",
            website_id=website.id,
            index_store_id=container_id,
        )
        return container_id

    # =========================================================================
    # Claims
    # =========================================================================

    def _claim(self, pages: Sequence[Page], tracker: JobTracker, stats: _RunStats) -> list[Page]:
        """Claim each page for this run; returns the claimed rows as stored."""
        expires_before = utc_now() - timedelta(
            seconds=self._settings.index_claim_timeout_seconds
        )
        claimed = []
        for page in pages:
            row = self._store.claim_page(page.id, page.status, tracker.id, expires_before)
            if row is None:
                stats.skipped += 1
                logfire.info(
                    "Page held by another indexing run or moved on, skipped",
                    url=page.url,
                    status=page.status.value,
                    job_id=tracker.id,
                )
                continue
            claimed.append(row)
        return claimed

    def _release(self, tracker: JobTracker) -> None:
        try:
            released = self._store.release_claims(tracker.id)
        except Exception as e:
            logfire.error(
                "Failed to release indexing claims",
                job_id=tracker.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if released:
            logfire.info("Indexing claims released", job_id=tracker.id, page_count=released)

    def _write_claimed(self, page: Page, tracker: JobTracker, data: PageUpdate) -> bool:
        """Write to a page only while it is in the read status and still ours."""
        written = self._store.update_claimed_page(page.id, page.status, tracker.id, data)
        if not written:
            logfire.warning(
                "Page changed during indexing, write dropped",
                url=page.url,
                status=page.status.value,
                job_id=tracker.id,
            )
        return written

    # =========================================================================
    # Sub-batches
    # =========================================================================

    async def _run_sub_batches(
        self,
        pages: Sequence[Page],
        process: Callable[[Page], Awaitable[PageOutcome]],
        tracker: JobTracker,
        stats: _RunStats,
    ) -> None:
        size = self._settings.index_concurrency
        batches = list(chunked(pages, size))
        for number, batch in enumerate(batches, 1):
            outcomes = await asyncio.gather(
                *(process(page) for page in batch), return_exceptions=True
            )
            for page, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    outcome = PageOutcome(
                        page=page,
                        state="error",
                        update=PageUpdate(error_message=f"Indexing error: {outcome}"),
                        error=f"{type(outcome).__name__}: {outcome}",
                    )
                await self._persist(outcome, tracker, stats)

            logfire.info(
                "Indexing sub-batch persisted",
                job_id=tracker.id,
                batch=number,
                batches=len(batches),
                page_count=len(batch),
            )
            if number < len(batches) and self._settings.index_batch_pause_seconds:
                await asyncio.sleep(self._settings.index_batch_pause_seconds)

    async def _persist(self, outcome: PageOutcome, tracker: JobTracker, stats: _RunStats) -> None:
        stats.states[outcome.state] += 1
        if outcome.error:
            tracker.record_error(outcome.error, url=outcome.page.url, stage="index")
        changes = outcome.update.model_dump(exclude_unset=True) if outcome.update else {}
        update = PageUpdate(**changes, index_claimed_by=None, index_claimed_at=None)
        try:
            written = self._write_claimed(outcome.page, tracker, update)
        except Exception as e:
            logfire.error(
                "Failed to persist indexing outcome",
                url=outcome.page.url,
                job_id=tracker.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            tracker.record_error(f"Write failed: {e}", url=outcome.page.url, stage="write")
            return
        if not written:
            if outcome.new_document_id:
                await self._discard(outcome.page, outcome.new_document_id)
            return
        if outcome.state == "active":
            stats.indexed += 1
        elif outcome.state == "deleted":
            stats.deleted += 1

    async def _discard(self, page: Page, document_id: str) -> None:
        try:
            await self._index.delete(document_id)
        except IndexServiceError as e:
            logfire.warning(
                "Failed to remove document of a page that moved on",
                url=page.url,
                document_id=document_id,
                error=str(e),
            )

    # =========================================================================
    # Deletions
    # =========================================================================

    async def _delete_page(self, page: Page) -> PageOutcome:
        for document_id in _document_handles(page):
            try:
                await self._index.delete(document_id)
            except IndexServiceError as e:
                return PageOutcome(
                    page=page,
                    state="error",
                    update=PageUpdate(error_message=f"Failed to delete document: {e}"),
                    error=f"Failed to delete document {document_id}: {e}",
                )

        lifecycle.check_transition(page.status, PageStatus.DELETED)
        return PageOutcome(
            page=page,
            state="deleted",
            update=PageUpdate(
                status=PageStatus.DELETED,
                index_document_id=None,
                index_operation_id=None,
                stale_index_document_id=None,
                error_message=None,
            ),
        )

    async def _retire_stale(self, page: Page) -> PageOutcome:
        document_id = page.stale_index_document_id
        try:
            await self._index.delete(document_id)
        except IndexServiceError as e:
            return PageOutcome(
                page=page,
                state="error",
                error=f"Failed to retire old document {document_id}: {e}",
            )
        return PageOutcome(
            page=page,
            state="retired",
            update=PageUpdate(stale_index_document_id=None),
        )

    # =========================================================================
    # Uploads
    # =========================================================================

    async def _upload_page(self, container_id: str, page: Page, tracker: JobTracker) -> PageOutcome:
        if not page.has_content:
            return PageOutcome(
                page=page,
                state="error",
                update=PageUpdate(error_message="No captured text to index"),
                error="No captured text to index",
            )

        operation_id = page.index_operation_id
        if operation_id:
            logfire.info(
                "Resuming upload operation",
                url=page.url,
                operation_id=operation_id,
            )
        else:
            leftover = await self._retire_documents(page)

            try:
                operation_id = await self._index.upload(
                    container_id,
                    page.markdown_content,
                    DocumentMetadata(
                        url=page.url,
                        title=page.title,
                        path=page.path,
                        updated_at=page.last_scraped,
                    ),
                )
            except IndexServiceError as e:
                return PageOutcome(
                    page=page,
                    state="error",
                    update=PageUpdate(
                        index_document_id=None,
                        stale_index_document_id=leftover,
                        error_message=f"Upload failed: {e}",
                    ),
                    error=f"Upload failed: {e}",
                )

            # Recorded before polling so a crash resumes instead of re-uploading
            self._write_claimed(
                page,
                tracker,
                PageUpdate(
                    index_operation_id=operation_id,
                    index_document_id=None,
                    stale_index_document_id=leftover,
                ),
            )
            page = page.model_copy(
                update={
                    "index_operation_id": operation_id,
                    "index_document_id": None,
                    "stale_index_document_id": leftover,
                }
            )

        try:
            result = await self._index.await_operation(operation_id)
        except IndexServiceError as e:
            return PageOutcome(
                page=page,
                state="processing",
                update=PageUpdate(error_message=f"Could not check upload status: {e}"),
                error=f"Could not check upload status: {e}",
            )

        return await self._settle(page, result)

    async def _retire_documents(self, page: Page) -> str | None:
        """Delete the page's current documents before a fresh upload.

        Returns the handle whose delete failed, kept on the page as stale so
        a later run retires it.
        """
        leftover = None
        for document_id in _document_handles(page):
            try:
                await self._index.delete(document_id)
            except IndexServiceError as e:
                logfire.warning(
                    "Failed to retire old document, uploading anyway",
                    url=page.url,
                    document_id=document_id,
                    error=str(e),
                )
                leftover = leftover or document_id
        return leftover

    async def _settle(self, page: Page, result: OperationResult) -> PageOutcome:
        if result.state == DocumentState.ACTIVE and result.document_id:
            lifecycle.check_page_transition(page, PageStatus.ACTIVE)
            return PageOutcome(
                page=page,
                state="active",
                update=PageUpdate(
                    status=PageStatus.ACTIVE,
                    index_document_id=result.document_id,
                    index_operation_id=None,
                    stale_index_document_id=page.stale_index_document_id,
                    error_message=None,
                ),
                new_document_id=result.document_id,
            )

        if result.state == DocumentState.PROCESSING:
            return PageOutcome(
                page=page,
                state="processing",
                update=PageUpdate(
                    index_operation_id=result.operation_id,
                    error_message="Document still processing; will resume on next run",
                ),
            )

        if result.document_id:
            try:
                await self._index.delete(result.document_id)
            except IndexServiceError as e:
                logfire.warning(
                    "Failed to remove failed document",
                    url=page.url,
                    document_id=result.document_id,
                    error=str(e),
                )
        message = f"Indexing failed: {result.error or 'document rejected'}"
        return PageOutcome(
            page=page,
            state="failed",
            update=PageUpdate(index_operation_id=None, error_message=message),
            error=message,
        )


def _document_handles(page: Page) -> list[str]:
    """Index documents currently attached to a page, stale first."""
    handles = [page.stale_index_document_id, page.index_document_id]
    return [h for h in dict.fromkeys(handles) if h]
