"""Record store contract used by the pipeline.

The pipeline never talks to the database directly; it depends on this
protocol so the Supabase repository and the in-memory test store are
interchangeable. Per-page mutual exclusion relies on the store's
upsert-by-unique-key and compare-and-set claims, not on in-process locks.
"""

from datetime import datetime
from typing import Protocol, Sequence

from sitecorpus.models.website_models import (
    Job,
    JobCreate,
    JobStatus,
    JobType,
    JobUpdate,
    Page,
    PageStatus,
    PageUpdate,
    PageUpsert,
    Website,
    WebsiteCreate,
    WebsiteUpdate,
)


class RecordStore(Protocol):
    """Durable persistence for websites, pages and jobs."""

    # Websites

    def get_website(self, website_id: str) -> Website | None: ...

    def get_website_by_domain(self, domain: str) -> Website | None: ...

    def create_website(self, data: WebsiteCreate) -> Website: ...

    def update_website(self, website_id: str, data: WebsiteUpdate) -> None: ...

    def list_websites(self) -> list[Website]: ...

    # Pages

    def upsert_page(self, data: PageUpsert) -> Page:
        """Atomically insert or replace the row keyed on (website_id, url)."""
        ...

    def update_page(self, page_id: str, data: PageUpdate) -> None: ...

    def update_pages(self, page_ids: Sequence[str], data: PageUpdate) -> int:
        """Apply the same change to many rows; returns the number updated."""
        ...

    def increment_missing_count(self, page_ids: Sequence[str]) -> list[Page]:
        """Add one to missing_count for each page; returns the updated rows."""
        ...

    def get_page_by_url(self, website_id: str, url: str) -> Page | None: ...

    def get_pages(
        self,
        website_id: str,
        statuses: Sequence[PageStatus] | None = None,
    ) -> list[Page]: ...

    def get_pages_for_indexing(
        self,
        website_id: str,
        statuses: Sequence[PageStatus],
        limit: int,
        job_id: str | None = None,
    ) -> list[Page]:
        """Up to ``limit`` pages in any of ``statuses``, oldest update first.

        When ``job_id`` is given only pages whose lineage names that job
        are returned.
        """
        ...

    def claim_page(
        self,
        page_id: str,
        status: PageStatus,
        job_id: str,
        expires_before: datetime,
    ) -> Page | None:
        """Compare-and-set the indexing claim on one page.

        Succeeds only while the page is still in ``status`` and unclaimed,
        or its claim was taken before ``expires_before``. Returns the
        claimed row, or None when another run holds the page or its status
        moved on.
        """
        ...

    def update_claimed_page(
        self,
        page_id: str,
        status: PageStatus,
        job_id: str,
        data: PageUpdate,
    ) -> bool:
        """Apply ``data`` only if the page is still in ``status`` and claimed by ``job_id``."""
        ...

    def release_claims(self, job_id: str) -> int:
        """Drop every claim held by ``job_id``; returns the number released."""
        ...

    def get_pages_with_stale_documents(self, website_id: str, limit: int) -> list[Page]:
        """Active pages still carrying a stale index document handle, oldest first."""
        ...

    def get_pages_missing_at_least(self, website_id: str, threshold: int) -> list[Page]: ...

    def count_pages_by_status(self, website_id: str) -> dict[str, int]: ...

    # Jobs

    def create_job(self, data: JobCreate) -> Job: ...

    def update_job(self, job_id: str, data: JobUpdate) -> None: ...

    def get_job(self, job_id: str) -> Job | None: ...

    def list_jobs(
        self,
        website_id: str,
        limit: int,
        job_type: JobType | None = None,
    ) -> list[Job]:
        """Jobs for a website, newest first."""
        ...

    def find_jobs(
        self,
        website_id: str,
        job_type: JobType,
        status: JobStatus,
    ) -> list[Job]: ...
