"""Read-only reporting over the website, page and job ledgers."""

from datetime import timedelta

from sitecorpus.config import Settings, get_settings
from sitecorpus.constants import DEFAULT_JOB_HISTORY_LIMIT
from sitecorpus.db.store import RecordStore
from sitecorpus.exceptions import WebsiteNotFoundError
from sitecorpus.models.pipeline_models import JobSummary, UrlStatus, WebsiteStatus
from sitecorpus.models.website_models import Job, JobType, Website, utc_now
from sitecorpus.services.domain_resolver import normalize_url


def summarize_job(job: Job) -> JobSummary:
    return JobSummary(
        id=job.id,
        job_type=job.job_type.value,
        capture_mode=job.capture_mode.value if job.capture_mode else None,
        status=job.status,
        started_at=job.started_at,
        completed_at=job.completed_at,
        urls_discovered=job.urls_discovered,
        urls_updated=job.urls_updated,
        urls_deleted=job.urls_deleted,
        urls_errored=job.urls_errored,
        error_count=len(job.errors),
    )


class StatusService:
    """Answers status questions without touching any external service."""

    def __init__(self, store: RecordStore, settings: Settings | None = None):
        self._store = store
        self._settings = settings or get_settings()

    def _website(self, website_id: str) -> Website:
        website = self._store.get_website(website_id)
        if website is None:
            raise WebsiteNotFoundError(f"Website not found: {website_id}")
        return website

    def list_websites(self) -> list[Website]:
        return self._store.list_websites()

    def website_status(self, website_id: str) -> WebsiteStatus:
        """Page counts by status plus the latest capture and indexing jobs."""
        website = self._website(website_id)
        counts = self._store.count_pages_by_status(website_id)

        last_capture = self._store.list_jobs(website_id, 1, JobType.CAPTURE)
        last_indexing = self._store.list_jobs(website_id, 1, JobType.INDEXING)

        interval = timedelta(
            hours=website.crawl_interval_hours or self._settings.sync_interval_hours
        )
        needs_reconcile = (
            website.last_full_crawl is None
            or utc_now() - website.last_full_crawl >= interval
        )

        return WebsiteStatus(
            website_id=website.id,
            domain=website.domain,
            display_name=website.display_name,
            total_pages=sum(counts.values()),
            pages_by_status=counts,
            last_full_crawl=website.last_full_crawl,
            needs_reconcile=needs_reconcile,
            last_capture_job=summarize_job(last_capture[0]) if last_capture else None,
            last_indexing_job=summarize_job(last_indexing[0]) if last_indexing else None,
        )

    def job_history(
        self, website_id: str, limit: int = DEFAULT_JOB_HISTORY_LIMIT
    ) -> list[Job]:
        """Jobs for a website, newest first."""
        self._website(website_id)
        return self._store.list_jobs(website_id, limit)

    def url_status(self, website_id: str, url: str) -> UrlStatus:
        self._website(website_id)
        normalized = normalize_url(url)
        page = self._store.get_page_by_url(website_id, normalized)
        if page is None:
            return UrlStatus(url=normalized, found=False)
        return UrlStatus(
            url=page.url,
            found=True,
            status=page.status,
            last_scraped=page.last_scraped,
            last_seen=page.last_seen,
            content_hash=page.content_hash,
            missing_count=page.missing_count,
            indexed=page.index_document_id is not None,
            error=page.error_message,
        )
