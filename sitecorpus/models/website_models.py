"""Models for websites, pages and pipeline jobs as stored in the record store."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class PageStatus(str, Enum):
    """Lifecycle state of a single page."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY_FOR_INDEXING = "ready_for_indexing"
    READY_FOR_RE_INDEXING = "ready_for_re_indexing"
    READY_FOR_DELETION = "ready_for_deletion"
    ACTIVE = "active"
    DELETED = "deleted"
    REDIRECT = "redirect"
    ERROR = "error"


# States that imply the page holds captured text and a content hash
CONTENT_REQUIRED_STATUSES = frozenset(
    {
        PageStatus.READY_FOR_INDEXING,
        PageStatus.READY_FOR_RE_INDEXING,
        PageStatus.ACTIVE,
    }
)

# States drained by the indexing phase
INDEXABLE_STATUSES = (
    PageStatus.READY_FOR_INDEXING,
    PageStatus.READY_FOR_RE_INDEXING,
    PageStatus.READY_FOR_DELETION,
)

# States swept by self-healing at the start of a reconcile
RETRYABLE_STATUSES = (
    PageStatus.PENDING,
    PageStatus.PROCESSING,
    PageStatus.ERROR,
)


class JobType(str, Enum):
    """Kind of pipeline run."""

    CAPTURE = "capture"
    INDEXING = "indexing"


class CaptureMode(str, Enum):
    """First contact, incremental reconcile, or an on-request single-URL capture."""

    INITIAL = "initial"
    INCREMENTAL = "incremental"
    MANUAL = "manual"


class JobStatus(str, Enum):
    """Run status of a pipeline job."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobError(BaseModel):
    """One entry in a job's structured error list."""

    error: str = Field(..., description="Human readable error message")
    url: str | None = Field(default=None, description="Page URL the error relates to")
    stage: str | None = Field(
        default=None, description="Pipeline step that produced the error"
    )
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# Website
# =============================================================================


class Website(BaseModel):
    """A website identified by its base domain."""

    id: str
    seed_url: str
    domain: str
    display_name: str
    index_store_id: str | None = None
    last_full_crawl: datetime | None = None
    crawl_interval_hours: int | None = None
    created_by_job_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebsiteCreate(BaseModel):
    """Parameters for creating a website record."""

    seed_url: str = Field(..., description="Seed URL the website was captured from")
    domain: str = Field(..., description="Base domain (identity key)")
    display_name: str = Field(..., min_length=1, max_length=512)
    index_store_id: str | None = Field(
        default=None, description="Handle of the website's index container"
    )
    crawl_interval_hours: int | None = None


class WebsiteUpdate(BaseModel):
    """Partial website update; only fields explicitly set are written."""

    index_store_id: str | None = None
    last_full_crawl: datetime | None = None
    created_by_job_id: str | None = None
    display_name: str | None = None


# =============================================================================
# Page
# =============================================================================


class Page(BaseModel):
    """Persisted lifecycle record of one URL.

    ``markdown_content`` is the text last staged for indexing, while
    ``content_hash`` is the digest of the most recent capture. After a
    reconcile that found only minor drift the two describe different text:
    the hash tracks the live page, the stored text stays the indexed one.
    """

    id: str
    website_id: str
    url: str
    path: str | None = None
    title: str | None = None
    status: PageStatus = PageStatus.PENDING
    content_hash: str | None = None
    markdown_content: str | None = None
    last_scraped: datetime | None = None
    last_seen: datetime | None = None
    capture_count: int = 0
    http_status_code: int | None = None
    index_document_id: str | None = None
    index_operation_id: str | None = None
    stale_index_document_id: str | None = None
    index_claimed_by: str | None = None
    index_claimed_at: datetime | None = None
    missing_count: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by_job_id: str | None = None
    created_by_sync_id: str | None = None
    last_updated_by_sync_id: str | None = None
    fetch_batch_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_content(self) -> bool:
        """True when the page holds non-empty captured text and its hash."""
        return bool(
            self.markdown_content
            and self.markdown_content.strip()
            and self.content_hash
        )


def _check_content(status: PageStatus | None, markdown: str | None, content_hash: str | None) -> None:
    if status in CONTENT_REQUIRED_STATUSES:
        if not markdown or not markdown.strip():
            raise ValueError(f"status {status.value} requires captured text")
        if not content_hash:
            raise ValueError(f"status {status.value} requires a content hash")


class PageUpsert(BaseModel):
    """Full page row written in one atomic upsert keyed on (website_id, url).

    Index fields are deliberately absent so an upsert never clobbers a
    handle the indexing phase is responsible for.
    """

    website_id: str
    url: str
    path: str | None = None
    title: str | None = None
    status: PageStatus
    content_hash: str | None = None
    markdown_content: str | None = None
    http_status_code: int | None = None
    last_scraped: datetime | None = None
    last_seen: datetime | None = None
    capture_count: int = 1
    missing_count: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by_job_id: str | None = None
    created_by_sync_id: str | None = None
    last_updated_by_sync_id: str | None = None
    fetch_batch_id: str | None = None

    @model_validator(mode="after")
    def _require_content_for_searchable_states(self) -> "PageUpsert":
        _check_content(self.status, self.markdown_content, self.content_hash)
        return self


class PageUpdate(BaseModel):
    """Partial page update; only fields explicitly set are written."""

    status: PageStatus | None = None
    title: str | None = None
    content_hash: str | None = None
    markdown_content: str | None = None
    http_status_code: int | None = None
    last_scraped: datetime | None = None
    last_seen: datetime | None = None
    capture_count: int | None = None
    missing_count: int | None = None
    error_message: str | None = None
    index_document_id: str | None = None
    index_operation_id: str | None = None
    stale_index_document_id: str | None = None
    index_claimed_by: str | None = None
    index_claimed_at: datetime | None = None
    metadata: dict[str, Any] | None = None
    last_updated_by_sync_id: str | None = None
    fetch_batch_id: str | None = None

    @model_validator(mode="after")
    def _reject_empty_content_for_searchable_states(self) -> "PageUpdate":
        # Only checkable when the update itself carries content
        if "markdown_content" in self.model_fields_set or "content_hash" in self.model_fields_set:
            _check_content(self.status, self.markdown_content, self.content_hash)
        return self

    def changes(self) -> dict[str, Any]:
        """Explicitly set fields, serialized for the record store."""
        return self.model_dump(mode="json", exclude_unset=True)


# =============================================================================
# Job
# =============================================================================


class Job(BaseModel):
    """One pipeline run and its audit statistics."""

    id: str
    website_id: str
    job_type: JobType
    capture_mode: CaptureMode | None = None
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    urls_discovered: int = 0
    urls_updated: int = 0
    urls_deleted: int = 0
    urls_errored: int = 0
    batch_ids: list[str] = Field(default_factory=list)
    errors: list[JobError] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    parent_job_id: str | None = None


class JobCreate(BaseModel):
    """Parameters for opening a job."""

    website_id: str
    job_type: JobType
    capture_mode: CaptureMode | None = None
    parent_job_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobUpdate(BaseModel):
    """Partial job update used for progress writes and sealing."""

    status: JobStatus | None = None
    completed_at: datetime | None = None
    urls_discovered: int | None = Field(default=None, ge=0)
    urls_updated: int | None = Field(default=None, ge=0)
    urls_deleted: int | None = Field(default=None, ge=0)
    urls_errored: int | None = Field(default=None, ge=0)
    batch_ids: list[str] | None = None
    errors: list[JobError] | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        """Explicitly set fields, serialized for the record store."""
        return self.model_dump(mode="json", exclude_unset=True)
