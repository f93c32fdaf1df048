"""Result shapes returned by the pipeline operations."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from sitecorpus.models.website_models import JobError, JobStatus, PageStatus

CaptureOutcome = Literal["captured", "reconciled", "recovered", "still_running", "failed"]


class CaptureResult(BaseModel):
    """Outcome of a capture request."""

    website_id: str
    job_id: str | None = None
    outcome: CaptureOutcome = "captured"
    discovered: int = 0
    captured: int = 0
    errors: list[JobError] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Outcome of a reconcile run."""

    website_id: str
    job_id: str
    status: JobStatus = JobStatus.COMPLETED
    discovered: int = 0
    updated: int = 0
    deleted: int = 0
    errored: int = 0
    errors: list[JobError] = Field(default_factory=list)


class IndexResult(BaseModel):
    """Outcome of an indexing run."""

    website_id: str
    job_id: str
    indexed: int = 0
    deleted: int = 0
    errors: list[JobError] = Field(default_factory=list)
    document_states: dict[str, int] = Field(default_factory=dict)


class JobSummary(BaseModel):
    """Compact view of a job for status reports."""

    id: str
    job_type: str
    capture_mode: str | None = None
    status: JobStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    urls_discovered: int = 0
    urls_updated: int = 0
    urls_deleted: int = 0
    urls_errored: int = 0
    error_count: int = 0


class WebsiteStatus(BaseModel):
    """Aggregate status of one website."""

    website_id: str
    domain: str
    display_name: str
    total_pages: int
    pages_by_status: dict[str, int]
    last_full_crawl: datetime | None = None
    needs_reconcile: bool
    last_capture_job: JobSummary | None = None
    last_indexing_job: JobSummary | None = None


class UrlStatus(BaseModel):
    """Status of a single URL within a website."""

    url: str
    found: bool
    status: PageStatus | None = None
    last_scraped: datetime | None = None
    last_seen: datetime | None = None
    content_hash: str | None = None
    missing_count: int = 0
    indexed: bool = False
    error: str | None = None


UrlOutcome = Literal["queued", "already_active", "unchanged", "marked_for_deletion", "failed"]


class UrlRequestResult(BaseModel):
    """Outcome of a single-URL add, re-index, restore or removal request."""

    website_id: str
    url: str
    outcome: UrlOutcome
    job_id: str | None = None
    status: PageStatus | None = None
    content_changed: bool = False
    previous_hash: str | None = None
    new_hash: str | None = None
    errors: list[JobError] = Field(default_factory=list)
