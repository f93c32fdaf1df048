"""Pipeline trigger and status endpoints.

The handlers deal with HTTP concerns only and delegate to the pipeline
components obtained through ``get_pipeline`` (overridable in tests).
"""

import logfire
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sitecorpus.constants import DEFAULT_JOB_HISTORY_LIMIT
from sitecorpus.exceptions import (
    IndexServiceError,
    InvalidSeedError,
    InvalidTransitionError,
    InvalidUrlError,
    PageNotFoundError,
    PipelineError,
    ReconcileNotAllowedError,
    WebsiteNotFoundError,
)
from sitecorpus.models.pipeline_models import (
    CaptureResult,
    IndexResult,
    ReconcileResult,
    UrlRequestResult,
    UrlStatus,
    WebsiteStatus,
)
from sitecorpus.models.website_models import Job, Website
from sitecorpus.services.pipeline import Pipeline, get_pipeline

router = APIRouter()

_STATUS_CODES: dict[type[PipelineError], int] = {
    InvalidSeedError: 400,
    InvalidUrlError: 400,
    WebsiteNotFoundError: 404,
    PageNotFoundError: 404,
    ReconcileNotAllowedError: 409,
    InvalidTransitionError: 409,
    IndexServiceError: 502,
}


class CaptureRequest(BaseModel):
    """Body of a capture trigger."""

    seed: str = Field(..., description="URL or bare domain to capture")
    display_name: str | None = Field(default=None, description="Optional display name")


class UrlRequest(BaseModel):
    """Body of a single-URL request."""

    url: str = Field(..., description="Page URL on the website's domain")


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map pipeline errors to HTTP responses."""
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
    )
    logfire.warning(
        "Pipeline request failed",
        path=request.url.path,
        status_code=status_code,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@router.post("/capture", response_model=CaptureResult)
async def capture_website(
    body: CaptureRequest, pipeline: Pipeline = Depends(get_pipeline)
) -> CaptureResult:
    """Capture a website (or reconcile it if already captured)."""
    return await pipeline.capture.capture(body.seed, body.display_name)


@router.post("/{website_id}/reconcile", response_model=ReconcileResult)
async def reconcile_website(
    website_id: str, pipeline: Pipeline = Depends(get_pipeline)
) -> ReconcileResult:
    return await pipeline.reconciler.reconcile(website_id)


@router.post("/{website_id}/index", response_model=IndexResult)
async def index_website(
    website_id: str,
    job_id: str | None = Query(default=None, description="Limit uploads to this job's pages"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> IndexResult:
    return await pipeline.indexing.index(website_id, job_id)


@router.get("", response_model=list[Website])
def list_websites(pipeline: Pipeline = Depends(get_pipeline)) -> list[Website]:
    return pipeline.status.list_websites()


@router.get("/{website_id}/status", response_model=WebsiteStatus)
def website_status(
    website_id: str, pipeline: Pipeline = Depends(get_pipeline)
) -> WebsiteStatus:
    return pipeline.status.website_status(website_id)


@router.get("/{website_id}/jobs", response_model=list[Job])
def job_history(
    website_id: str,
    limit: int = Query(default=DEFAULT_JOB_HISTORY_LIMIT, ge=1, le=200),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[Job]:
    return pipeline.status.job_history(website_id, limit)


@router.get("/{website_id}/pages/status", response_model=UrlStatus)
def url_status(
    website_id: str,
    url: str = Query(..., description="Page URL"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> UrlStatus:
    return pipeline.status.url_status(website_id, url)


@router.post("/{website_id}/pages", response_model=UrlRequestResult)
async def add_url(
    website_id: str, body: UrlRequest, pipeline: Pipeline = Depends(get_pipeline)
) -> UrlRequestResult:
    """Capture one URL and queue it for indexing."""
    return await pipeline.urls.add_url(website_id, body.url)


@router.post("/{website_id}/pages/reindex", response_model=UrlRequestResult)
async def reindex_url(
    website_id: str, body: UrlRequest, pipeline: Pipeline = Depends(get_pipeline)
) -> UrlRequestResult:
    """Force a fresh fetch of a known page; requeues it when its text changed."""
    return await pipeline.urls.reindex_url(website_id, body.url)


@router.post("/{website_id}/pages/restore", response_model=UrlRequestResult)
async def restore_page(
    website_id: str, body: UrlRequest, pipeline: Pipeline = Depends(get_pipeline)
) -> UrlRequestResult:
    return await pipeline.urls.restore_page(website_id, body.url)


@router.post("/{website_id}/pages/delete", response_model=UrlRequestResult)
async def delete_page(
    website_id: str, body: UrlRequest, pipeline: Pipeline = Depends(get_pipeline)
) -> UrlRequestResult:
    """Mark a page for deletion; indexing retires its document."""
    return pipeline.urls.mark_deleted(website_id, body.url)
