"""Health check endpoint."""

from fastapi import APIRouter

from sitecorpus.config import get_settings
from sitecorpus.services.pipeline import get_pipeline

router = APIRouter()


@router.get("/health")
def health():
    """Liveness check with the background indexing backlog."""
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.env,
        "content_fetcher": settings.content_fetcher,
        "pending_indexing_tasks": get_pipeline().dispatcher.pending,
    }
