"""FastAPI application initialization."""

import os
from contextlib import asynccontextmanager

import logfire
import sentry_sdk
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration

from sitecorpus.api import health, pipeline as pipeline_api
from sitecorpus.config import get_settings
from sitecorpus.exceptions import PipelineError
from sitecorpus.logging_config import setup_logfire
from sitecorpus.services.pipeline import get_pipeline

# Graceful shutdown timeout (seconds) - wait this long for indexing to finish
GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure observability, build the pipeline, drain indexing on shutdown."""
    settings = get_settings()

    setup_logfire(app)

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=settings.sentry_traces_sample_rate,
            environment=settings.env,
            integrations=[FastApiIntegration()],
        )

    pipeline = get_pipeline()
    app.state.pipeline = pipeline

    logfire.info(
        "Application startup complete",
        environment=settings.env,
        content_fetcher=settings.content_fetcher,
        similarity_threshold=settings.similarity_threshold,
        deletion_threshold=settings.deletion_threshold,
    )

    yield

    logfire.info(
        "Application shutdown initiated",
        pending_tasks=pipeline.dispatcher.pending,
    )
    await pipeline.dispatcher.drain(timeout=GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS)
    logfire.info("Application shutdown complete")


app = FastAPI(
    title="Site Corpus Sync",
    description="Capture, reconcile and index website content",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(PipelineError, pipeline_api.pipeline_error_handler)

app.include_router(health.router, tags=["health"])
app.include_router(pipeline_api.router, prefix="/websites", tags=["websites"])


@app.get("/")
def root():
    """Root endpoint."""
    return {"message": "Site Corpus Sync API", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "sitecorpus.main:app", host="0.0.0.0", port=port, reload=os.getenv("ENV") == "local"
    )
