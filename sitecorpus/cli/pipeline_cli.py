"""Typer CLI for triggering pipeline runs and inspecting status."""

import os

os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from dotenv import load_dotenv
from pydantic import BaseModel

from sitecorpus.exceptions import PipelineError
from sitecorpus.services.pipeline import Pipeline, get_pipeline

_project_root = Path(__file__).resolve().parent.parent.parent
load_dotenv(_project_root / ".env")
load_dotenv(_project_root / ".env.local")

app = typer.Typer(help="Capture, reconcile and index website content.")

# Max seconds to wait for background indexing before the CLI exits
DRAIN_TIMEOUT_SECONDS = 600.0


def _echo(value: Any) -> None:
    if isinstance(value, BaseModel):
        typer.echo(value.model_dump_json(indent=2))
    elif isinstance(value, list):
        typer.echo(
            json.dumps(
                [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value],
                indent=2,
            )
        )
    else:
        typer.echo(json.dumps(value, indent=2, default=str))


def _run_async(action: Callable[[Pipeline], Awaitable[Any]], wait_for_indexing: bool = True) -> Any:
    """Run a pipeline coroutine, then let fire-and-forget indexing finish."""

    async def runner() -> Any:
        pipeline = get_pipeline()
        try:
            return await action(pipeline)
        finally:
            if wait_for_indexing and pipeline.dispatcher.pending:
                typer.echo("Waiting for background indexing to finish...", err=True)
                await pipeline.dispatcher.drain(timeout=DRAIN_TIMEOUT_SECONDS)

    try:
        return asyncio.run(runner())
    except PipelineError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from e


def _setup_logging() -> None:
    from sitecorpus.logging_config import setup_logfire

    setup_logfire()


@app.callback()
def _main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Configure logging")):
    if verbose:
        _setup_logging()


@app.command()
def capture(
    seed: str = typer.Argument(..., help="URL or bare domain"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Exit without waiting for indexing"),
):
    """Capture a website; reconciles instead when it was captured before."""
    result = _run_async(lambda p: p.capture.capture(seed, name), not no_wait)
    _echo(result)
    if result.outcome == "failed":
        raise typer.Exit(code=1)


@app.command()
def reconcile(
    website_id: str = typer.Argument(..., help="Website id"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Exit without waiting for indexing"),
):
    """Re-synchronize a captured website."""
    result = _run_async(lambda p: p.reconciler.reconcile(website_id), not no_wait)
    _echo(result)
    if result.status.value == "failed":
        raise typer.Exit(code=1)


@app.command()
def index(
    website_id: str = typer.Argument(..., help="Website id"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Limit uploads to this job's pages"),
):
    """Upload staged pages to the semantic index."""
    _echo(_run_async(lambda p: p.indexing.index(website_id, job_id)))


async def _status(pipeline: Pipeline, website_id: Optional[str]) -> Any:
    if website_id is None:
        return pipeline.status.list_websites()
    return pipeline.status.website_status(website_id)


@app.command()
def status(website_id: Optional[str] = typer.Argument(None, help="Website id; omit to list all")):
    """Show website status, or list websites."""
    _echo(_run_async(lambda p: _status(p, website_id), wait_for_indexing=False))


async def _jobs(pipeline: Pipeline, website_id: str, limit: int) -> Any:
    return pipeline.status.job_history(website_id, limit)


@app.command()
def jobs(
    website_id: str = typer.Argument(..., help="Website id"),
    limit: int = typer.Option(20, "--limit", "-l", min=1, max=200),
):
    """Show a website's job history, newest first."""
    _echo(_run_async(lambda p: _jobs(p, website_id, limit), wait_for_indexing=False))


async def _url_status(pipeline: Pipeline, website_id: str, url: str) -> Any:
    return pipeline.status.url_status(website_id, url)


@app.command("url-status")
def url_status(
    website_id: str = typer.Argument(..., help="Website id"),
    url: str = typer.Argument(..., help="Page URL"),
):
    """Show the lifecycle state of one URL."""
    _echo(_run_async(lambda p: _url_status(p, website_id, url), wait_for_indexing=False))


async def _mark_deleted(pipeline: Pipeline, website_id: str, url: str) -> Any:
    return pipeline.urls.mark_deleted(website_id, url)


@app.command("add-url")
def add_url(
    website_id: str = typer.Argument(..., help="Website id"),
    url: str = typer.Argument(..., help="Page URL"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Exit without waiting for indexing"),
):
    """Capture one URL of a website and queue it for indexing."""
    result = _run_async(lambda p: p.urls.add_url(website_id, url), not no_wait)
    _echo(result)
    if result.outcome == "failed":
        raise typer.Exit(code=1)


@app.command("reindex-url")
def reindex_url(
    website_id: str = typer.Argument(..., help="Website id"),
    url: str = typer.Argument(..., help="Page URL"),
    restore: bool = typer.Option(False, "--restore", help="Bring back a deleted page"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Exit without waiting for indexing"),
):
    """Re-fetch a known page and re-index it if its text changed."""
    if restore:
        result = _run_async(lambda p: p.urls.restore_page(website_id, url), not no_wait)
    else:
        result = _run_async(lambda p: p.urls.reindex_url(website_id, url), not no_wait)
    _echo(result)
    if result.outcome == "failed":
        raise typer.Exit(code=1)


@app.command("delete-url")
def delete_url(
    website_id: str = typer.Argument(..., help="Website id"),
    url: str = typer.Argument(..., help="Page URL"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Exit without waiting for indexing"),
):
    """Mark a page for deletion from the index."""
    _echo(_run_async(lambda p: _mark_deleted(p, website_id, url), not no_wait))


@app.command()
def migrate():
    """Apply SQL migrations to the configured database."""
    from sitecorpus.db.migrate import run_migrations

    run_migrations()


if __name__ == "__main__":
    app()
