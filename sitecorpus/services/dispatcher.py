"""Fire-and-forget hand-off from capture/reconcile to indexing.

Submissions become tracked asyncio tasks. Failed runs are retried with
exponential backoff up to a bounded number of attempts, then logged; the
submitter never sees the failure. At most one indexing run per website is
in flight; submissions that arrive meanwhile collapse into one follow-up
run so the same pages are never uploaded by two runs at once.
"""

import asyncio
from typing import Awaitable, Callable

import logfire
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sitecorpus.constants import INDEXING_MAX_ATTEMPTS, INDEXING_RETRY_BASE_SECONDS
from sitecorpus.exceptions import WebsiteNotFoundError
from sitecorpus.models.pipeline_models import IndexResult

IndexRunner = Callable[[str, str | None], Awaitable[IndexResult]]


def _should_retry(exception: BaseException) -> bool:
    return not isinstance(exception, (WebsiteNotFoundError, asyncio.CancelledError))


class IndexingDispatcher:
    """Schedules indexing runs in the background and retries them by policy."""

    def __init__(
        self,
        run_indexing: IndexRunner,
        max_attempts: int = INDEXING_MAX_ATTEMPTS,
        retry_base_seconds: float = INDEXING_RETRY_BASE_SECONDS,
    ):
        self._run_indexing = run_indexing
        self._max_attempts = max_attempts
        self._retry_base_seconds = retry_base_seconds
        self._tasks: dict[str, asyncio.Task] = {}
        self._follow_up: dict[str, str | None] = {}
        self.results: dict[str, IndexResult] = {}
        self.failures: dict[str, BaseException] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, website_id: str, job_id: str | None = None) -> asyncio.Task:
        """Schedule indexing for a website without waiting for it."""
        running = self._tasks.get(website_id)
        if running is not None and not running.done():
            # Job scope is dropped so the follow-up covers every submitter
            self._follow_up[website_id] = None
            logfire.info(
                "Indexing already running, follow-up run queued",
                website_id=website_id,
                job_id=job_id,
            )
            return running

        task = asyncio.create_task(self._run(website_id, job_id))
        self._tasks[website_id] = task
        task.add_done_callback(lambda t, w=website_id: self._on_done(w, t))
        logfire.info("Indexing submitted", website_id=website_id, job_id=job_id)
        return task

    def _on_done(self, website_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(website_id) is task:
            del self._tasks[website_id]

    async def _run(self, website_id: str, job_id: str | None) -> None:
        while True:
            await self._run_with_retries(website_id, job_id)
            if website_id not in self._follow_up:
                return
            job_id = self._follow_up.pop(website_id)

    async def _run_with_retries(self, website_id: str, job_id: str | None) -> None:
        def log_retry(retry_state: RetryCallState) -> None:
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            logfire.warning(
                "Indexing run failed, retrying",
                website_id=website_id,
                job_id=job_id,
                attempt=retry_state.attempt_number,
                error=str(exception),
                error_type=type(exception).__name__,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_base_seconds),
            retry=retry_if_exception(_should_retry),
            reraise=True,
            before_sleep=log_retry,
        )
        try:
            result = await retrying(self._run_indexing, website_id, job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures[website_id] = e
            logfire.error(
                "Indexing gave up",
                website_id=website_id,
                job_id=job_id,
                attempts=self._max_attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        self.results[website_id] = result
        self.failures.pop(website_id, None)
        logfire.info(
            "Indexing finished",
            website_id=website_id,
            job_id=result.job_id,
            indexed=result.indexed,
            deleted=result.deleted,
            errors=len(result.errors),
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight runs; cancel whatever is left after ``timeout``."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            logfire.info("Draining indexing tasks", task_count=len(tasks))
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logfire.warning(
                    "Cancelling indexing tasks after timeout",
                    completed_count=len(done),
                    cancelled_count=len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return
