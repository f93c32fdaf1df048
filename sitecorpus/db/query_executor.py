"""Timing and logging helpers for record store calls.

Every repository method goes through one of these so database latency and
failures show up in Logfire with the same fields.
"""

import time
from contextlib import contextmanager
from typing import Any, Generator

import logfire


@contextmanager
def timed_query(
    operation_name: str,
    **log_context: Any,
) -> Generator[None, None, None]:
    """
    Time a database operation and log its start, completion or failure.

    Args:
        operation_name: Name of the operation (e.g., "upsert_page")
        **log_context: Additional context to include in all log messages

    Example:
        with timed_query("get_website", website_id=website_id):
            result = client.table("websites").select("*").eq("id", website_id).execute()
    """
    start_time = time.perf_counter()

    logfire.debug(
        f"Starting {operation_name}",
        operation=operation_name,
        **log_context,
    )

    try:
        yield
    except Exception as e:
        elapsed = time.perf_counter() - start_time
        logfire.error(
            f"{operation_name} failed",
            operation=operation_name,
            error=str(e),
            error_type=type(e).__name__,
            response_time_ms=elapsed * 1000,
            **log_context,
        )
        raise

    elapsed = time.perf_counter() - start_time
    logfire.info(
        f"{operation_name} completed",
        operation=operation_name,
        response_time_ms=elapsed * 1000,
        **log_context,
    )


class QueryTimer:
    """
    Class-based timer for operations that report result details on success.

    Example:
        timer = QueryTimer("get_pages_for_indexing", website_id=website_id).start()
        try:
            result = query.execute()
            timer.success(result_count=len(result.data))
        except Exception as e:
            timer.error(e)
            raise
    """

    def __init__(self, operation_name: str, **log_context: Any):
        self.operation_name = operation_name
        self.log_context = log_context
        self._start_time: float | None = None
        self._elapsed_ms: float | None = None

    def start(self) -> "QueryTimer":
        """Start the timer and log the operation start."""
        self._start_time = time.perf_counter()
        logfire.debug(
            f"Starting {self.operation_name}",
            operation=self.operation_name,
            **self.log_context,
        )
        return self

    def _stop(self) -> float:
        if self._start_time is None:
            raise RuntimeError("Timer was not started. Call start() first.")
        self._elapsed_ms = (time.perf_counter() - self._start_time) * 1000
        return self._elapsed_ms

    def success(self, **extra_context: Any) -> float:
        """Log completion; returns elapsed milliseconds."""
        elapsed_ms = self._stop()
        logfire.info(
            f"{self.operation_name} completed",
            operation=self.operation_name,
            response_time_ms=elapsed_ms,
            **self.log_context,
            **extra_context,
        )
        return elapsed_ms

    def error(self, exception: Exception, **extra_context: Any) -> float:
        """Log failure; returns elapsed milliseconds."""
        elapsed_ms = self._stop()
        logfire.error(
            f"{self.operation_name} failed",
            operation=self.operation_name,
            error=str(exception),
            error_type=type(exception).__name__,
            response_time_ms=elapsed_ms,
            **self.log_context,
            **extra_context,
        )
        return elapsed_ms

    @property
    def elapsed_ms(self) -> float | None:
        """Elapsed time in milliseconds (None if not yet completed)."""
        return self._elapsed_ms
