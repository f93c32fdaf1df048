"""Retry policy shared by the outbound HTTP clients.

Transient failures (timeouts, connection errors, 429 and 5xx responses)
are retried with exponential backoff; client errors surface immediately.
"""

from typing import Any

import httpx
import logfire
from tenacity import (
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sitecorpus.constants import RETRYABLE_STATUS_CODES
from sitecorpus.exceptions import IndexServiceError


def is_retryable_error(exception: BaseException) -> bool:
    """Return True for transient errors that should be retried.

    Retries on:
      - Network timeouts and connection errors
      - HTTP 429 (rate limit), 500, 502, 503, 504
      - IndexServiceError flagged transient

    Does NOT retry on:
      - HTTP 400, 401, 403, 404 (permanent client errors)
    """
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exception, IndexServiceError):
        return exception.transient
    return False


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logfire.warning(
        "Retrying after transient HTTP error",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exception),
        error_type=type(exception).__name__,
    )


def retry_config(
    max_attempts: int = 5,
    min_wait: float = 2.0,
    max_wait: float = 60.0,
) -> dict[str, Any]:
    """Keyword arguments for ``tenacity.AsyncRetrying``."""
    return {
        "stop": stop_after_attempt(max_attempts),
        "wait": wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        "retry": retry_if_exception(is_retryable_error),
        "reraise": True,
        "before_sleep": _log_before_sleep,
    }
