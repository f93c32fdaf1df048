"""Content fetcher contract and the Firecrawl-backed implementation.

A content fetcher maps a seed URL to candidate URLs and returns rendered
text per URL, either one at a time or as an asynchronous batch job that
is polled until it settles.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol

import httpx
import logfire
from tenacity import AsyncRetrying

from sitecorpus.config import get_settings
from sitecorpus.exceptions import DiscoveryError, FetchBatchError
from sitecorpus.models.fetch_models import BatchStatus, FetchedPage
from sitecorpus.services.http_retry import retry_config

ProgressCallback = Callable[[BatchStatus], Awaitable[None]]


class ContentFetcher(Protocol):
    """Protocol for URL discovery and content capture."""

    async def enumerate(self, seed_url: str) -> list[str]:
        """Discover candidate URLs reachable from the seed.

        Raises:
            DiscoveryError: If discovery fails
        """
        ...

    async def fetch_batch(self, urls: list[str]) -> str:
        """Submit URLs as one batch job and return its id.

        Raises:
            FetchBatchError: If the batch cannot be submitted
        """
        ...

    async def batch_status(self, batch_id: str) -> BatchStatus:
        """Current state of a batch job, with results once completed."""
        ...

    async def await_batch(
        self,
        batch_id: str,
        poll_interval: float,
        max_wait: float,
        on_progress: ProgressCallback | None = None,
    ) -> BatchStatus:
        """Poll a batch job until it completes.

        Raises:
            FetchBatchError: If the batch fails or does not finish in time
        """
        ...

    async def fetch_one(self, url: str) -> FetchedPage: ...


async def poll_batch(
    fetcher: ContentFetcher,
    batch_id: str,
    poll_interval: float,
    max_wait: float,
    on_progress: ProgressCallback | None = None,
) -> BatchStatus:
    """Bounded polling loop shared by fetcher implementations."""
    deadline = time.monotonic() + max_wait

    while True:
        status = await fetcher.batch_status(batch_id)

        if status.status == "completed":
            logfire.info(
                "Batch fetch completed",
                batch_id=batch_id,
                completed=status.completed,
                total=status.total,
                result_count=len(status.results),
            )
            return status
        if status.status == "failed":
            raise FetchBatchError(
                f"Batch {batch_id} failed: {status.error or 'unknown error'}",
                batch_id=batch_id,
            )

        if on_progress is not None:
            await on_progress(status)

        if time.monotonic() >= deadline:
            raise FetchBatchError(
                f"Batch {batch_id} did not complete within {max_wait:.0f}s",
                batch_id=batch_id,
            )
        await asyncio.sleep(poll_interval)


def _page_from_document(doc: dict[str, Any]) -> FetchedPage:
    metadata = doc.get("metadata") or {}
    language = metadata.get("language")
    return FetchedPage(
        url=metadata.get("sourceURL") or metadata.get("url"),
        text=doc.get("markdown"),
        http_status=metadata.get("statusCode"),
        title=metadata.get("title"),
        description=metadata.get("description"),
        language=language if isinstance(language, str) else None,
        og_image=metadata.get("ogImage"),
        error=metadata.get("error"),
    )


class FirecrawlContentFetcher:
    """Content fetcher backed by the Firecrawl v2 REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        retry: dict[str, Any] | None = None,
        map_limit: int = 5000,
    ):
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.firecrawl_api_key
        self._base_url = (base_url or settings.firecrawl_base_url).rstrip("/")
        self._timeout = timeout or settings.http_timeout_seconds
        self._client = client
        self._retry = retry or retry_config()
        self._map_limit = map_limit

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if not url.startswith("http"):
            url = f"{self._base_url}{url}"

        retrying = AsyncRetrying(**self._retry)
        if self._client is not None:
            return await retrying(self._send, self._client, method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await retrying(self._send, client, method, url, **kwargs)

    async def _send(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> dict[str, Any]:
        response = await client.request(method, url, headers=self._headers, **kwargs)
        response.raise_for_status()
        return response.json()

    async def enumerate(self, seed_url: str) -> list[str]:
        start_time = time.time()
        logfire.info("Mapping website", seed_url=seed_url)
        try:
            data = await self._request(
                "POST",
                "/v2/map",
                json={
                    "url": seed_url,
                    "includeSubdomains": False,
                    "limit": self._map_limit,
                },
            )
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to map {seed_url}: {e}") from e

        if not data.get("success", True):
            raise DiscoveryError(f"Failed to map {seed_url}: {data.get('error')}")

        links = [
            link if isinstance(link, str) else link.get("url")
            for link in data.get("links") or []
        ]
        links = [link for link in links if link]
        logfire.info(
            "Website mapped",
            seed_url=seed_url,
            url_count=len(links),
            response_time_ms=(time.time() - start_time) * 1000,
        )
        return links

    async def fetch_batch(self, urls: list[str]) -> str:
        try:
            data = await self._request(
                "POST",
                "/v2/batch/scrape",
                json={
                    "urls": urls,
                    "formats": ["markdown"],
                    "onlyMainContent": True,
                    "ignoreInvalidURLs": True,
                },
            )
        except httpx.HTTPError as e:
            raise FetchBatchError(f"Failed to start batch scrape: {e}") from e

        batch_id = data.get("id")
        if not data.get("success", True) or not batch_id:
            raise FetchBatchError(
                f"Failed to start batch scrape: {data.get('error') or 'no batch id returned'}"
            )
        logfire.info("Batch scrape started", batch_id=batch_id, url_count=len(urls))
        return batch_id

    async def batch_status(self, batch_id: str) -> BatchStatus:
        try:
            data = await self._request("GET", f"/v2/batch/scrape/{batch_id}")
        except httpx.HTTPError as e:
            raise FetchBatchError(
                f"Failed to check batch {batch_id}: {e}", batch_id=batch_id
            ) from e

        state = data.get("status")
        if state not in ("scraping", "completed", "failed"):
            return BatchStatus(
                batch_id=batch_id,
                status="failed",
                error=data.get("error") or "Invalid response: missing status field",
            )

        status = BatchStatus(
            batch_id=batch_id,
            status=state,
            completed=data.get("completed", 0),
            total=data.get("total", 0),
            error=data.get("error"),
        )
        if state != "completed":
            return status

        documents = list(data.get("data") or [])
        next_url = data.get("next")
        while next_url:
            try:
                page = await self._request("GET", next_url)
            except httpx.HTTPError as e:
                raise FetchBatchError(
                    f"Failed to page batch {batch_id} results: {e}", batch_id=batch_id
                ) from e
            documents.extend(page.get("data") or [])
            next_url = page.get("next")

        status.results = [_page_from_document(doc) for doc in documents]
        return status

    async def await_batch(
        self,
        batch_id: str,
        poll_interval: float,
        max_wait: float,
        on_progress: ProgressCallback | None = None,
    ) -> BatchStatus:
        return await poll_batch(self, batch_id, poll_interval, max_wait, on_progress)

    async def fetch_one(self, url: str) -> FetchedPage:
        try:
            data = await self._request(
                "POST",
                "/v2/scrape",
                json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
            )
        except httpx.HTTPStatusError as e:
            return FetchedPage(
                url=url,
                text=None,
                http_status=e.response.status_code,
                error=str(e),
            )
        except httpx.HTTPError as e:
            return FetchedPage(url=url, text=None, error=str(e))

        page = _page_from_document(data.get("data") or {})
        page.url = page.url or url
        return page
