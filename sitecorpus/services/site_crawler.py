"""Self-hosted content fetcher that crawls a site with httpx and BeautifulSoup.

Used when no hosted fetcher is configured. Discovery is a breadth-first
same-domain crawl; batches run as in-process asyncio tasks, so a batch id
does not survive a process restart and recovery reports it as failed.

Components:
- HtmlPageParser: extract text, title, description and links from HTML
- SiteCrawlerFetcher: ContentFetcher implementation coordinating the crawl
"""

import asyncio
import re
import uuid
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
import logfire
from bs4 import BeautifulSoup
from tenacity import AsyncRetrying

from sitecorpus.config import get_settings
from sitecorpus.constants import INDEX_CONCURRENCY, POLITE_REQUEST_DELAY_SECONDS
from sitecorpus.exceptions import DiscoveryError, FetchBatchError
from sitecorpus.models.fetch_models import BatchStatus, FetchedPage
from sitecorpus.services import domain_resolver
from sitecorpus.services.content_fetcher import ProgressCallback, poll_batch
from sitecorpus.services.http_retry import retry_config


class HtmlPageParser:
    """Parse HTML pages to extract text, metadata and links."""

    # Extensions to skip when crawling (binary or non-page resources)
    _NON_HTML_EXTENSIONS = frozenset(
        (
            ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
            ".zip", ".tar", ".gz", ".css", ".js", ".json", ".xml", ".rss",
            ".mp3", ".mp4", ".webm", ".woff", ".woff2", ".ttf", ".eot",
        )
    )

    def parse(self, html: str, current_url: str) -> dict[str, Any]:
        """Parse HTML into text, title, description, language and links.

        Args:
            html: Raw HTML content
            current_url: URL the HTML was fetched from (for resolving links)

        Returns:
            Dict with keys text, title, description, language, og_image, links
        """
        soup = BeautifulSoup(html, "html.parser")

        title = soup.title.string.strip() if soup.title and soup.title.string else None
        description = self._meta(soup, name="description")
        og_image = self._meta(soup, property="og:image")
        language = soup.html.get("lang") if soup.html else None

        links = self._extract_links(soup, current_url)

        for tag in soup(["script", "style", "nav", "footer", "noscript"]):
            tag.decompose()

        # Keep line structure so change detection sees paragraphs
        lines = (line.strip() for line in soup.get_text("\n").splitlines())
        text = "\n".join(line for line in lines if line)
        text = re.sub(r"[ \t]+", " ", text)

        return {
            "text": text,
            "title": title,
            "description": description,
            "language": language,
            "og_image": og_image,
            "links": links,
        }

    @staticmethod
    def _meta(soup: BeautifulSoup, **attrs: str) -> str | None:
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
        return None

    def _extract_links(self, soup: BeautifulSoup, current_url: str) -> list[str]:
        seen: set[str] = set()
        out: list[str] = []

        for a in soup.find_all("a", href=True):
            href = (a["href"] or "").strip()
            if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
                continue

            absolute = urljoin(current_url, href)
            if urlparse(absolute).scheme not in ("http", "https"):
                continue

            path_lower = urlparse(absolute).path.lower()
            if any(path_lower.endswith(ext) for ext in self._NON_HTML_EXTENSIONS):
                continue

            normalized = domain_resolver.normalize_url(absolute)
            if normalized not in seen:
                seen.add(normalized)
                out.append(normalized)

        return out


class SiteCrawlerFetcher:
    """ContentFetcher that crawls and fetches pages directly over HTTP."""

    DEFAULT_HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }

    def __init__(
        self,
        max_pages: int | None = None,
        timeout: float | None = None,
        concurrency: int = INDEX_CONCURRENCY,
        request_delay: float = POLITE_REQUEST_DELAY_SECONDS,
        parser: HtmlPageParser | None = None,
        client: httpx.AsyncClient | None = None,
        retry: dict[str, Any] | None = None,
    ):
        settings = get_settings()
        self._max_pages = max_pages or settings.crawler_max_pages
        self._timeout = timeout or settings.http_timeout_seconds
        self._concurrency = concurrency
        self._request_delay = request_delay
        self._parser = parser or HtmlPageParser()
        self._client = client
        self._retry = retry or retry_config(max_attempts=3)
        self._batches: dict[str, BatchStatus] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    async def _get(self, url: str) -> httpx.Response:
        async def send(client: httpx.AsyncClient) -> httpx.Response:
            response = await client.get(url)
            # Only transient statuses are raised for retry; 404/410 are results
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        retrying = AsyncRetrying(**self._retry)
        if self._client is not None:
            return await retrying(send, self._client)
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            headers=self.DEFAULT_HEADERS,
        ) as client:
            return await retrying(send, client)

    async def fetch_one(self, url: str) -> FetchedPage:
        try:
            response = await self._get(url)
        except httpx.HTTPStatusError as e:
            return FetchedPage(
                url=url, text=None, http_status=e.response.status_code, error=str(e)
            )
        except httpx.HTTPError as e:
            return FetchedPage(url=url, text=None, error=f"Failed to fetch {url}: {e}")

        if response.status_code >= 400:
            return FetchedPage(
                url=url,
                text=None,
                http_status=response.status_code,
                error=f"HTTP {response.status_code}",
            )

        parsed = self._parser.parse(response.text, str(response.url))
        logfire.debug(
            "Page fetched (crawler)",
            url=url,
            status_code=response.status_code,
            content_length=len(parsed["text"]),
        )
        return FetchedPage(
            url=url,
            text=parsed["text"],
            http_status=response.status_code,
            title=parsed["title"],
            description=parsed["description"],
            language=parsed["language"],
            og_image=parsed["og_image"],
        )

    async def enumerate(self, seed_url: str) -> list[str]:
        domain = domain_resolver.base_domain(seed_url)
        start = domain_resolver.normalize_url(seed_url)
        to_visit: list[str] = [start]
        queued: set[str] = {start}
        found: list[str] = []

        logfire.info("Crawling website", seed_url=start, max_pages=self._max_pages)

        while to_visit and len(found) < self._max_pages:
            current = to_visit.pop(0)
            try:
                response = await self._get(current)
            except httpx.HTTPError as e:
                if not found:
                    raise DiscoveryError(f"Failed to crawl {seed_url}: {e}") from e
                logfire.warning("Skipping page after fetch error", url=current, error=str(e))
                continue

            if response.status_code >= 400:
                if not found and current == start:
                    raise DiscoveryError(
                        f"Failed to crawl {seed_url}: HTTP {response.status_code}"
                    )
                continue

            found.append(current)
            parsed = self._parser.parse(response.text, str(response.url))
            for link in parsed["links"]:
                if link not in queued and domain_resolver.is_same_domain(link, domain):
                    queued.add(link)
                    to_visit.append(link)

            if to_visit and self._request_delay:
                await asyncio.sleep(self._request_delay)

        logfire.info("Website crawled", seed_url=start, url_count=len(found))
        return found

    async def fetch_batch(self, urls: list[str]) -> str:
        if not urls:
            raise FetchBatchError("Cannot start a batch with no URLs")
        batch_id = f"crawl-{uuid.uuid4()}"
        self._batches[batch_id] = BatchStatus(
            batch_id=batch_id, status="scraping", total=len(urls)
        )
        self._tasks[batch_id] = asyncio.create_task(self._run_batch(batch_id, urls))
        logfire.info("Crawler batch started", batch_id=batch_id, url_count=len(urls))
        return batch_id

    async def _run_batch(self, batch_id: str, urls: list[str]) -> None:
        status = self._batches[batch_id]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def fetch(url: str) -> FetchedPage:
            async with semaphore:
                page = await self.fetch_one(url)
                status.completed += 1
                return page

        try:
            status.results = list(await asyncio.gather(*(fetch(u) for u in urls)))
            status.status = "completed"
        except Exception as e:
            logfire.error(
                "Crawler batch failed",
                batch_id=batch_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            status.status = "failed"
            status.error = str(e)
        finally:
            self._tasks.pop(batch_id, None)

    async def batch_status(self, batch_id: str) -> BatchStatus:
        status = self._batches.get(batch_id)
        if status is None:
            return BatchStatus(
                batch_id=batch_id,
                status="failed",
                error="Unknown batch (crawler batches do not survive restarts)",
            )
        return status

    async def await_batch(
        self,
        batch_id: str,
        poll_interval: float,
        max_wait: float,
        on_progress: ProgressCallback | None = None,
    ) -> BatchStatus:
        # In-process batches settle quickly; poll at most once a second
        status = await poll_batch(
            self, batch_id, min(poll_interval, 1.0), max_wait, on_progress
        )
        self._batches.pop(batch_id, None)
        return status
