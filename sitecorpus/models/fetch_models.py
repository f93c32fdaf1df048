"""Models for content fetcher results."""

from dataclasses import dataclass, field
from typing import List, Literal

BatchState = Literal["scraping", "completed", "failed"]


@dataclass
class FetchedPage:
    """One result of a content fetch, complete or not."""

    url: str | None
    text: str | None
    http_status: int | None = None
    title: str | None = None
    description: str | None = None
    language: str | None = None
    og_image: str | None = None
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        """URL present and text non-empty after trimming."""
        return bool(self.url) and bool(self.text and self.text.strip())


@dataclass
class BatchStatus:
    """Snapshot of a batch fetch job."""

    batch_id: str
    status: BatchState
    completed: int = 0
    total: int = 0
    results: List[FetchedPage] = field(default_factory=list)
    error: str | None = None
