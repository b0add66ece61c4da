"""
Paginated recent-search fetching.

PaginatedFetcher walks the next_token chain of the recent search endpoint
and returns the complete result of one fetch window, or raises FetchFailure.
Partial results are never returned.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models import Author, Mention
from . import XAdapter, XAdapterError, _get_monitor

logger = logging.getLogger(__name__)


class FetchFailure(Exception):
    """Raised when a paginated fetch aborts; pages already retrieved are discarded."""
    def __init__(self, message: str, pages_fetched: int = 0, cause: Optional[Exception] = None):
        super().__init__(message)
        self.pages_fetched = pages_fetched
        self.cause = cause


class FetchTimeout(FetchFailure):
    """Raised when a fetch exceeds its wall-clock budget."""
    pass


class FetchResult(BaseModel):
    """Everything retrieved by one fetch, in fetch order (not deduplicated)."""
    mentions: List[Mention] = Field(default_factory=list)
    authors: List[Author] = Field(default_factory=list)
    pages: int = Field(default=0, description="Number of pages requested")


class PaginatedFetcher:
    """
    Fetches every page of a recent-search query.

    Usage:
        fetcher = PaginatedFetcher(XAdapter(), page_delay=1.0)
        result = fetcher.fetch("@openservai")                   # full window
        result = fetcher.fetch("@openservai", since_id="1790")  # incremental
    """

    def __init__(
        self,
        adapter: XAdapter,
        page_delay: float = 1.0,
        max_pages: int = 100,
        max_duration: Optional[float] = 300.0
    ):
        """
        Args:
            adapter: XAdapter used for single page requests
            page_delay: Seconds to sleep between pages when a cursor is returned
            max_pages: Abort with FetchFailure past this many pages
            max_duration: Abort with FetchTimeout once this many seconds have elapsed (None = unbounded)
        """
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self.adapter = adapter
        self.page_delay = page_delay
        self.max_pages = max_pages
        self.max_duration = max_duration

    def fetch(self, query: str, since_id: Optional[str] = None) -> FetchResult:
        """
        Fetch all pages for a query.

        Args:
            query: Search query (e.g., "@openservai")
            since_id: Lower-bound post ID for incremental fetches

        Returns:
            FetchResult with concatenated mentions and authors

        Raises:
            FetchFailure: If any page request fails or the page cap is exceeded
            FetchTimeout: If the fetch exceeds max_duration
        """
        mentions: List[Mention] = []
        authors: List[Author] = []
        next_token: Optional[str] = None
        pages = 0
        started = time.monotonic()

        mode = f"since_id={since_id}" if since_id else "full"
        logger.info(f"Fetching mentions for '{query}' ({mode})")

        while True:
            if pages >= self.max_pages:
                raise FetchFailure(
                    f"Fetch for '{query}' exceeded {self.max_pages} pages",
                    pages_fetched=pages
                )

            try:
                page = self.adapter.search_page(query, since_id=since_id, next_token=next_token)
            except XAdapterError as e:
                logger.error(f"Page {pages + 1} failed for '{query}': {e}")
                raise FetchFailure(
                    f"Fetch for '{query}' failed on page {pages + 1}: {e}",
                    pages_fetched=pages,
                    cause=e
                ) from e

            pages += 1
            mentions.extend(page.mentions)
            authors.extend(page.authors)
            logger.info(f"Page {pages}: found {len(page.mentions)} mentions")

            mon = _get_monitor()
            if mon:
                from monitoring import EventType
                mon.activity.add_event(
                    EventType.PAGE_FETCHED,
                    query=query,
                    page=pages,
                    mentions=len(page.mentions)
                )

            next_token = page.next_token
            if not next_token:
                break

            if self.max_duration is not None and time.monotonic() - started >= self.max_duration:
                raise FetchTimeout(
                    f"Fetch for '{query}' exceeded {self.max_duration:.0f}s budget after {pages} pages",
                    pages_fetched=pages
                )

            # Respect upstream rate limits between pages
            time.sleep(self.page_delay)

        logger.info(f"Pagination complete for '{query}': {len(mentions)} mentions over {pages} pages")
        return FetchResult(mentions=mentions, authors=authors, pages=pages)


__all__ = ["PaginatedFetcher", "FetchResult", "FetchFailure", "FetchTimeout"]
