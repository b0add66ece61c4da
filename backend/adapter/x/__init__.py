"""
X (Twitter) API Adapter for the mention leaderboard.

Fetches single pages of mentions (posts plus their embedded author records)
from the Twitter API v2 Recent Search endpoint. Multi-page fetches are
driven by PaginatedFetcher (see pagination.py).
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import requests
from dotenv import load_dotenv

from ..models import Author, Mention, SearchPage
from ..rate_limiter import RateLimiter, RateLimitConfig

# Import monitoring (lazy to avoid circular imports)
_monitor = None

def _get_monitor():
    global _monitor
    if _monitor is None:
        try:
            from monitoring import monitor
            _monitor = monitor
        except ImportError:
            _monitor = None
    return _monitor

load_dotenv()

logger = logging.getLogger(__name__)


class XAdapterError(Exception):
    """Base exception for XAdapter errors."""
    pass


class XAuthenticationError(XAdapterError):
    """Raised when authentication fails."""
    pass


class XRateLimitError(XAdapterError):
    """Raised when rate limit is exceeded."""
    def __init__(self, message: str, reset_time: int = None, remaining: int = None, limit: int = None):
        super().__init__(message)
        self.reset_time = reset_time  # Unix timestamp when limit resets
        self.remaining = remaining    # Remaining requests in window
        self.limit = limit            # Total requests allowed in window


class XAPIError(XAdapterError):
    """Raised when API returns an error."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


def _int_or_none(value) -> Optional[int]:
    return int(value) if value else None


class XAdapter:
    """
    Adapter for X (Twitter) API v2 recent search.

    Usage:
        adapter = XAdapter()  # Uses X_BEARER_TOKEN env var
        page = adapter.search_page("@openservai")
        page = adapter.search_page("@openservai", next_token=page.next_token)
    """

    BASE_URL = "https://api.x.com/2"
    SEARCH_PATH = "/tweets/search/recent"
    MAX_RESULTS = 100

    # Internal rate limit - set high to let X API handle actual limiting
    # X API will return 429 when you hit their real limit
    DEFAULT_RATE_LIMIT = RateLimitConfig(
        requests_per_window=1000,
        window_seconds=60
    )

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        skip_rate_limit: bool = False,
        request_timeout: float = 15
    ):
        """
        Initialize the X adapter.

        Args:
            bearer_token: X API bearer token (or set X_BEARER_TOKEN env var)
            rate_limiter: Optional shared rate limiter
            skip_rate_limit: If True, skip internal rate limiting (X API still enforces its own)
            request_timeout: Per-request timeout in seconds
        """
        self._skip_rate_limit = skip_rate_limit
        self.request_timeout = request_timeout
        self.bearer_token = bearer_token or os.environ.get("X_BEARER_TOKEN")

        if not self.bearer_token:
            logger.warning("No X_BEARER_TOKEN provided - adapter will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {
            "Authorization": f"Bearer {self.bearer_token}" if self.bearer_token else "",
        }

        self.rate_limiter = rate_limiter or RateLimiter()
        if "x_search" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("x_search", self.DEFAULT_RATE_LIMIT)

        # Track rate limit status from API responses
        self._rate_limit_status = {
            "limit": None,
            "remaining": None,
            "reset_time": None,
            "last_updated": None
        }

    @property
    def is_configured(self) -> bool:
        """Check if adapter is properly configured with credentials."""
        return self._is_configured

    def get_rate_limit_status(self) -> dict:
        """
        Get the current rate limit status from the last API response.

        Returns:
            Dict with limit, remaining, reset_time, and seconds_until_reset
        """
        status = self._rate_limit_status.copy()

        if status["reset_time"]:
            now = datetime.now(timezone.utc)
            reset_dt = datetime.fromtimestamp(status["reset_time"], tz=timezone.utc)
            status["seconds_until_reset"] = max(0, int((reset_dt - now).total_seconds()))
            status["reset_time_str"] = reset_dt.strftime("%H:%M:%S UTC")
        else:
            status["seconds_until_reset"] = None
            status["reset_time_str"] = None

        return status

    def _update_rate_limit_status(self, response) -> None:
        """Update rate limit status from response headers."""
        headers = response.headers

        reset = headers.get("x-rate-limit-reset")
        remaining = headers.get("x-rate-limit-remaining")
        limit = headers.get("x-rate-limit-limit")

        if reset:
            self._rate_limit_status["reset_time"] = int(reset)
        if remaining:
            self._rate_limit_status["remaining"] = int(remaining)
        if limit:
            self._rate_limit_status["limit"] = int(limit)

        self._rate_limit_status["last_updated"] = datetime.now(timezone.utc)

        if self._rate_limit_status["remaining"] is not None:
            remaining = self._rate_limit_status["remaining"]
            if remaining <= 5:
                logger.warning(f"X API rate limit nearly exhausted: {remaining} requests remaining")
            elif remaining <= 20:
                logger.info(f"X API rate limit: {remaining} requests remaining")

    def _parse_mention(self, tweet: dict) -> Mention:
        """Convert a raw tweet record to a Mention."""
        created_at = tweet.get("created_at")
        if created_at:
            timestamp = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        else:
            timestamp = datetime.now(timezone.utc)

        return Mention(
            id=str(tweet["id"]),
            author_id=str(tweet.get("author_id", "")),
            created_at=timestamp
        )

    def _parse_author(self, user: dict) -> Author:
        """Convert an expanded user record to an Author."""
        return Author(
            id=str(user["id"]),
            handle=user.get("username", "unknown"),
            display_name=user.get("name") or "",
            verified=bool(user.get("verified", False))
        )

    def build_search_params(
        self,
        query: str,
        since_id: Optional[str] = None,
        next_token: Optional[str] = None
    ) -> dict:
        """Build query parameters for one recent-search page request."""
        params = {
            "query": query,
            "max_results": self.MAX_RESULTS,
            "tweet.fields": "created_at,author_id,public_metrics",
            "expansions": "author_id",
            "user.fields": "username,name,verified"
        }
        if since_id:
            params["since_id"] = since_id
        if next_token:
            params["next_token"] = next_token
        return params

    def search_page(
        self,
        query: str,
        since_id: Optional[str] = None,
        next_token: Optional[str] = None
    ) -> SearchPage:
        """
        Fetch one page of recent posts matching a query.

        Args:
            query: Search query (e.g., "@openservai")
            since_id: Only return posts newer than this post ID
            next_token: Continuation cursor from the previous page

        Returns:
            SearchPage with mentions, expanded authors and the next cursor

        Raises:
            XAuthenticationError: If not configured with bearer token
            XRateLimitError: If rate limit exceeded
            XAPIError: If API returns an error
        """
        if not self._is_configured:
            raise XAuthenticationError("X adapter not configured - set X_BEARER_TOKEN")

        if not self._skip_rate_limit:
            self.rate_limiter.wait_if_needed("x_search")

        params = self.build_search_params(query, since_id=since_id, next_token=next_token)
        url = f"{self.BASE_URL}{self.SEARCH_PATH}"

        try:
            start_time_ms = time.time() * 1000
            response = requests.get(
                url,
                headers=self.headers,
                params=params,
                timeout=self.request_timeout
            )
            latency_ms = (time.time() * 1000) - start_time_ms

            # Always update rate limit status from headers (even on errors)
            self._update_rate_limit_status(response)

            mon = _get_monitor()
            if mon:
                is_error = response.status_code >= 400
                mon.metrics.record_x_api_call(latency_ms, error=is_error)
                if is_error:
                    from monitoring import EventType
                    mon.activity.add_event(EventType.ERROR, query=query, error=f"X API {response.status_code}")

            if response.status_code == 401:
                raise XAuthenticationError("Invalid or expired bearer token")
            elif response.status_code == 429:
                raise XRateLimitError(
                    "X API rate limit exceeded",
                    reset_time=_int_or_none(response.headers.get("x-rate-limit-reset")),
                    remaining=_int_or_none(response.headers.get("x-rate-limit-remaining")),
                    limit=_int_or_none(response.headers.get("x-rate-limit-limit"))
                )
            elif response.status_code >= 400:
                raise XAPIError(
                    f"X API error: {response.status_code}",
                    status_code=response.status_code,
                    response_text=response.text
                )

            data = response.json()
            meta = data.get("meta") or {}

            mentions = [self._parse_mention(tweet) for tweet in data.get("data") or []]
            authors = [
                self._parse_author(user)
                for user in (data.get("includes") or {}).get("users", [])
            ]

            logger.debug(
                f"Fetched page for '{query}': {len(mentions)} mentions, "
                f"{len(authors)} authors, next_token={'yes' if meta.get('next_token') else 'no'}"
            )

            return SearchPage(
                mentions=mentions,
                authors=authors,
                next_token=meta.get("next_token"),
                result_count=meta.get("result_count", len(mentions))
            )

        except requests.exceptions.Timeout:
            raise XAPIError("X API request timed out")
        except requests.exceptions.ConnectionError:
            raise XAPIError("Failed to connect to X API")
        except (XAuthenticationError, XRateLimitError, XAPIError):
            raise
        except Exception as e:
            raise XAPIError(f"Unexpected error: {e}")


from .pagination import FetchFailure, FetchResult, FetchTimeout, PaginatedFetcher  # noqa: E402


__all__ = [
    "XAdapter",
    "XAdapterError",
    "XAuthenticationError",
    "XRateLimitError",
    "XAPIError",
    "PaginatedFetcher",
    "FetchResult",
    "FetchFailure",
    "FetchTimeout",
    "Mention",  # Re-export for convenience
    "Author",
    "SearchPage",
]
