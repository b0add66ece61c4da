"""
Rate limiter for upstream X API requests.

Sliding window limiting per request category.
Thread-safe: refreshes run the blocking fetch loop in a worker thread while
the API process keeps serving reads.
"""

from __future__ import annotations

import time
import logging
import threading
from typing import Dict, List
from dataclasses import dataclass
from collections import defaultdict

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for a specific rate limit."""
    requests_per_window: int
    window_seconds: int


class RateLimiter:
    """
    Rate limiter keyed by request category (e.g. "x_search").

    Features:
    - Sliding window per category
    - Blocking wait_if_needed() for synchronous adapters
    - Shared state across adapters and threads
    """

    def __init__(self):
        self._lock = threading.Lock()

        # category -> request timestamps inside the current window
        self.sliding_windows: Dict[str, List[float]] = defaultdict(list)

        self.configs: Dict[str, RateLimitConfig] = {}

    def configure_limit(self, category: str, config: RateLimitConfig) -> None:
        """Configure rate limiting for a specific category."""
        with self._lock:
            self.configs[category] = config

        logger.info(
            f"Configured rate limit for {category}: "
            f"{config.requests_per_window} req/{config.window_seconds}s"
        )

    def wait_if_needed(self, category: str = "default") -> float:
        """
        Block until a request in the given category is allowed.

        Args:
            category: Rate limit category

        Returns:
            Seconds spent waiting
        """
        config = self.configs.get(category)
        if config is None:
            logger.warning(f"No rate limit configured for category '{category}', allowing request")
            return 0.0

        with self._lock:
            wait_time = self._reserve_slot(category, config)

        if wait_time > 0:
            logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds")
            time.sleep(wait_time)
        return wait_time

    def _reserve_slot(self, category: str, config: RateLimitConfig) -> float:
        """Sliding window: record the request and return how long to wait for it."""
        current_time = time.time()

        window_times = self.sliding_windows[category]
        window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]

        wait_time = 0.0
        if len(window_times) >= config.requests_per_window:
            # The request runs once the oldest one in the window expires
            oldest_time = min(window_times)
            wait_time = max(0.0, config.window_seconds - (current_time - oldest_time))
            window_times.remove(oldest_time)

        window_times.append(current_time + wait_time)
        return wait_time

    def get_remaining_requests(self, category: str) -> float:
        """Estimated requests still allowed in the current window for a category."""
        config = self.configs.get(category)
        if config is None:
            return float('inf')

        with self._lock:
            current_time = time.time()
            recent_times = [
                t for t in self.sliding_windows[category]
                if current_time - t < config.window_seconds
            ]
            return max(0, config.requests_per_window - len(recent_times))


def create_x_api_limiter() -> RateLimiter:
    """Create a rate limiter configured for X API recent search."""
    limiter = RateLimiter()

    # Recent search, app-only auth: 450 requests per 15 minutes
    limiter.configure_limit("x_search", RateLimitConfig(
        requests_per_window=450,
        window_seconds=900
    ))

    return limiter


__all__ = ["RateLimiter", "RateLimitConfig", "create_x_api_limiter"]
