"""
Monitoring and observability module for the mention leaderboard.

Provides real-time metrics and insights for:
- System health
- X API usage and rate limits
- Refresh pipeline status (full / incremental / skipped / failed)
- Cache hit rates on the read path
- Activity feed
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
from collections import deque
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of system events."""
    REFRESH_STARTED = "refresh_started"
    REFRESH_COMPLETED = "refresh_completed"
    REFRESH_SKIPPED = "refresh_skipped"
    REFRESH_FAILED = "refresh_failed"
    PAGE_FETCHED = "page_fetched"
    PERSIST_FAILED = "persist_failed"
    CACHE_MISS = "cache_miss"
    ERROR = "error"


@dataclass
class SystemEvent:
    """A recorded system event."""
    timestamp: datetime
    event_type: EventType
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "details": self.details,
            "age_seconds": (datetime.now(timezone.utc) - self.timestamp).total_seconds()
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Tracks:
    - X API call counts, latencies, error rates
    - Refreshes by kind and their durations
    - Cache hits/misses on reads
    """

    def __init__(self):
        self._start_time = time.time()

        self._cache_hits = 0
        self._cache_misses = 0

        self._x_api_calls = 0
        self._x_api_errors = 0
        self._x_api_latencies: List[float] = []

        self._refreshes: Dict[str, int] = {"full": 0, "incremental": 0}
        self._refresh_failures = 0
        self._refresh_skipped = 0
        self._refresh_durations: List[float] = []
        self._mentions_merged = 0
        self._persist_failures = 0

    def record_cache_hit(self) -> None:
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        self._cache_misses += 1

    def record_x_api_call(self, latency_ms: float, error: bool = False) -> None:
        """Record an X API call."""
        self._x_api_calls += 1
        self._x_api_latencies.append(latency_ms)
        if len(self._x_api_latencies) > 1000:
            self._x_api_latencies = self._x_api_latencies[-1000:]
        if error:
            self._x_api_errors += 1

    def record_refresh(self, kind: str, duration_ms: float, new_mentions: int) -> None:
        """Record a successful refresh."""
        self._refreshes[kind] = self._refreshes.get(kind, 0) + 1
        self._mentions_merged += new_mentions
        self._refresh_durations.append(duration_ms)
        if len(self._refresh_durations) > 1000:
            self._refresh_durations = self._refresh_durations[-1000:]

    def record_refresh_failure(self) -> None:
        self._refresh_failures += 1

    def record_refresh_skipped(self) -> None:
        self._refresh_skipped += 1

    def record_persist_failure(self) -> None:
        self._persist_failures += 1

    def _calculate_percentiles(self, values: List[float]) -> Dict[str, float]:
        """Calculate p50, p95, p99 percentiles."""
        if not values:
            return {"p50": 0, "p95": 0, "p99": 0, "avg": 0}

        sorted_values = sorted(values)
        n = len(sorted_values)

        return {
            "p50": sorted_values[int(n * 0.50)],
            "p95": sorted_values[int(n * 0.95)],
            "p99": sorted_values[int(n * 0.99)],
            "avg": sum(values) / n,
        }

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        uptime = time.time() - self._start_time

        total_cache = self._cache_hits + self._cache_misses
        cache_hit_rate = self._cache_hits / total_cache if total_cache > 0 else 0
        x_api_error_rate = self._x_api_errors / self._x_api_calls if self._x_api_calls > 0 else 0

        return {
            "uptime_seconds": int(uptime),
            "uptime_human": self._format_duration(uptime),

            "cache": {
                "hits": self._cache_hits,
                "misses": self._cache_misses,
                "hit_rate": f"{cache_hit_rate:.1%}",
            },

            "x_api": {
                "calls": self._x_api_calls,
                "errors": self._x_api_errors,
                "error_rate": f"{x_api_error_rate:.1%}",
                "latency_ms": self._calculate_percentiles(self._x_api_latencies),
            },

            "refresh": {
                "by_kind": dict(self._refreshes),
                "failures": self._refresh_failures,
                "skipped": self._refresh_skipped,
                "persist_failures": self._persist_failures,
                "mentions_merged": self._mentions_merged,
                "duration_ms": self._calculate_percentiles(self._refresh_durations),
            },
        }

    def _format_duration(self, seconds: float) -> str:
        """Format duration as human-readable string."""
        if seconds < 60:
            return f"{int(seconds)}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        else:
            hours = int(seconds // 3600)
            minutes = int((seconds % 3600) // 60)
            return f"{hours}h {minutes}m"


class ActivityFeed:
    """
    Real-time activity feed for system events.

    Stores recent events for live monitoring.
    """

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)

    def add_event(self, event_type: EventType, **details) -> None:
        """Add an event to the feed."""
        self._events.append(SystemEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            details=details
        ))

    def get_recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Dict]:
        """Get recent events, most recent first, optionally filtered by type."""
        events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]

        events = sorted(events, key=lambda e: e.timestamp, reverse=True)
        return [e.to_dict() for e in events[:limit]]

    def get_event_counts(self, since_minutes: int = 5) -> Dict[str, int]:
        """Get event counts by type since N minutes ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)

        counts: Dict[str, int] = {}
        for event in self._events:
            if event.timestamp >= cutoff:
                key = event.event_type.value
                counts[key] = counts.get(key, 0) + 1

        return counts


class SystemMonitor:
    """
    Central monitoring hub.

    Aggregates metrics from all components.
    """

    def __init__(self):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed()
        self._component_status: Dict[str, Dict[str, Any]] = {}

    def set_component_status(
        self,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status for a component."""
        self._component_status[component] = {
            "status": status,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "details": details or {}
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall system health status."""
        statuses = [c.get("status", "unknown") for c in self._component_status.values()]

        if statuses and all(s == "healthy" for s in statuses):
            overall = "healthy"
        elif any(s == "error" for s in statuses):
            overall = "degraded"
        elif any(s == "warning" for s in statuses):
            overall = "warning"
        else:
            overall = "unknown"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": self._component_status,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Get all data needed for a monitoring dashboard."""
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_5m": self.activity.get_event_counts(since_minutes=5),
        }


# Global monitor instance
monitor = SystemMonitor()


def get_rate_limit_status(rate_limiter) -> Dict[str, Any]:
    """
    Get detailed rate limit status from a RateLimiter instance.

    Args:
        rate_limiter: RateLimiter instance

    Returns:
        Detailed rate limit status for all configured categories
    """
    status = {}

    for category, config in rate_limiter.configs.items():
        remaining = rate_limiter.get_remaining_requests(category)
        used = config.requests_per_window - remaining
        usage_pct = (used / config.requests_per_window * 100) if config.requests_per_window > 0 else 0

        status[category] = {
            "limit": config.requests_per_window,
            "window_seconds": config.window_seconds,
            "remaining": remaining,
            "used": used,
            "usage_percent": f"{usage_pct:.1f}%",
            "status": "ok" if usage_pct < 80 else ("warning" if usage_pct < 95 else "critical"),
        }

    return status


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "EventType",
    "SystemEvent",
    "monitor",
    "get_rate_limit_status",
]
