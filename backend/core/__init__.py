"""
Core services for the mention leaderboard backend.
- RefreshCoordinator: single-flight full/incremental refreshes of the snapshot
- RefreshScheduler: background task that triggers refreshes periodically
- QueryService: read API (leaderboard, personal stats) served from the snapshot

Architecture:
- The snapshot is an immutable value; a refresh builds a new one and swaps it in
- Only the coordinator replaces the snapshot, and only one refresh runs at a time
- Reads answer from memory and only block on I/O when the snapshot is stale
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from adapter.models import Mention
from adapter.x import FetchFailure, FetchResult, PaginatedFetcher
from aggregator import (
    AggregateEntry, PersonalStats, LEADERBOARD_SIZE,
    aggregate_mentions, compute_personal_stats, discover_authors,
    format_full_leaderboard, format_leaderboard, format_personal_stats, normalize_handle
)
from services import PersistenceFailure, Snapshot, SnapshotStore

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

logger = logging.getLogger(__name__)


class RefreshState(str, Enum):
    """State of the refresh gate."""
    IDLE = "idle"
    REFRESHING = "refreshing"


class RefreshKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class UnknownTargetError(ValueError):
    """Raised when a read names a handle this process does not track."""
    pass


def _id_key(mention_id: str) -> Tuple[int, str]:
    # Post IDs are numeric snowflakes; compare by length first so "99" < "100"
    return (len(mention_id), mention_id) if mention_id.isdigit() else (0, mention_id)


def _recency(mention: Mention) -> Tuple[datetime, Tuple[int, str]]:
    return (mention.created_at, _id_key(mention.id))


def _newest(mentions: List[Mention]) -> Optional[Mention]:
    return max(mentions, key=_recency, default=None)


def _newest_first(mentions: List[Mention]) -> List[Mention]:
    # Stable, so equal timestamps and ids keep fetch order
    return sorted(mentions, key=_recency, reverse=True)


def _dedupe(mentions: List[Mention], seen: Optional[Set[str]] = None) -> List[Mention]:
    """Drop mentions whose id was already seen, keeping the first occurrence."""
    seen = set(seen or ())
    unique = []
    for mention in mentions:
        if mention.id not in seen:
            seen.add(mention.id)
            unique.append(mention)
    return unique


class RefreshCoordinator:
    """
    Decides between full and incremental refreshes and applies them.

    Single-flight: a refresh requested while another is running returns the
    current snapshot immediately instead of waiting.

    Usage:
        coordinator = RefreshCoordinator(fetcher, store, "openservai")
        coordinator.load()                       # restore persisted snapshot
        snapshot = await coordinator.refresh()   # full or incremental per policy
    """

    def __init__(
        self,
        fetcher: PaginatedFetcher,
        store: SnapshotStore,
        target_handle: str,
        full_refresh_interval: float = 3600,
        max_mentions: int = 10000
    ):
        """
        Initialize the coordinator.

        Args:
            fetcher: PaginatedFetcher used for upstream fetches
            store: SnapshotStore for persistence and staleness checks
            target_handle: Tracked handle (with or without @)
            full_refresh_interval: Seconds after which a full rescan is forced
            max_mentions: Retention cap; oldest mentions beyond it are dropped
        """
        self.fetcher = fetcher
        self.store = store
        self.target_handle = target_handle.strip().lstrip("@")
        self.full_refresh_interval = timedelta(seconds=full_refresh_interval)
        self.max_mentions = max_mentions

        self._snapshot = Snapshot.empty(self.target_handle)
        self._gate = threading.Lock()
        self._refresh_count = 0
        self._last_error: Optional[str] = None
        self._last_refresh_kind: Optional[RefreshKind] = None

    @property
    def snapshot(self) -> Snapshot:
        """Current snapshot (read-only; replaced wholesale on refresh)."""
        return self._snapshot

    @property
    def query(self) -> str:
        return f"@{self.target_handle}"

    @property
    def state(self) -> RefreshState:
        return RefreshState.REFRESHING if self._gate.locked() else RefreshState.IDLE

    @property
    def is_refreshing(self) -> bool:
        return self._gate.locked()

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    def load(self) -> Snapshot:
        """Replace the empty startup snapshot with the persisted one, if any."""
        loaded = self.store.load()
        if loaded is None:
            return self._snapshot

        if normalize_handle(loaded.target_handle) != normalize_handle(self.target_handle):
            logger.warning(
                f"Persisted snapshot tracks @{loaded.target_handle}, not @{self.target_handle}; ignoring it"
            )
            return self._snapshot

        # The stored aggregate is derived data; rebuild it from mentions and authors
        aggregate = aggregate_mentions(loaded.mentions, loaded.authors)
        total_mentions = len(loaded.mentions)
        if aggregate != loaded.aggregate or loaded.total_mentions != total_mentions:
            logger.warning(
                f"Persisted snapshot for @{loaded.target_handle} was inconsistent "
                f"(stored total {loaded.total_mentions}, {len(loaded.aggregate)} users); "
                f"rebuilt from {total_mentions} mentions"
            )
            loaded = loaded.model_copy(update={"aggregate": aggregate, "total_mentions": total_mentions})

        self._snapshot = loaded
        return loaded

    def needs_full_refresh(self, now: Optional[datetime] = None) -> bool:
        return self.store.needs_full_refresh(self._snapshot, self.full_refresh_interval, now=now)

    async def refresh(self, force_full_refresh: bool = False) -> Snapshot:
        """
        Refresh the snapshot.

        Args:
            force_full_refresh: Re-fetch the whole window even if a full refresh is not due

        Returns:
            The new snapshot, or the current one if a refresh was already running

        Raises:
            FetchFailure: If the upstream fetch failed (prior snapshot retained)
        """
        if not self._gate.acquire(blocking=False):
            logger.info("Refresh already in progress, returning current snapshot")
            mon = _get_monitor()
            if mon:
                from monitoring import EventType
                mon.metrics.record_refresh_skipped()
                mon.activity.add_event(EventType.REFRESH_SKIPPED, handle=self.target_handle)
            return self._snapshot

        try:
            current = self._snapshot
            kind = (
                RefreshKind.FULL
                if force_full_refresh or self.needs_full_refresh()
                else RefreshKind.INCREMENTAL
            )
            since_id = current.newest_mention_id if kind == RefreshKind.INCREMENTAL else None

            mon = _get_monitor()
            if mon:
                from monitoring import EventType
                mon.activity.add_event(EventType.REFRESH_STARTED, kind=kind.value, since_id=since_id)

            started = time.monotonic()
            try:
                # The fetch loop blocks (requests + inter-page sleeps); keep it off the event loop
                result = await asyncio.to_thread(self.fetcher.fetch, self.query, since_id)
            except FetchFailure as e:
                self._last_error = str(e)
                logger.error(f"{kind.value.capitalize()} refresh for {self.query} failed: {e}")
                if mon:
                    mon.metrics.record_refresh_failure()
                    mon.activity.add_event(
                        EventType.REFRESH_FAILED,
                        kind=kind.value,
                        error=str(e)[:200],
                        pages_fetched=e.pages_fetched
                    )
                raise

            now = datetime.now(timezone.utc)
            if kind == RefreshKind.FULL:
                new_snapshot, new_count = self._apply_full(current, result, now)
            else:
                new_snapshot, new_count = self._apply_incremental(current, result, now)

            self._snapshot = new_snapshot
            self._refresh_count += 1
            self._last_error = None
            self._last_refresh_kind = kind
            duration_ms = (time.monotonic() - started) * 1000

            logger.info(
                f"{kind.value.capitalize()} refresh for {self.query}: +{new_count} mentions, "
                f"{new_snapshot.total_mentions} total, {len(new_snapshot.aggregate)} users "
                f"({result.pages} pages, {duration_ms:.0f}ms)"
            )
            if kind == RefreshKind.FULL and logger.isEnabledFor(logging.DEBUG):
                logger.debug("\n" + format_full_leaderboard(new_snapshot.aggregate))

            if mon:
                mon.metrics.record_refresh(kind.value, duration_ms, new_count)
                mon.activity.add_event(
                    EventType.REFRESH_COMPLETED,
                    kind=kind.value,
                    new_mentions=new_count,
                    total_mentions=new_snapshot.total_mentions,
                    pages=result.pages
                )

            await self._persist(new_snapshot)
            return new_snapshot
        finally:
            self._gate.release()

    async def _persist(self, snapshot: Snapshot) -> None:
        """Save the snapshot; failures are logged and the in-memory copy stays authoritative."""
        try:
            # Serialization and fsync block; run them in a worker thread like the fetch
            await asyncio.to_thread(self.store.save, snapshot)
        except PersistenceFailure as e:
            logger.error(f"Snapshot persistence failed, serving from memory until next save: {e}")
            mon = _get_monitor()
            if mon:
                from monitoring import EventType
                mon.metrics.record_persist_failure()
                mon.activity.add_event(EventType.PERSIST_FAILED, error=str(e)[:200])

    def _apply_full(self, current: Snapshot, result: FetchResult, now: datetime) -> Tuple[Snapshot, int]:
        """Replace mentions, authors and aggregate with a complete fetch."""
        mentions = _newest_first(_dedupe(result.mentions))
        authors = discover_authors(mentions, result.authors)
        newest = _newest(mentions)

        snapshot = self._build(
            current,
            mentions=mentions,
            authors=authors,
            newest_mention_id=newest.id if newest else current.newest_mention_id,
            last_updated=now,
            last_full_refresh=now
        )
        return snapshot, len(mentions)

    def _apply_incremental(self, current: Snapshot, result: FetchResult, now: datetime) -> Tuple[Snapshot, int]:
        """Merge unseen mentions (kept newest first) and authors into the snapshot."""
        new_mentions = _newest_first(_dedupe(result.mentions, seen={m.id for m in current.mentions}))

        if not new_mentions:
            # Only the timestamp moves; aggregate is not recomputed
            return current.model_copy(update={"last_updated": now}), 0

        authors = dict(current.authors)
        for author_id, author in discover_authors(new_mentions, result.authors).items():
            if author_id not in authors:
                authors[author_id] = author

        newest_id = current.newest_mention_id
        newest = _newest(new_mentions)
        if newest is not None and (newest_id is None or _id_key(newest.id) > _id_key(newest_id)):
            newest_id = newest.id
        elif newest is not None:
            logger.warning(
                f"Incremental fetch returned no mention newer than {newest_id}; "
                f"upstream may not honor since_id ordering"
            )

        snapshot = self._build(
            current,
            mentions=_newest_first(new_mentions + list(current.mentions)),
            authors=authors,
            newest_mention_id=newest_id,
            last_updated=now,
            last_full_refresh=current.last_full_refresh
        )
        return snapshot, len(new_mentions)

    def _build(self, current: Snapshot, mentions: List[Mention], authors: dict, **fields) -> Snapshot:
        """Apply retention, recompute the aggregate and assemble a new snapshot."""
        if len(mentions) > self.max_mentions:
            dropped = len(mentions) - self.max_mentions
            mentions = mentions[:self.max_mentions]
            referenced = {m.author_id for m in mentions}
            authors = {aid: a for aid, a in authors.items() if aid in referenced}
            logger.info(f"Retention: dropped {dropped} oldest mentions (cap {self.max_mentions})")

        return Snapshot(
            target_handle=current.target_handle,
            mentions=mentions,
            authors=authors,
            aggregate=aggregate_mentions(mentions, authors),
            total_mentions=len(mentions),
            **fields
        )

    def get_status(self) -> dict:
        """Refresh engine status for monitoring."""
        snapshot = self._snapshot
        return {
            "target_handle": self.target_handle,
            "state": self.state.value,
            "refresh_count": self._refresh_count,
            "last_refresh_kind": self._last_refresh_kind.value if self._last_refresh_kind else None,
            "last_error": self._last_error,
            "newest_mention_id": snapshot.newest_mention_id,
            "total_mentions": snapshot.total_mentions,
            "unique_users": len(snapshot.aggregate),
            "last_updated": snapshot.last_updated.isoformat() if snapshot.last_updated else None,
            "last_full_refresh": snapshot.last_full_refresh.isoformat() if snapshot.last_full_refresh else None,
            "full_refresh_due": self.needs_full_refresh(),
        }


class RefreshScheduler:
    """
    Background service that triggers refreshes on a fixed interval.

    No backpressure: a tick that fires while a refresh is still running is a
    no-op thanks to the coordinator's single-flight gate.

    Usage:
        scheduler = RefreshScheduler(coordinator, interval=120)
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(self, coordinator: RefreshCoordinator, interval: float = 120):
        self.coordinator = coordinator
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background refresh task."""
        if self._running:
            logger.warning("RefreshScheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(f"RefreshScheduler started with {self.interval}s interval")

    async def stop(self):
        """Stop the background refresh task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RefreshScheduler stopped")

    async def _refresh_loop(self):
        """Main scheduling loop."""
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval)

    async def run_once(self) -> Optional[Snapshot]:
        """Run one scheduled refresh. Never raises (except cancellation)."""
        try:
            return await self.coordinator.refresh(
                force_full_refresh=self.coordinator.needs_full_refresh()
            )
        except FetchFailure as e:
            logger.warning(f"Scheduled refresh failed, retrying in {self.interval}s: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in scheduled refresh: {e}")
        return None


class Leaderboard(BaseModel):
    """Leaderboard read result."""
    target_handle: str
    entries: List[AggregateEntry] = Field(default_factory=list, description="Top entries")
    total_users: int = 0
    total_mentions: int = 0
    last_updated: Optional[datetime] = None
    is_fresh: bool = False
    text: str = Field(description="Formatted chat message")


class QueryService:
    """
    Public read API over the snapshot.

    - Fresh snapshot: answer from memory, optionally kicking a background refresh
    - Stale snapshot: one synchronous refresh first; on failure, answer from the last snapshot

    Usage:
        service = QueryService(coordinator, cache_ttl=300)
        board = await service.get_leaderboard()
        stats = await service.get_personal_stats("@alice")
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        cache_ttl: float = 300,
        background_refresh: bool = True,
        background_refresh_min_age: Optional[float] = None,
        leaderboard_size: int = LEADERBOARD_SIZE
    ):
        """
        Args:
            coordinator: RefreshCoordinator owning the snapshot
            cache_ttl: Seconds a snapshot is served without a synchronous refresh
            background_refresh: Fire a non-blocking refresh on fresh reads
            background_refresh_min_age: Minimum snapshot age (seconds) before a read
                kicks a background refresh (default: half the TTL)
            leaderboard_size: Number of entries in the leaderboard
        """
        self.coordinator = coordinator
        self.cache_ttl = timedelta(seconds=cache_ttl)
        self.background_refresh = background_refresh
        self.background_refresh_min_age = (
            background_refresh_min_age if background_refresh_min_age is not None else cache_ttl / 2
        )
        self.leaderboard_size = leaderboard_size
        self._background_tasks: Set[asyncio.Task] = set()

    def _check_target(self, handle: Optional[str]) -> None:
        if handle and normalize_handle(handle) != normalize_handle(self.coordinator.target_handle):
            raise UnknownTargetError(
                f"Handle @{normalize_handle(handle)} is not tracked (tracking @{self.coordinator.target_handle})"
            )

    def is_fresh(self, snapshot: Optional[Snapshot] = None) -> bool:
        snapshot = snapshot or self.coordinator.snapshot
        return SnapshotStore.is_fresh(snapshot, self.cache_ttl)

    async def _read_snapshot(self) -> Tuple[Snapshot, bool]:
        """Current snapshot, refreshed synchronously first if stale."""
        snapshot = self.coordinator.snapshot
        mon = _get_monitor()

        if self.is_fresh(snapshot):
            logger.debug("Serving leaderboard from fresh snapshot")
            if mon:
                mon.metrics.record_cache_hit()
            self._maybe_refresh_in_background(snapshot)
            return snapshot, True

        if mon:
            from monitoring import EventType
            mon.metrics.record_cache_miss()
            mon.activity.add_event(EventType.CACHE_MISS, age_seconds=snapshot.age_seconds())

        try:
            snapshot = await self.coordinator.refresh(
                force_full_refresh=self.coordinator.needs_full_refresh()
            )
        except FetchFailure as e:
            snapshot = self.coordinator.snapshot
            logger.warning(
                f"Refresh on read failed, serving last snapshot "
                f"({snapshot.total_mentions} mentions): {e}"
            )
        return snapshot, self.is_fresh(snapshot)

    def _maybe_refresh_in_background(self, snapshot: Snapshot) -> None:
        if not self.background_refresh or self.coordinator.is_refreshing:
            return
        age = snapshot.age_seconds()
        if age is not None and age < self.background_refresh_min_age:
            return

        task = asyncio.create_task(self._background_refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _background_refresh(self) -> None:
        try:
            await self.coordinator.refresh()
        except FetchFailure as e:
            logger.warning(f"Background refresh failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in background refresh: {e}")

    async def get_leaderboard(self, handle: Optional[str] = None) -> Leaderboard:
        """
        Get the ranked leaderboard for the tracked handle.

        Args:
            handle: Optional target handle; must match the tracked one

        Raises:
            UnknownTargetError: If `handle` is not the tracked handle
        """
        self._check_target(handle)
        snapshot, fresh = await self._read_snapshot()

        return Leaderboard(
            target_handle=snapshot.target_handle,
            entries=snapshot.aggregate[:self.leaderboard_size],
            total_users=len(snapshot.aggregate),
            total_mentions=snapshot.total_mentions,
            last_updated=snapshot.last_updated,
            is_fresh=fresh,
            text=format_leaderboard(
                snapshot.aggregate,
                snapshot.total_mentions,
                snapshot.last_updated,
                limit=self.leaderboard_size
            )
        )

    async def get_personal_stats(self, mentioner: str, handle: Optional[str] = None) -> PersonalStats:
        """
        Look up one mentioner's rank, count and share.

        Args:
            mentioner: Handle to look up (case-insensitive, leading @ optional)
            handle: Optional target handle; must match the tracked one

        Returns:
            PersonalStats; found=False when the mentioner is not ranked
        """
        self._check_target(handle)
        snapshot, _ = await self._read_snapshot()
        return compute_personal_stats(snapshot.aggregate, snapshot.total_mentions, mentioner)

    async def get_personal_stats_text(self, mentioner: str, handle: Optional[str] = None) -> str:
        return format_personal_stats(await self.get_personal_stats(mentioner, handle))

    async def close(self) -> None:
        """Cancel outstanding background refreshes."""
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()


__all__ = [
    "RefreshState",
    "RefreshKind",
    "RefreshCoordinator",
    "RefreshScheduler",
    "QueryService",
    "Leaderboard",
    "UnknownTargetError",
]
