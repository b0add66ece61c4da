"""
Snapshot store for the mention leaderboard cache.

Provides:
- The Snapshot model (mentions, authors, ranked aggregate, refresh timestamps)
- Atomic whole-document JSON persistence
- Staleness queries (TTL freshness, full-refresh due)
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from adapter.models import Author, Mention
from aggregator import AggregateEntry

logger = logging.getLogger(__name__)


class PersistenceFailure(Exception):
    """Raised when the snapshot cannot be written to durable storage."""
    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class Snapshot(BaseModel):
    """
    The cached mention history for one target handle.

    Treated as an immutable value: refreshes build a new Snapshot and swap it
    in, so readers always see a complete state.
    """
    target_handle: str = Field(description="Tracked handle (without @)")
    mentions: List[Mention] = Field(default_factory=list, description="Newest first")
    authors: Dict[str, Author] = Field(default_factory=dict, description="Author id -> Author")
    aggregate: List[AggregateEntry] = Field(default_factory=list, description="Ranked counts")
    newest_mention_id: Optional[str] = Field(default=None)
    last_updated: Optional[datetime] = Field(default=None)
    last_full_refresh: Optional[datetime] = Field(default=None)
    total_mentions: int = Field(default=0)

    @classmethod
    def empty(cls, target_handle: str) -> "Snapshot":
        """Initial in-memory state before any load or refresh."""
        return cls(target_handle=target_handle)

    @property
    def is_empty(self) -> bool:
        return self.last_updated is None and not self.mentions

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since last update, or None if never updated."""
        if self.last_updated is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - self.last_updated).total_seconds()


def _as_timedelta(value: Union[timedelta, float, int]) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class SnapshotStore:
    """
    Owns the durable copy of the snapshot.

    Persistence is a whole-snapshot overwrite: the JSON document is written to
    a temporary sibling file, fsynced and renamed over the target, so a crash
    mid-write never leaves a truncated cache behind.
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize the snapshot store.

        Args:
            path: JSON file holding the persisted snapshot
        """
        self.path = Path(path)
        self._saves = 0
        self._save_failures = 0
        logger.info(f"SnapshotStore using {self.path}")

    def load(self) -> Optional[Snapshot]:
        """
        Load the persisted snapshot.

        Returns:
            The Snapshot, or None if no usable file exists
        """
        if not self.path.exists():
            logger.info(f"No persisted snapshot at {self.path}")
            return None

        try:
            snapshot = Snapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable snapshot at {self.path}: {e}")
            return None

        logger.info(
            f"Loaded snapshot for @{snapshot.target_handle}: "
            f"{snapshot.total_mentions} mentions, {len(snapshot.aggregate)} users"
        )
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        """
        Atomically overwrite the persisted snapshot.

        Raises:
            PersistenceFailure: If the file cannot be written
        """
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = snapshot.model_dump_json(indent=2)
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            self._save_failures += 1
            raise PersistenceFailure(f"Failed to save snapshot to {self.path}: {e}", path=self.path) from e

        self._saves += 1
        logger.debug(f"Saved snapshot ({snapshot.total_mentions} mentions) to {self.path}")

    @staticmethod
    def is_fresh(
        snapshot: Optional[Snapshot],
        ttl: Union[timedelta, float, int],
        now: Optional[datetime] = None
    ) -> bool:
        """True if the snapshot was updated less than `ttl` ago."""
        if snapshot is None or snapshot.last_updated is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - snapshot.last_updated < _as_timedelta(ttl)

    @staticmethod
    def needs_full_refresh(
        snapshot: Optional[Snapshot],
        interval: Union[timedelta, float, int],
        now: Optional[datetime] = None
    ) -> bool:
        """True if there is no snapshot, it was never fully refreshed, or the last full refresh is older than `interval`."""
        if snapshot is None or snapshot.last_full_refresh is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - snapshot.last_full_refresh > _as_timedelta(interval)

    def get_stats(self) -> Dict[str, object]:
        """Persistence counters for monitoring."""
        return {
            "path": str(self.path),
            "exists": self.path.exists(),
            "saves": self._saves,
            "save_failures": self._save_failures,
        }
