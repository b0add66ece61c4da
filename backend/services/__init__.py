"""
Services module for the mention leaderboard backend.
"""

from .snapshot_store import PersistenceFailure, Snapshot, SnapshotStore

__all__ = [
    "Snapshot",
    "SnapshotStore",
    "PersistenceFailure",
]
