"""Unit tests for the SnapshotStore module."""

import json
import pytest
from datetime import datetime, timezone, timedelta

from adapter.models import Author, Mention
from aggregator import AggregateEntry
from services import PersistenceFailure, Snapshot, SnapshotStore


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def create_snapshot(**overrides) -> Snapshot:
    """Helper to create a populated snapshot."""
    fields = dict(
        target_handle="openservai",
        mentions=[
            Mention(id="102", author_id="1", created_at=NOW),
            Mention(id="101", author_id="2", created_at=NOW - timedelta(minutes=5)),
        ],
        authors={
            "1": Author(id="1", handle="xavier", display_name="Xavier", verified=True),
            "2": Author(id="2", handle="yolanda"),
        },
        aggregate=[
            AggregateEntry(handle="xavier", display_name="Xavier", verified=True, count=1),
            AggregateEntry(handle="yolanda", count=1),
        ],
        newest_mention_id="102",
        last_updated=NOW,
        last_full_refresh=NOW,
        total_mentions=2
    )
    fields.update(overrides)
    return Snapshot(**fields)


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "mentions_cache.json")


class TestSnapshot:
    """Test the Snapshot model."""

    def test_empty_snapshot(self):
        snapshot = Snapshot.empty("openservai")

        assert snapshot.is_empty is True
        assert snapshot.mentions == []
        assert snapshot.aggregate == []
        assert snapshot.newest_mention_id is None
        assert snapshot.age_seconds() is None

    def test_age_seconds(self):
        snapshot = create_snapshot()

        assert snapshot.age_seconds(now=NOW + timedelta(seconds=90)) == 90
        assert snapshot.is_empty is False


class TestSnapshotPersistence:
    """Test load/save."""

    def test_load_missing_file(self, store):
        assert store.load() is None

    def test_save_then_load(self, store):
        snapshot = create_snapshot()

        store.save(snapshot)
        loaded = store.load()

        assert loaded == snapshot
        assert list(loaded.authors) == ["1", "2"]
        assert loaded.last_updated.tzinfo is not None

    def test_saved_document_is_json(self, store):
        store.save(create_snapshot())

        document = json.loads(store.path.read_text(encoding="utf-8"))

        assert document["target_handle"] == "openservai"
        assert document["newest_mention_id"] == "102"
        assert document["total_mentions"] == 2

    def test_save_overwrites_and_leaves_no_temp_file(self, store):
        store.save(create_snapshot())
        store.save(create_snapshot(total_mentions=5, newest_mention_id="200"))

        assert store.load().newest_mention_id == "200"
        assert [p.name for p in store.path.parent.iterdir()] == ["mentions_cache.json"]

    def test_save_creates_parent_directory(self, tmp_path):
        store = SnapshotStore(tmp_path / "nested" / "cache.json")

        store.save(create_snapshot())

        assert store.path.exists()

    def test_corrupt_file_ignored(self, store):
        store.path.write_text("{not json", encoding="utf-8")

        assert store.load() is None

    def test_invalid_document_ignored(self, store):
        store.path.write_text(json.dumps({"mentions": "nope"}), encoding="utf-8")

        assert store.load() is None

    def test_save_failure_raises_persistence_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory", encoding="utf-8")
        store = SnapshotStore(blocker / "cache.json")

        with pytest.raises(PersistenceFailure) as exc_info:
            store.save(create_snapshot())

        assert exc_info.value.path == store.path
        assert store.get_stats()["save_failures"] == 1

    def test_stats(self, store):
        store.save(create_snapshot())

        stats = store.get_stats()

        assert stats["exists"] is True
        assert stats["saves"] == 1
        assert stats["save_failures"] == 0


class TestStaleness:
    """Test TTL and full-refresh checks."""

    def test_fresh_within_ttl(self):
        snapshot = create_snapshot()

        assert SnapshotStore.is_fresh(snapshot, 300, now=NOW + timedelta(seconds=299)) is True
        assert SnapshotStore.is_fresh(snapshot, timedelta(minutes=5), now=NOW + timedelta(seconds=299)) is True

    def test_stale_at_ttl(self):
        snapshot = create_snapshot()

        assert SnapshotStore.is_fresh(snapshot, 300, now=NOW + timedelta(seconds=300)) is False

    def test_never_updated_is_stale(self):
        assert SnapshotStore.is_fresh(Snapshot.empty("openservai"), 300) is False
        assert SnapshotStore.is_fresh(None, 300) is False

    def test_full_refresh_due(self):
        snapshot = create_snapshot()

        assert SnapshotStore.needs_full_refresh(snapshot, 3600, now=NOW + timedelta(minutes=30)) is False
        assert SnapshotStore.needs_full_refresh(snapshot, 3600, now=NOW + timedelta(minutes=61)) is True

    def test_full_refresh_due_without_history(self):
        assert SnapshotStore.needs_full_refresh(None, 3600) is True
        assert SnapshotStore.needs_full_refresh(create_snapshot(last_full_refresh=None), 3600) is True
