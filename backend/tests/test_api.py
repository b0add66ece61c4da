"""
End-to-end API tests with mock data.

Tests the full flow: API → QueryService/RefreshCoordinator → Fetcher (mocked) → Response
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock
from fastapi.testclient import TestClient

from main import app
from api import set_dependencies
from adapter.models import Author, Mention
from adapter.rate_limiter import create_x_api_limiter
from adapter.x import FetchFailure, FetchResult, PaginatedFetcher
from core import QueryService, RefreshCoordinator, RefreshScheduler
from services import SnapshotStore


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def sample_result():
    """Four mentions from three authors, newest first."""
    now = datetime.now(timezone.utc)
    alice = Author(id="1", handle="alice", display_name="Alice", verified=True)
    bob = Author(id="2", handle="bob", display_name="Bob")
    carol = Author(id="3", handle="carol", display_name="Carol")
    mentions = [
        Mention(id="1004", author_id="1", created_at=now - timedelta(minutes=1)),
        Mention(id="1003", author_id="2", created_at=now - timedelta(minutes=2)),
        Mention(id="1002", author_id="1", created_at=now - timedelta(minutes=3)),
        Mention(id="1001", author_id="3", created_at=now - timedelta(minutes=4)),
    ]
    return FetchResult(mentions=mentions, authors=[alice, bob, carol], pages=1)


@pytest.fixture
def mock_fetcher(sample_result):
    """Create a mock fetcher that returns test data."""
    fetcher = Mock(spec=PaginatedFetcher)
    fetcher.fetch.return_value = sample_result
    return fetcher


@pytest.fixture
def coordinator(mock_fetcher, tmp_path):
    return RefreshCoordinator(mock_fetcher, SnapshotStore(tmp_path / "cache.json"), "openservai")


@pytest.fixture
def client(coordinator):
    """Test client with dependencies wired to mocked services (lifespan not run)."""
    service = QueryService(coordinator, cache_ttl=300, background_refresh=False)
    scheduler = RefreshScheduler(coordinator, interval=120)
    set_dependencies(service, coordinator, scheduler, create_x_api_limiter())

    yield TestClient(app)

    set_dependencies(None, None)


# ============================================================================
# Tests
# ============================================================================

class TestHealth:
    """Root and health endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "Mention Leaderboard API"

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["target_handle"] == "openservai"
        assert data["refresh_state"] == "idle"
        assert data["is_fresh"] is False
        assert data["scheduler_running"] is False

    def test_uninitialized_service(self):
        set_dependencies(None, None)

        response = TestClient(app).get("/api/v1/leaderboard")

        assert response.status_code == 503


class TestLeaderboardEndpoints:
    """Leaderboard and personal stats reads."""

    def test_leaderboard_cold_start(self, client, mock_fetcher):
        response = client.get("/api/v1/leaderboard")

        assert response.status_code == 200
        data = response.json()
        # bob and carol tie; carol mentioned first
        assert [e["handle"] for e in data["entries"]] == ["alice", "carol", "bob"]
        assert data["entries"][0]["count"] == 2
        assert data["entries"][0]["verified"] is True
        assert data["total_users"] == 3
        assert data["total_mentions"] == 4
        assert data["is_fresh"] is True
        assert data["text"].startswith("🏆 TOP 10 MOST ACTIVE MENTIONERS 🏆")
        mock_fetcher.fetch.assert_called_once()

    def test_leaderboard_served_from_memory(self, client, mock_fetcher):
        client.get("/api/v1/leaderboard")
        client.get("/api/v1/leaderboard")

        assert mock_fetcher.fetch.call_count == 1

    def test_leaderboard_unknown_handle(self, client):
        response = client.get("/api/v1/leaderboard", params={"handle": "someoneelse"})

        assert response.status_code == 404

    def test_leaderboard_text(self, client):
        response = client.get("/api/v1/leaderboard/text")

        assert response.status_code == 200
        data = response.json()
        assert data["chunks"] == [data["text"]]
        assert "@alice ✓" in data["text"]

    def test_personal_stats(self, client):
        response = client.get("/api/v1/users/@Alice/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["found"] is True
        assert data["stats"]["rank"] == 1
        assert data["stats"]["count"] == 2
        assert data["stats"]["percentage"] == 50.0
        assert data["stats"]["tier"] == "champion"
        assert "USER STATS FOR @alice" in data["text"]

    def test_personal_stats_not_found(self, client):
        response = client.get("/api/v1/users/nobody/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["found"] is False
        assert data["text"] == data["stats"]["message"]


class TestRefreshEndpoint:
    """Manual refresh triggering."""

    def test_refresh(self, client, mock_fetcher):
        response = client.post("/api/v1/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["total_mentions"] == 4
        assert data["unique_users"] == 3
        assert data["newest_mention_id"] == "1004"

    def test_forced_full_refresh(self, client, mock_fetcher):
        client.post("/api/v1/refresh")
        response = client.post("/api/v1/refresh", params={"full": "true"})

        assert response.status_code == 200
        assert mock_fetcher.fetch.call_args_list[-1].args == ("@openservai", None)

    def test_refresh_failure(self, client, mock_fetcher):
        mock_fetcher.fetch.side_effect = FetchFailure("X API error: 503")

        response = client.post("/api/v1/refresh")

        assert response.status_code == 502

    def test_refresh_in_progress(self, client, coordinator):
        coordinator._gate.acquire()
        try:
            response = client.post("/api/v1/refresh")
        finally:
            coordinator._gate.release()

        assert response.status_code == 409

    def test_snapshot_metadata(self, client):
        client.post("/api/v1/refresh")

        response = client.get("/api/v1/snapshot")

        assert response.status_code == 200
        data = response.json()
        assert data["target_handle"] == "openservai"
        assert data["total_mentions"] == 4
        assert data["newest_mention_id"] == "1004"
        assert data["last_full_refresh"] is not None
        assert len(data["top"]) == 3


class TestMonitoringEndpoints:
    """Monitoring and observability endpoints."""

    def test_system_health(self, client):
        response = client.get("/api/v1/monitor/health")

        assert response.status_code == 200
        assert "status" in response.json()

    def test_metrics(self, client):
        client.get("/api/v1/leaderboard")

        response = client.get("/api/v1/monitor/metrics")

        assert response.status_code == 200
        data = response.json()
        assert "cache" in data
        assert "refresh" in data
        assert data["refresh_engine"]["target_handle"] == "openservai"
        assert data["persistence"]["saves"] == 1

    def test_rate_limits(self, client):
        response = client.get("/api/v1/monitor/rate-limits")

        assert response.status_code == 200
        assert "x_search" in response.json()["categories"]

    def test_activity_feed(self, client):
        client.post("/api/v1/refresh")

        response = client.get("/api/v1/monitor/activity", params={"event_type": "refresh_completed"})

        assert response.status_code == 200
        events = response.json()["events"]
        assert events
        assert all(e["event_type"] == "refresh_completed" for e in events)

    def test_activity_feed_invalid_type(self, client):
        response = client.get("/api/v1/monitor/activity", params={"event_type": "bogus"})

        assert response.status_code == 400

    def test_dashboard(self, client):
        response = client.get("/api/v1/monitor/dashboard")

        assert response.status_code == 200
        data = response.json()
        assert "health" in data
        assert "recent_activity" in data
        assert data["refresh_engine"]["state"] == "idle"
