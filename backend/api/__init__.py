"""
FastAPI routes for the mention leaderboard backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel, Field

from adapter.x import FetchFailure
from aggregator import AggregateEntry, PersonalStats, chunk_message, format_personal_stats
from core import Leaderboard, QueryService, RefreshCoordinator, RefreshScheduler, UnknownTargetError
from monitoring import monitor, get_rate_limit_status, EventType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Mention Leaderboard"])


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    target_handle: str
    refresh_state: str
    is_fresh: bool
    scheduler_running: bool


class LeaderboardTextResponse(BaseModel):
    """Leaderboard rendered for a chat transport."""
    text: str
    chunks: List[str] = Field(description="Text split to fit the transport message limit")


class PersonalStatsResponse(BaseModel):
    """Personal stats lookup, structured plus rendered."""
    stats: PersonalStats
    text: str


class RefreshResponse(BaseModel):
    """Outcome of a manually triggered refresh."""
    success: bool
    message: str
    total_mentions: int = 0
    unique_users: int = 0
    newest_mention_id: Optional[str] = None
    last_updated: Optional[datetime] = None


class SnapshotResponse(BaseModel):
    """Snapshot metadata (without the mention list)."""
    target_handle: str
    total_mentions: int
    unique_users: int
    newest_mention_id: Optional[str]
    last_updated: Optional[datetime]
    last_full_refresh: Optional[datetime]
    top: List[AggregateEntry]


# ============================================================================
# Dependencies
# ============================================================================

_query_service: Optional[QueryService] = None
_coordinator: Optional[RefreshCoordinator] = None
_scheduler: Optional[RefreshScheduler] = None
_rate_limiter = None


def set_dependencies(
    query_service: QueryService,
    coordinator: RefreshCoordinator,
    scheduler: Optional[RefreshScheduler] = None,
    rate_limiter=None
):
    """Set the service dependencies (called from main app)."""
    global _query_service, _coordinator, _scheduler, _rate_limiter
    _query_service = query_service
    _coordinator = coordinator
    _scheduler = scheduler
    _rate_limiter = rate_limiter


def get_query_service() -> QueryService:
    if _query_service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _query_service


def get_coordinator() -> RefreshCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _coordinator


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    service: QueryService = Depends(get_query_service),
    coordinator: RefreshCoordinator = Depends(get_coordinator)
):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        target_handle=coordinator.target_handle,
        refresh_state=coordinator.state.value,
        is_fresh=service.is_fresh(),
        scheduler_running=bool(_scheduler and _scheduler.is_running)
    )


@router.get("/leaderboard", response_model=Leaderboard)
async def get_leaderboard(
    handle: Optional[str] = Query(default=None, description="Tracked handle (optional)"),
    service: QueryService = Depends(get_query_service)
):
    """Ranked leaderboard of the accounts mentioning the tracked handle."""
    try:
        return await service.get_leaderboard(handle)
    except UnknownTargetError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/leaderboard/text", response_model=LeaderboardTextResponse)
async def get_leaderboard_text(
    handle: Optional[str] = Query(default=None, description="Tracked handle (optional)"),
    service: QueryService = Depends(get_query_service)
):
    """Leaderboard as a chat message, pre-split for the transport."""
    try:
        board = await service.get_leaderboard(handle)
    except UnknownTargetError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return LeaderboardTextResponse(text=board.text, chunks=chunk_message(board.text))


@router.get("/users/{mentioner}/stats", response_model=PersonalStatsResponse)
async def get_personal_stats(
    mentioner: str,
    handle: Optional[str] = Query(default=None, description="Tracked handle (optional)"),
    service: QueryService = Depends(get_query_service)
):
    """
    Rank, mention count and share for one account.

    An account that never mentioned the handle is a normal result (found=false).
    """
    try:
        stats = await service.get_personal_stats(mentioner, handle)
    except UnknownTargetError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PersonalStatsResponse(stats=stats, text=format_personal_stats(stats))


@router.post("/refresh", response_model=RefreshResponse)
async def trigger_refresh(
    full: bool = Query(default=False, description="Force a full rescan"),
    coordinator: RefreshCoordinator = Depends(get_coordinator)
):
    """Manually trigger a refresh (full or incremental per policy)."""
    if coordinator.is_refreshing:
        raise HTTPException(status_code=409, detail="A refresh is already in progress")

    try:
        snapshot = await coordinator.refresh(force_full_refresh=full)
    except FetchFailure as e:
        raise HTTPException(status_code=502, detail=f"Refresh failed: {e}")

    return RefreshResponse(
        success=True,
        message="Refresh completed",
        total_mentions=snapshot.total_mentions,
        unique_users=len(snapshot.aggregate),
        newest_mention_id=snapshot.newest_mention_id,
        last_updated=snapshot.last_updated
    )


@router.get("/snapshot", response_model=SnapshotResponse)
async def get_snapshot(coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Current snapshot metadata. Never triggers a refresh."""
    snapshot = coordinator.snapshot
    return SnapshotResponse(
        target_handle=snapshot.target_handle,
        total_mentions=snapshot.total_mentions,
        unique_users=len(snapshot.aggregate),
        newest_mention_id=snapshot.newest_mention_id,
        last_updated=snapshot.last_updated,
        last_full_refresh=snapshot.last_full_refresh,
        top=snapshot.aggregate[:10]
    )


# ============================================================================
# Monitoring & Observability
# ============================================================================

@router.get("/monitor/health", tags=["Monitoring"])
async def get_system_health():
    """System health check with component status."""
    return monitor.get_health_status()


@router.get("/monitor/metrics", tags=["Monitoring"])
async def get_metrics():
    """
    Detailed performance metrics.

    Includes:
    - Cache hit rates on reads
    - X API call statistics
    - Refresh counts, failures and durations
    """
    metrics = monitor.metrics.get_metrics()
    if _coordinator is not None:
        metrics["refresh_engine"] = _coordinator.get_status()
        metrics["persistence"] = _coordinator.store.get_stats()
    return metrics


@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_dashboard():
    """Health, metrics and recent activity in one payload."""
    data = monitor.get_dashboard_data()
    if _coordinator is not None:
        data["refresh_engine"] = _coordinator.get_status()
    return data


@router.get("/monitor/rate-limits", tags=["Monitoring"])
async def get_rate_limits():
    """Internal rate limiter usage per category."""
    if _rate_limiter is None:
        return {"error": "Rate limiter not configured", "categories": {}}

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "categories": get_rate_limit_status(_rate_limiter),
    }


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_activity_feed(
    limit: int = Query(default=50, ge=1, le=200, description="Number of events"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type")
):
    """Recent refresh, fetch and cache events."""
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            valid_types = [e.value for e in EventType]
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event_type. Valid options: {valid_types}"
            )

    return {
        "events": monitor.activity.get_recent(limit=limit, event_type=filter_type),
        "event_counts_5m": monitor.activity.get_event_counts(since_minutes=5),
        "available_types": [e.value for e in EventType],
    }


__all__ = ["router", "set_dependencies"]
