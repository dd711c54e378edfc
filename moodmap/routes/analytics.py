"""
analytics.py — On-demand (request/response) aggregate routes.

Routes:
  GET  /api/v1/analytics/clusters    — spatial clusters (kmeans | dbscan | hierarchical)
  GET  /api/v1/analytics/trends      — time-bucketed count / intensity series
  GET  /api/v1/analytics/sentiment   — polarity score per category
  GET  /api/v1/analytics/heatmap     — grid cells inside a bounding box
  GET  /api/v1/analytics/forecast    — next-N-hours intensity projection
  GET  /api/v1/analytics/dashboard   — fixed 24h / 7d bundle
  POST /api/v1/analytics/compare     — side-by-side stats for named regions
  GET  /api/v1/analytics/events      — raw events by intensity, radius, hour and weekday

Every route recomputes from the event store; nothing is cached. Engine
errors are translated by the handlers registered in main.py:
UnsupportedAlgorithm / InvalidInput → 400, ComputationTimeout → 504,
StoreUnavailable → 503.

TESTING
───────
    pytest tests/test_analytics_routes.py -v

    curl "http://localhost:8000/api/v1/analytics/clusters?algorithm=dbscan&min_points=2&max_distance=50"
    curl "http://localhost:8000/api/v1/analytics/heatmap?south=26&west=80&north=31&east=89&resolution=0.5"
    curl "http://localhost:8000/api/v1/analytics/events?lat=27.7&lon=85.3&radius_km=15&hours_of_day=8,9,10"
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import ValidationError

from moodmap.core.config import settings
from moodmap.core.database import get_db
from moodmap.core.errors import InvalidInput
from moodmap.core.rate_limit import AGGREGATE_LIMIT, CLUSTER_LIMIT, limiter
from moodmap.models.analytics import (
    Bounds,
    ClusterAlgorithm,
    ClusterParams,
    ClusterResult,
    DashboardSnapshot,
    EventFilter,
    FilteredEvents,
    Forecast,
    Granularity,
    HeatCell,
    NamedBounds,
    Radius,
    RegionComparison,
    SentimentScore,
    TrendBucket,
)
from moodmap.models.emotion import EmotionCategory
from moodmap.services.analytics import AnalyticsService
from moodmap.services.event_store import MongoEventStore
from moodmap.services.forecaster import MAX_HORIZON_HOURS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])


def get_analytics(db=Depends(get_db)) -> AnalyticsService:
    """Request-scoped service over the injected database handle."""
    return AnalyticsService(MongoEventStore(db, settings.events_collection))


def _parse_categories(raw: Optional[str]) -> Optional[list[EmotionCategory]]:
    if not raw:
        return None
    try:
        return [EmotionCategory(c.strip().lower()) for c in raw.split(",") if c.strip()]
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc


def _parse_ints(raw: Optional[str], name: str) -> Optional[list[int]]:
    if not raw:
        return None
    try:
        return [int(v) for v in raw.split(",") if v.strip()]
    except ValueError:
        raise InvalidInput(f"{name} must be comma-separated integers") from None


def _window(hours: Optional[int]) -> Optional[datetime]:
    return datetime.now(tz=timezone.utc) - timedelta(hours=hours) if hours else None


@router.get("/clusters", response_model=ClusterResult)
@limiter.limit(CLUSTER_LIMIT)
async def get_clusters(
    request: Request,
    algorithm: str = Query(default="kmeans", description="kmeans | dbscan | hierarchical"),
    k: int = Query(default=5, ge=1, le=100),
    min_points: int = Query(default=3, ge=1, le=1000),
    max_distance: float = Query(default=50.0, gt=0, description="Kilometres"),
    hours: Optional[int] = Query(default=None, ge=1, le=24 * 90, description="Lookback window"),
    categories: Optional[str] = Query(default=None, description="Comma-separated categories"),
    seed: Optional[int] = Query(default=None, description="Fix k-means seeding"),
    analytics: AnalyticsService = Depends(get_analytics),
):
    """
    Cluster the most recent events (capped at max_cluster_events).

    DBSCAN events that belong to no cluster come back in `noise`.
    """
    filters = EventFilter(since=_window(hours), categories=_parse_categories(categories))
    params = ClusterParams(k=k, min_points=min_points, max_distance=max_distance)
    return await analytics.get_clusters(algorithm, params, filters, seed=seed)


@router.get("/trends", response_model=list[TrendBucket])
@limiter.limit(AGGREGATE_LIMIT)
async def get_trends(
    request: Request,
    granularity: Granularity = Query(default=Granularity.DAY),
    hours: int = Query(default=24 * 7, ge=1, le=24 * 365),
    categories: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None, max_length=100),
    group_by: Optional[str] = Query(default=None, description="city | country"),
    analytics: AnalyticsService = Depends(get_analytics),
):
    filters = EventFilter(since=_window(hours), categories=_parse_categories(categories), region=region)
    return await analytics.get_trends(granularity, filters, group_by)


@router.get("/sentiment", response_model=list[SentimentScore])
@limiter.limit(AGGREGATE_LIMIT)
async def get_sentiment(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 365),
    categories: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None, max_length=100),
    analytics: AnalyticsService = Depends(get_analytics),
):
    filters = EventFilter(since=_window(hours), categories=_parse_categories(categories), region=region)
    return await analytics.get_sentiment(filters)


@router.get("/heatmap", response_model=list[HeatCell])
@limiter.limit(AGGREGATE_LIMIT)
async def get_heatmap(
    request: Request,
    south: float = Query(default=-90, ge=-90, le=90),
    west: float = Query(default=-180, ge=-180, le=180),
    north: float = Query(default=90, ge=-90, le=90),
    east: float = Query(default=180, ge=-180, le=180),
    resolution: float = Query(default=0.1, gt=0, le=45),
    hours: Optional[int] = Query(default=None, ge=1, le=24 * 365),
    categories: Optional[str] = Query(default=None),
    dominant: str = Query(default="first", pattern="^(first|mode)$"),
    analytics: AnalyticsService = Depends(get_analytics),
):
    """
    Bin events into resolution-degree cells. Cell `coordinates` are the
    grid anchor (key × resolution), not the cell center.
    """
    try:
        bounds = Bounds(south=south, west=west, north=north, east=east)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    filters = EventFilter(since=_window(hours), categories=_parse_categories(categories))
    return await analytics.get_heatmap(bounds, resolution, filters, dominant=dominant)


@router.get("/forecast", response_model=list[Forecast])
@limiter.limit(AGGREGATE_LIMIT)
async def get_forecast(
    request: Request,
    region: Optional[str] = Query(default=None, max_length=100),
    horizon: int = Query(default=24, ge=1, le=MAX_HORIZON_HOURS),
    confidence: Optional[float] = Query(default=None, ge=0, le=1),
    analytics: AnalyticsService = Depends(get_analytics),
):
    """Hour-of-day / day-of-week baseline projection. A heuristic, not a model."""
    return await analytics.get_forecast(region, horizon, confidence)


@router.get("/dashboard", response_model=DashboardSnapshot)
@limiter.limit(AGGREGATE_LIMIT)
async def get_dashboard(request: Request, analytics: AnalyticsService = Depends(get_analytics)):
    return await analytics.get_dashboard_snapshot()


@router.post("/compare", response_model=list[RegionComparison])
@limiter.limit(AGGREGATE_LIMIT)
async def compare_regions(
    request: Request,
    regions: list[NamedBounds] = Body(..., min_length=1, max_length=20),
    analytics: AnalyticsService = Depends(get_analytics),
):
    return await analytics.get_comparison(regions)


@router.get("/events", response_model=FilteredEvents)
@limiter.limit(AGGREGATE_LIMIT)
async def get_filtered_events(
    request: Request,
    hours: Optional[int] = Query(default=None, ge=1, le=24 * 365),
    categories: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None, max_length=100),
    min_intensity: Optional[float] = Query(default=None, ge=0, le=1),
    max_intensity: Optional[float] = Query(default=None, ge=0, le=1),
    lat: Optional[float] = Query(default=None, ge=-90, le=90),
    lon: Optional[float] = Query(default=None, ge=-180, le=180),
    radius_km: Optional[float] = Query(default=None, gt=0, le=20_000),
    hours_of_day: Optional[str] = Query(default=None, description="Comma-separated UTC hours, 0-23"),
    days_of_week: Optional[str] = Query(default=None, description="Comma-separated ISO weekdays, 1 = Monday"),
    limit: int = Query(default=1000, ge=1, le=5000),
    cluster: Optional[str] = Query(default=None, description="Also cluster: kmeans | dbscan | hierarchical"),
    k: int = Query(default=5, ge=1, le=100),
    min_points: int = Query(default=3, ge=1, le=1000),
    max_distance: float = Query(default=50.0, gt=0),
    seed: Optional[int] = Query(default=None),
    analytics: AnalyticsService = Depends(get_analytics),
):
    """
    Raw events matching every given constraint, most recent `limit`.

    A radius needs lat, lon and radius_km together. Intensities are
    compared after legacy five-point scores are normalised.
    """
    center = (lat, lon, radius_km)
    if any(v is not None for v in center) and not all(v is not None for v in center):
        raise InvalidInput("lat, lon and radius_km must be given together")
    try:
        filters = EventFilter(
            since=_window(hours),
            categories=_parse_categories(categories),
            region=region,
            min_intensity=min_intensity,
            max_intensity=max_intensity,
            radius=Radius(lat=lat, lon=lon, km=radius_km) if radius_km is not None else None,
            hours_of_day=_parse_ints(hours_of_day, "hours_of_day"),
            days_of_week=_parse_ints(days_of_week, "days_of_week"),
            limit=limit,
        )
    except ValidationError as exc:
        raise InvalidInput(exc.errors()[0]["msg"]) from exc
    params = ClusterParams(k=k, min_points=min_points, max_distance=max_distance)
    return await analytics.get_filtered_events(filters, cluster=cluster, params=params, seed=seed)


@router.get("/algorithms", response_model=list[str])
async def list_algorithms():
    return [a.value for a in ClusterAlgorithm]
