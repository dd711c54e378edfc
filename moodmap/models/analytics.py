"""
analytics.py — Pydantic models for every derived aggregate the engine emits.

All of these are recomputed from the event store on each request or
scheduler tick; none is persisted. Field names serialise in camelCase
(totalEvents, meanIntensity, ...) because the broadcast payloads and the
HTTP responses share one shape and the map frontend reads them directly.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from moodmap.models.emotion import EmotionCategory, EmotionEvent


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Query inputs ──────────────────────────────────────────────────────────────

class Bounds(_Camel):
    """Lat/lon rectangle, inclusive on every edge."""

    south: float = Field(..., ge=-90, le=90)
    west: float = Field(..., ge=-180, le=180)
    north: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def _ordered(self) -> "Bounds":
        if self.south > self.north:
            raise ValueError("south must not exceed north")
        if self.west > self.east:
            raise ValueError("west must not exceed east")
        return self

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east


class Radius(_Camel):
    """Circle of `km` great-circle kilometres around a point."""

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    km: float = Field(..., gt=0, le=20_000)


class EventFilter(BaseModel):
    """Constraints passed to the event store's find_events()."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None
    bounds: Optional[Bounds] = None
    radius: Optional[Radius] = None
    categories: Optional[list[EmotionCategory]] = None
    min_intensity: Optional[float] = Field(default=None, ge=0, le=1)
    max_intensity: Optional[float] = Field(default=None, ge=0, le=1)
    region: Optional[str] = None    # case-insensitive city / country match
    hours_of_day: Optional[list[Annotated[int, Field(ge=0, le=23)]]] = None   # UTC
    days_of_week: Optional[list[Annotated[int, Field(ge=1, le=7)]]] = None    # ISO, 1 = Monday
    limit: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _intensity_ordered(self) -> "EventFilter":
        if (
            self.min_intensity is not None
            and self.max_intensity is not None
            and self.min_intensity > self.max_intensity
        ):
            raise ValueError("min_intensity must not exceed max_intensity")
        return self


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class ClusterAlgorithm(str, Enum):
    KMEANS = "kmeans"
    DBSCAN = "dbscan"
    HIERARCHICAL = "hierarchical"


class ClusterParams(BaseModel):
    k: int = Field(default=5, ge=1)
    min_points: int = Field(default=3, ge=1)
    max_distance: float = Field(default=50.0, gt=0)   # kilometres


class NamedBounds(_Camel):
    name: str = Field(..., min_length=1, max_length=100)
    bounds: Bounds
    hours: int = Field(default=24, ge=1, le=24 * 90)


# ── Derived aggregates ────────────────────────────────────────────────────────

class GeoPoint(_Camel):
    lat: float
    lon: float


class Cluster(_Camel):
    """One spatial grouping from a single clustering run. `id` is run-scoped."""

    id: str
    centroid: GeoPoint
    members: list[EmotionEvent]
    size: int
    dominant_category: Optional[EmotionCategory] = None


class ClusterResult(_Camel):
    algorithm: ClusterAlgorithm
    clusters: list[Cluster]
    # Events DBSCAN never absorbed into any cluster. Always empty for the
    # partitioning algorithms.
    noise: list[EmotionEvent] = Field(default_factory=list)


class FilteredEvents(_Camel):
    """Matching events, oldest first, optionally clustered."""

    count: int
    events: list[EmotionEvent]
    clusters: Optional[ClusterResult] = None


class TrendBucket(_Camel):
    time_key: str
    category: EmotionCategory
    group: Optional[str] = None
    count: int
    mean_intensity: float
    min_intensity: float
    max_intensity: float


class SentimentScore(_Camel):
    category: EmotionCategory
    count: int
    mean_intensity: float
    polarity: float


class HeatCell(_Camel):
    """
    One grid cell. `coordinates` is [lon, lat] of the cell key times the
    resolution, i.e. the grid anchor, not the cell center.
    """

    key: tuple[int, int]
    coordinates: tuple[float, float]
    count: int
    mean_intensity: float
    dominant_category: EmotionCategory


class Forecast(_Camel):
    target_time: datetime
    predicted_intensity: float
    predicted_category: Optional[EmotionCategory]
    confidence: float


class StatsSnapshot(_Camel):
    """Shared shape for the global, regional and per-topic stats pushes."""

    total_events: int
    mean_intensity: float
    dominant_category: Optional[EmotionCategory]
    last_updated: datetime
    active_subscriber_count: int = 0
    region: Optional[str] = None
    topic: Optional[str] = None


class Heartbeat(_Camel):
    timestamp: datetime
    subscriber_count: int
    uptime_seconds: float


class RegionVolume(_Camel):
    city: Optional[str]
    country: Optional[str]
    count: int
    mean_intensity: float


class PeriodTotals(_Camel):
    count: int
    mean_intensity: float
    categories: list[EmotionCategory]


class RegionComparison(_Camel):
    name: str
    total_events: int
    mean_intensity: float
    dominant_category: Optional[EmotionCategory]
    breakdown: dict[str, int]


class DashboardSnapshot(_Camel):
    last_24h: PeriodTotals
    last_7d: PeriodTotals
    top_regions: list[RegionVolume]
    trend_series: list[TrendBucket]
    generated_at: datetime


# ── Broadcast envelope ────────────────────────────────────────────────────────

EnvelopeType = Literal[
    "connected",
    "newEmotion",
    "globalStatsUpdated",
    "regionalStatsUpdated",
    "topicStatsUpdated",
    "heartbeat",
    "serverShutdown",
    "error",
]


class BroadcastEnvelope(_Camel):
    """Frame pushed to every subscriber of a topic."""

    type: EnvelopeType
    topic: str
    data: dict[str, Any]
    timestamp: datetime
