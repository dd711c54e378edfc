"""
analytics.py — The query surface the HTTP layer and the scheduler call.

Each get_* method follows the same three steps:

  1. Start a Deadline (caller-supplied timeout, else
     settings.computation_timeout_seconds).
  2. Fetch the working set from the EventStore under asyncio.wait_for,
     bounded by the remaining budget.
  3. Run the CPU-bound reduction in a worker thread (asyncio.to_thread)
     so the event loop keeps serving websockets; the reduction checks
     the same Deadline from inside its loops.

A deadline overrun raises ComputationTimeout. Store errors propagate to
the caller untouched. Nothing here is cached, so concurrent calls never
share mutable state.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar

from moodmap.core.config import settings
from moodmap.core.errors import ComputationTimeout, Deadline, InvalidInput
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
    RegionComparison,
    SentimentScore,
    StatsSnapshot,
    TrendBucket,
)
from moodmap.models.emotion import EmotionCategory, EmotionEvent
from moodmap.services.broadcast import EMOTION_TOPIC_PREFIX, GLOBAL_TOPIC, REGION_TOPIC_PREFIX
from moodmap.services.clustering import ClusterEngine
from moodmap.services.event_store import EventStore
from moodmap.services.forecaster import Forecaster
from moodmap.services.heatmap import DominantMode, HeatmapBinner
from moodmap.services.trends import TrendAggregator

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FILTER_LIMIT = 1000
DASHBOARD_TOP_REGIONS = 10
# The weekday baseline needs at least a week of history to cover every slot.
MIN_FORECAST_HISTORY_HOURS = 24 * 7


class AnalyticsService:

    def __init__(
        self,
        store: EventStore,
        *,
        max_cluster_events: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        stats_window_hours: Optional[int] = None,
    ):
        self.store = store
        self.clusters = ClusterEngine(max_events=max_cluster_events or settings.max_cluster_events)
        self.trends = TrendAggregator()
        self.heatmap = HeatmapBinner()
        self.forecaster = Forecaster()
        self.timeout_seconds = timeout_seconds or settings.computation_timeout_seconds
        self.stats_window_hours = stats_window_hours or settings.stats_window_hours

    # ── Plumbing ──────────────────────────────────────────────────────────────

    def _deadline(self, operation: str, timeout: Optional[float]) -> Deadline:
        return Deadline(timeout or self.timeout_seconds, operation)

    async def _fetch(self, event_filter: EventFilter, deadline: Deadline) -> list[EmotionEvent]:
        try:
            return await asyncio.wait_for(self.store.find_events(event_filter), deadline.remaining())
        except asyncio.TimeoutError:
            raise ComputationTimeout(f"{deadline.operation} (fetch)", deadline.seconds or 0.0) from None

    @staticmethod
    async def _compute(fn: Callable[..., T], *args, **kwargs) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    @staticmethod
    def _since(hours: int) -> datetime:
        return datetime.now(tz=timezone.utc) - timedelta(hours=hours)

    # ── Query surface ─────────────────────────────────────────────────────────

    async def get_clusters(
        self,
        algorithm: ClusterAlgorithm | str,
        params: Optional[ClusterParams] = None,
        filters: Optional[EventFilter] = None,
        *,
        seed: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ClusterResult:
        deadline = self._deadline("clustering", timeout)
        event_filter = (filters or EventFilter()).model_copy(update={"limit": self.clusters.max_events})
        events = await self._fetch(event_filter, deadline)
        rng = random.Random(seed) if seed is not None else None
        return await self._compute(
            self.clusters.cluster, events, algorithm, params, rng=rng, deadline=deadline,
        )

    async def get_trends(
        self,
        granularity: Granularity | str = Granularity.DAY,
        filters: Optional[EventFilter] = None,
        group_by: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> list[TrendBucket]:
        deadline = self._deadline("trend aggregation", timeout)
        events = await self._fetch(filters or EventFilter(), deadline)
        return await self._compute(self.trends.aggregate, events, granularity, group_by, deadline=deadline)

    async def get_sentiment(
        self, filters: Optional[EventFilter] = None, *, timeout: Optional[float] = None,
    ) -> list[SentimentScore]:
        deadline = self._deadline("sentiment", timeout)
        events = await self._fetch(filters or EventFilter(), deadline)
        return await self._compute(self.trends.sentiment, events)

    async def get_heatmap(
        self,
        bounds: Bounds,
        resolution: float = 0.1,
        filters: Optional[EventFilter] = None,
        *,
        dominant: DominantMode = "first",
        timeout: Optional[float] = None,
    ) -> list[HeatCell]:
        deadline = self._deadline("heatmap", timeout)
        event_filter = (filters or EventFilter()).model_copy(update={"bounds": bounds})
        events = await self._fetch(event_filter, deadline)
        return await self._compute(
            self.heatmap.bin, events, bounds, resolution, dominant=dominant, deadline=deadline,
        )

    async def get_forecast(
        self,
        region: Optional[str],
        horizon_hours: int,
        confidence: Optional[float] = None,
        *,
        timeout: Optional[float] = None,
    ) -> list[Forecast]:
        deadline = self._deadline("forecast", timeout)
        history_hours = max(horizon_hours * 2, MIN_FORECAST_HISTORY_HOURS)
        events = await self._fetch(EventFilter(since=self._since(history_hours), region=region), deadline)
        return await self._compute(
            self.forecaster.forecast,
            events,
            horizon_hours,
            confidence if confidence is not None else settings.forecast_confidence,
            deadline=deadline,
        )

    async def get_dashboard_snapshot(self, *, timeout: Optional[float] = None) -> DashboardSnapshot:
        deadline = self._deadline("dashboard", timeout)
        week = await self._fetch(EventFilter(since=self._since(24 * 7)), deadline)
        day_start = self._since(24)

        def build() -> DashboardSnapshot:
            day = [e for e in week if e.timestamp >= day_start]
            deadline.check()
            return DashboardSnapshot(
                last_24h=self.trends.period_totals(day),
                last_7d=self.trends.period_totals(week),
                top_regions=self.trends.top_regions(day, DASHBOARD_TOP_REGIONS),
                trend_series=self.trends.aggregate(week, Granularity.DAY, deadline=deadline),
                generated_at=datetime.now(tz=timezone.utc),
            )

        return await self._compute(build)

    async def get_comparison(
        self, regions: list[NamedBounds], *, timeout: Optional[float] = None,
    ) -> list[RegionComparison]:
        deadline = self._deadline("comparison", timeout)
        results = []
        for region in regions:
            deadline.check()
            events = await self._fetch(
                EventFilter(bounds=region.bounds, since=self._since(region.hours)), deadline,
            )
            results.append(await self._compute(self.trends.compare, region.name, events))
        return results

    async def get_filtered_events(
        self,
        filters: EventFilter,
        *,
        cluster: Optional[ClusterAlgorithm | str] = None,
        params: Optional[ClusterParams] = None,
        seed: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> FilteredEvents:
        """
        The most recent `filters.limit` events (DEFAULT_FILTER_LIMIT when
        unset) matching every filter field, oldest first.

        With `cluster` set the same events are clustered too, and the
        fetch is capped at the clustering working-set size.
        """
        deadline = self._deadline("filtered events", timeout)
        limit = filters.limit or DEFAULT_FILTER_LIMIT
        if cluster is not None:
            limit = min(limit, self.clusters.max_events)
        events = await self._fetch(filters.model_copy(update={"limit": limit}), deadline)

        clusters = None
        if cluster is not None:
            rng = random.Random(seed) if seed is not None else None
            clusters = await self._compute(
                self.clusters.cluster, events, cluster, params, rng=rng, deadline=deadline,
            )
        return FilteredEvents(count=len(events), events=events, clusters=clusters)

    # ── Stats snapshots for the broadcaster ───────────────────────────────────

    def _window(self, **extra) -> EventFilter:
        return EventFilter(since=self._since(self.stats_window_hours), **extra)

    async def global_stats(self, subscriber_count: int = 0) -> StatsSnapshot:
        deadline = self._deadline("global stats", None)
        events = await self._fetch(self._window(), deadline)
        return self.trends.summarize(events, subscriber_count=subscriber_count, topic=GLOBAL_TOPIC)

    async def regional_stats(self, city: Optional[str], country: Optional[str]) -> StatsSnapshot:
        deadline = self._deadline("regional stats", None)
        events = await self._fetch(self._window(region=city or country), deadline)
        # The store matches substrings; a region is the exact place.
        events = [
            e for e in events
            if (city is None or e.city == city) and (country is None or e.country == country)
        ]
        return self.trends.summarize(events, region=f"{city or 'unknown'}-{country or 'unknown'}")

    async def topic_stats(self, topic: str, subscriber_count: int = 0) -> StatsSnapshot:
        if topic == GLOBAL_TOPIC:
            return await self.global_stats(subscriber_count)
        if topic.startswith(EMOTION_TOPIC_PREFIX):
            try:
                category = EmotionCategory(topic[len(EMOTION_TOPIC_PREFIX):])
            except ValueError:
                raise InvalidInput(f"unknown emotion topic '{topic}'") from None
            event_filter = self._window(categories=[category])
        elif topic.startswith(REGION_TOPIC_PREFIX):
            place = topic[len(REGION_TOPIC_PREFIX):]
            event_filter = self._window(region=place)
        else:
            raise InvalidInput(f"no stats scope for topic '{topic}'")

        deadline = self._deadline(f"{topic} stats", None)
        events = await self._fetch(event_filter, deadline)
        if event_filter.region:
            wanted = place.casefold()
            events = [
                e for e in events
                if wanted in ((e.city or "").casefold(), (e.country or "").casefold())
            ]
        return self.trends.summarize(events, subscriber_count=subscriber_count, topic=topic)
