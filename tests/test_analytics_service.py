"""
test_analytics_service.py — The query surface over an in-memory EventStore:
filter plumbing, deadlines and the stats snapshots.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from factories import BASE_TIME, BHAKTAPUR, KATHMANDU, LALITPUR, LONDON, make_event
from moodmap.core.errors import ComputationTimeout, InvalidInput, UnsupportedAlgorithm
from moodmap.models.analytics import Bounds, ClusterParams, EventFilter, NamedBounds, Radius
from moodmap.models.emotion import EmotionCategory
from moodmap.services.analytics import DEFAULT_FILTER_LIMIT, AnalyticsService
from moodmap.services.event_store import matches


class MemoryStore:
    """EventStore over a list; honours the filter fields the service sets."""

    def __init__(self, events, delay=0.0):
        self.events = events
        self.delay = delay
        self.filters = []

    async def find_events(self, event_filter: EventFilter):
        self.filters.append(event_filter)
        if self.delay:
            await asyncio.sleep(self.delay)
        events = [
            e for e in self.events
            if (event_filter.since is None or e.timestamp >= event_filter.since)
            and (event_filter.categories is None or e.category in event_filter.categories)
            and (event_filter.bounds is None or event_filter.bounds.contains(e.latitude, e.longitude))
            and (event_filter.region is None
                 or event_filter.region.lower() in ((e.city or "") + " " + (e.country or "")).lower())
            and matches(e, event_filter)
        ]
        events.sort(key=lambda e: e.timestamp)
        return events[-event_filter.limit:] if event_filter.limit else events


def _recent(hours):
    return datetime.now(tz=timezone.utc) - timedelta(hours=hours)


@pytest.fixture()
def events():
    return [
        make_event("ktm", KATHMANDU, "joy", 0.8, _recent(1), "Kathmandu", "Nepal"),
        make_event("ltp", LALITPUR, "joy", 0.6, _recent(2), "Lalitpur", "Nepal"),
        make_event("bkt", BHAKTAPUR, "fear", 0.4, _recent(3), "Bhaktapur", "Nepal"),
        make_event("lon", LONDON, "sadness", 0.2, _recent(4), "London", "United Kingdom"),
        make_event("old", KATHMANDU, "anger", 1.0, _recent(24 * 5), "Kathmandu", "Nepal"),
    ]


@pytest.fixture()
def make_service(events):
    def factory(store=None, **kwargs):
        kwargs.setdefault("stats_window_hours", 24)
        return AnalyticsService(store or MemoryStore(events), **kwargs)

    return factory


class TestClusters:

    async def test_fetch_is_capped_at_max_events(self, make_service, events):
        store = MemoryStore(events)
        await make_service(store, max_cluster_events=3).get_clusters("kmeans", ClusterParams(k=1))
        assert store.filters[0].limit == 3

    async def test_dbscan_over_the_store(self, make_service):
        result = await make_service().get_clusters("dbscan", ClusterParams(min_points=2, max_distance=50))
        assert [sorted(m.id for m in c.members) for c in result.clusters] == [["bkt", "ktm", "ltp", "old"]]
        assert [e.id for e in result.noise] == ["lon"]

    async def test_seed_makes_kmeans_repeatable(self, make_service):
        service = make_service()
        first = await service.get_clusters("kmeans", ClusterParams(k=2), seed=11)
        second = await service.get_clusters("kmeans", ClusterParams(k=2), seed=11)
        assert first.model_dump() == second.model_dump()

    async def test_unsupported_algorithm(self, make_service):
        with pytest.raises(UnsupportedAlgorithm):
            await make_service().get_clusters("optics")

    async def test_slow_store_times_out(self, make_service, events):
        service = make_service(MemoryStore(events, delay=0.5))
        with pytest.raises(ComputationTimeout):
            await service.get_clusters("kmeans", timeout=0.05)


class TestAggregates:

    async def test_trends_count_every_event(self, make_service, events):
        buckets = await make_service().get_trends("day")
        assert sum(b.count for b in buckets) == len(events)

    async def test_sentiment_respects_categories(self, make_service):
        scores = await make_service().get_sentiment(EventFilter(categories=[EmotionCategory.JOY]))
        assert [(s.category.value, s.count) for s in scores] == [("joy", 2)]

    async def test_heatmap_passes_bounds_to_store(self, make_service, events):
        store = MemoryStore(events)
        nepal = Bounds(south=26, west=80, north=31, east=89)
        cells = await make_service(store).get_heatmap(nepal, 1.0)
        assert store.filters[0].bounds == nepal
        assert sum(c.count for c in cells) == 4

    async def test_forecast_reads_at_least_a_week(self, make_service, events):
        store = MemoryStore(events)
        forecasts = await make_service(store).get_forecast("Nepal", 6)
        assert len(forecasts) == 6
        window = datetime.now(tz=timezone.utc) - store.filters[0].since
        assert window >= timedelta(days=7) - timedelta(minutes=1)
        assert store.filters[0].region == "Nepal"

    async def test_dashboard_snapshot(self, make_service):
        snapshot = await make_service().get_dashboard_snapshot()
        assert snapshot.last_24h.count == 4
        assert snapshot.last_7d.count == 5
        assert snapshot.top_regions[0].count == 1

    async def test_comparison(self, make_service):
        regions = [
            NamedBounds(name="valley", bounds=Bounds(south=27.5, west=85.2, north=27.8, east=85.5)),
            NamedBounds(name="london", bounds=Bounds(south=51, west=-1, north=52, east=1)),
        ]
        result = await make_service().get_comparison(regions)
        assert [(r.name, r.total_events) for r in result] == [("valley", 3), ("london", 1)]
        assert result[0].breakdown == {"joy": 2, "fear": 1}

    async def test_comparison_reduces_off_the_event_loop(self, make_service):
        service = make_service()
        reduced = []
        compute = service._compute

        async def recording(fn, *args, **kwargs):
            reduced.append(fn)
            return await compute(fn, *args, **kwargs)

        service._compute = recording
        regions = [
            NamedBounds(name="valley", bounds=Bounds(south=27.5, west=85.2, north=27.8, east=85.5)),
            NamedBounds(name="london", bounds=Bounds(south=51, west=-1, north=52, east=1)),
        ]
        await service.get_comparison(regions)
        assert reduced == [service.trends.compare, service.trends.compare]

    async def test_comparison_shares_one_deadline(self, make_service, events):
        service = make_service(MemoryStore(events, delay=0.03))
        regions = [
            NamedBounds(name=f"r{i}", bounds=Bounds(south=-90, west=-180, north=90, east=180))
            for i in range(3)
        ]
        with pytest.raises(ComputationTimeout):
            await service.get_comparison(regions, timeout=0.05)


class TestStats:

    async def test_global_stats_use_the_window(self, make_service):
        stats = await make_service().global_stats(subscriber_count=2)
        assert stats.total_events == 4
        assert stats.active_subscriber_count == 2
        assert stats.topic == "global"

    async def test_regional_stats_match_city_and_country(self, make_service):
        stats = await make_service().regional_stats("Kathmandu", "Nepal")
        assert stats.total_events == 1
        assert stats.region == "Kathmandu-Nepal"

    async def test_regional_stats_are_exact_for_a_lone_city(self, make_service, events):
        events.append(make_event("valley", KATHMANDU, "joy", 0.5, _recent(1), "Kathmandu Valley", "Nepal"))
        stats = await make_service().regional_stats("Kathmandu", None)
        assert stats.total_events == 1
        assert stats.region == "Kathmandu-unknown"

    async def test_regional_stats_are_exact_for_a_lone_country(self, make_service, events):
        events.append(make_event("ind", KATHMANDU, "joy", 0.5, _recent(1), "Kolkata", "Nepalganj Region"))
        assert (await make_service().regional_stats(None, "Nepal")).total_events == 3

    async def test_region_topic_ignores_longer_names(self, make_service, events):
        events.append(make_event("valley", KATHMANDU, "joy", 0.5, _recent(1), "Kathmandu Valley", "Nepal"))
        stats = await make_service().topic_stats("region-kathmandu")
        assert stats.total_events == 1

    async def test_emotion_topic_stats(self, make_service):
        stats = await make_service().topic_stats("emotion-joy")
        assert stats.total_events == 2
        assert stats.dominant_category.value == "joy"

    async def test_region_topic_stats(self, make_service):
        stats = await make_service().topic_stats("region-nepal")
        assert stats.total_events == 3

    async def test_global_topic_stats(self, make_service):
        assert (await make_service().topic_stats("global")).total_events == 4

    @pytest.mark.parametrize("topic", ["emotion-boredom", "weather"])
    async def test_unknown_topic(self, make_service, topic):
        with pytest.raises(InvalidInput):
            await make_service().topic_stats(topic)


class TestFilteredEvents:

    async def test_default_limit(self, make_service, events):
        store = MemoryStore(events)
        result = await make_service(store).get_filtered_events(EventFilter())
        assert store.filters[0].limit == DEFAULT_FILTER_LIMIT
        assert result.count == len(events)
        assert result.clusters is None

    async def test_intensity_range(self, make_service):
        result = await make_service().get_filtered_events(EventFilter(min_intensity=0.5, max_intensity=0.9))
        assert [e.id for e in result.events] == ["ltp", "ktm"]

    async def test_radius_uses_great_circle_distance(self, make_service):
        # Bhaktapur is ~11.6 km from Kathmandu, Lalitpur ~6.5 km.
        kathmandu = Radius(lat=KATHMANDU[0], lon=KATHMANDU[1], km=10)
        result = await make_service().get_filtered_events(EventFilter(radius=kathmandu))
        assert {e.id for e in result.events} == {"old", "ltp", "ktm"}

    async def test_hour_of_day_and_weekday(self, make_service):
        store = MemoryStore([
            make_event("mon-09", timestamp=BASE_TIME),
            make_event("mon-10", timestamp=BASE_TIME + timedelta(hours=1)),
            make_event("tue-09", timestamp=BASE_TIME + timedelta(days=1)),
        ])
        service = make_service(store)

        at_nine = await service.get_filtered_events(EventFilter(hours_of_day=[9]))
        assert [e.id for e in at_nine.events] == ["mon-09", "tue-09"]

        tuesday_nine = await service.get_filtered_events(EventFilter(hours_of_day=[9], days_of_week=[2]))
        assert [e.id for e in tuesday_nine.events] == ["tue-09"]

    async def test_clustering_caps_the_fetch(self, make_service, events):
        store = MemoryStore(events)
        service = make_service(store, max_cluster_events=3)
        result = await service.get_filtered_events(
            EventFilter(limit=500), cluster="dbscan", params=ClusterParams(min_points=2, max_distance=50),
        )
        assert store.filters[0].limit == 3
        assert result.count == 3
        assert result.clusters.algorithm.value == "dbscan"

    async def test_unsupported_cluster_algorithm(self, make_service):
        with pytest.raises(UnsupportedAlgorithm):
            await make_service().get_filtered_events(EventFilter(), cluster="optics")
