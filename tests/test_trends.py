"""
test_trends.py — Time bucketing, sentiment polarity and stats snapshots.
"""

from datetime import datetime, timedelta, timezone

import pytest

from factories import BASE_TIME, KATHMANDU, LONDON, make_event
from moodmap.core.errors import ComputationTimeout, Deadline, InvalidInput
from moodmap.models.analytics import Granularity
from moodmap.services.trends import TrendAggregator, dominant_category, time_key


@pytest.fixture()
def aggregator():
    return TrendAggregator()


@pytest.fixture()
def week_of_events():
    """Two events per day for seven days, alternating joy / fear."""
    events = []
    for day in range(7):
        for slot, (category, intensity) in enumerate([("joy", 0.8), ("fear", 0.4)]):
            events.append(make_event(
                f"{day}-{slot}",
                KATHMANDU,
                category,
                intensity,
                timestamp=BASE_TIME + timedelta(days=day, hours=slot * 5),
                city="Kathmandu",
                country="Nepal",
            ))
    return events


class TestTimeKey:

    @pytest.mark.parametrize("granularity,expected", [
        (Granularity.HOUR, "2026-10-12T09"),
        (Granularity.DAY, "2026-10-12"),
        (Granularity.WEEK, "2026-W42"),
        (Granularity.MONTH, "2026-10"),
    ])
    def test_formats(self, granularity, expected):
        assert time_key(BASE_TIME, granularity) == expected

    def test_week_uses_iso_year(self):
        # 1 January 2027 is a Friday, so it belongs to the last ISO week of 2026.
        assert time_key(datetime(2027, 1, 1, tzinfo=timezone.utc), Granularity.WEEK) == "2026-W53"

    def test_keys_are_utc(self):
        kathmandu_time = timezone(timedelta(hours=5, minutes=45))
        local = datetime(2026, 10, 13, 2, 0, tzinfo=kathmandu_time)
        assert time_key(local, Granularity.DAY) == "2026-10-12"


class TestAggregate:

    @pytest.mark.parametrize("granularity", list(Granularity))
    def test_bucket_counts_sum_to_input(self, aggregator, week_of_events, granularity):
        buckets = aggregator.aggregate(week_of_events, granularity)
        assert sum(b.count for b in buckets) == len(week_of_events)

    def test_sorted_by_time_then_category(self, aggregator, week_of_events):
        buckets = aggregator.aggregate(list(reversed(week_of_events)), Granularity.DAY)
        keys = [(b.time_key, b.category.value) for b in buckets]
        assert keys == sorted(keys)

    def test_daily_buckets(self, aggregator, week_of_events):
        buckets = aggregator.aggregate(week_of_events, "day")
        assert len(buckets) == 14
        assert all(b.count == 1 for b in buckets)

    def test_bucket_statistics(self, aggregator):
        events = [
            make_event("a", intensity=0.2),
            make_event("b", intensity=0.6),
            make_event("c", intensity=1.0),
        ]
        [bucket] = aggregator.aggregate(events, Granularity.HOUR)
        assert bucket.count == 3
        assert bucket.mean_intensity == pytest.approx(0.6)
        assert bucket.min_intensity == 0.2
        assert bucket.max_intensity == 1.0

    def test_group_by_city(self, aggregator):
        events = [
            make_event("a", KATHMANDU, city="Kathmandu"),
            make_event("b", LONDON, city="London"),
            make_event("c", LONDON, city="London"),
        ]
        buckets = aggregator.aggregate(events, Granularity.DAY, group_by="city")
        assert {(b.group, b.count) for b in buckets} == {("Kathmandu", 1), ("London", 2)}

    def test_invalid_group_by(self, aggregator, week_of_events):
        with pytest.raises(InvalidInput):
            aggregator.aggregate(week_of_events, Granularity.DAY, group_by="intensity")

    def test_invalid_granularity(self, aggregator, week_of_events):
        with pytest.raises(ValueError):
            aggregator.aggregate(week_of_events, "fortnight")

    def test_empty_input(self, aggregator):
        assert aggregator.aggregate([], Granularity.DAY) == []

    def test_expired_deadline(self, aggregator, week_of_events):
        with pytest.raises(ComputationTimeout):
            aggregator.aggregate(week_of_events, Granularity.DAY, deadline=Deadline(0))


class TestSentiment:

    def test_polarity_signs(self, aggregator):
        events = [
            make_event("a", category="joy"),
            make_event("b", category="fear"),
            make_event("c", category="surprise"),
        ]
        scores = {s.category.value: s.polarity for s in aggregator.sentiment(events)}
        assert scores == {"joy": 1.0, "fear": -1.0, "surprise": 0.0}

    def test_counts_and_means(self, aggregator):
        events = [make_event("a", category="anger", intensity=0.2),
                  make_event("b", category="anger", intensity=0.4)]
        [score] = aggregator.sentiment(events)
        assert score.count == 2
        assert score.mean_intensity == pytest.approx(0.3)


class TestSummaries:

    def test_dominant_category_is_mode(self):
        events = [make_event("a", category="fear"),
                  make_event("b", category="joy"),
                  make_event("c", category="joy")]
        assert dominant_category(events).value == "joy"

    def test_dominant_category_tie_goes_to_first_seen(self):
        events = [make_event("a", category="trust"), make_event("b", category="anger")]
        assert dominant_category(events).value == "trust"

    def test_dominant_category_empty(self):
        assert dominant_category([]) is None

    def test_summarize(self, aggregator, week_of_events):
        snapshot = aggregator.summarize(week_of_events, subscriber_count=4, topic="global")
        assert snapshot.total_events == 14
        assert snapshot.mean_intensity == pytest.approx(0.6)
        assert snapshot.active_subscriber_count == 4
        assert snapshot.topic == "global"

    def test_summarize_empty(self, aggregator):
        snapshot = aggregator.summarize([])
        assert snapshot.total_events == 0
        assert snapshot.mean_intensity == 0.0
        assert snapshot.dominant_category is None

    def test_summarize_serialises_camel_case(self, aggregator, week_of_events):
        data = aggregator.summarize(week_of_events).model_dump(by_alias=True)
        for key in ("totalEvents", "meanIntensity", "dominantCategory", "lastUpdated",
                    "activeSubscriberCount"):
            assert key in data

    def test_top_regions_ranked_by_volume(self, aggregator):
        events = [make_event("a", city="Kathmandu", country="Nepal")] + [
            make_event(f"l{i}", LONDON, city="London", country="UK") for i in range(3)
        ]
        regions = aggregator.top_regions(events, limit=1)
        assert len(regions) == 1
        assert (regions[0].city, regions[0].count) == ("London", 3)

    def test_period_totals_lists_categories_once(self, aggregator, week_of_events):
        totals = aggregator.period_totals(week_of_events)
        assert totals.count == 14
        assert [c.value for c in totals.categories] == ["joy", "fear"]

    def test_compare(self, aggregator, week_of_events):
        comparison = aggregator.compare("valley", week_of_events)
        assert comparison.name == "valley"
        assert comparison.total_events == 14
        assert comparison.breakdown == {"joy": 7, "fear": 7}
        assert comparison.dominant_category.value == "joy"
