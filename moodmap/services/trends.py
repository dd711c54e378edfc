"""
trends.py — Time-bucketed trend aggregation, sentiment polarity and the
stats snapshots the broadcaster pushes.

Time keys are zero-padded so plain string order is chronological order:

    hour   2026-10-18T09
    day    2026-10-18
    week   2026-W42      (ISO year + ISO week, so a week never straddles keys)
    month  2026-10

Sentiment is not text analysis: each category carries a hand-assigned
sign (positive / negative / neutral, see models.emotion.polarity) and the
score for a category is the mean of that sign over its events.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from moodmap.core.errors import Deadline, InvalidInput
from moodmap.models.analytics import (
    Granularity,
    PeriodTotals,
    RegionComparison,
    RegionVolume,
    SentimentScore,
    StatsSnapshot,
    TrendBucket,
)
from moodmap.models.emotion import EmotionCategory, EmotionEvent, polarity

logger = logging.getLogger(__name__)

GROUPABLE_FIELDS = ("city", "country")


def time_key(timestamp: datetime, granularity: Granularity) -> str:
    ts = timestamp.astimezone(timezone.utc)
    if granularity is Granularity.HOUR:
        return ts.strftime("%Y-%m-%dT%H")
    if granularity is Granularity.DAY:
        return ts.strftime("%Y-%m-%d")
    if granularity is Granularity.WEEK:
        iso_year, iso_week, _ = ts.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    return ts.strftime("%Y-%m")


def _round(value: float) -> float:
    return round(value, 4)


def dominant_category(events: Iterable[EmotionEvent]) -> Optional[EmotionCategory]:
    """Most frequent category; ties go to the category seen first."""
    counts = Counter(e.category for e in events)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


class TrendAggregator:
    """Pure aggregation over an already-fetched list of events."""

    def aggregate(
        self,
        events: Sequence[EmotionEvent],
        granularity: Granularity | str = Granularity.DAY,
        group_by: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> list[TrendBucket]:
        """
        Bucket events by (time key, category[, group]) and reduce each
        bucket to count / mean / min / max intensity. Sorted by time key,
        then category, then group.
        """
        granularity = Granularity(granularity)
        if group_by is not None and group_by not in GROUPABLE_FIELDS:
            raise InvalidInput(f"cannot group by '{group_by}'; use one of {', '.join(GROUPABLE_FIELDS)}")
        deadline = deadline or Deadline(None)

        grouped: dict[tuple[str, EmotionCategory, Optional[str]], list[float]] = defaultdict(list)
        for index, event in enumerate(events):
            if index % 1000 == 0:
                deadline.check()
            group = getattr(event, group_by) if group_by else None
            grouped[(time_key(event.timestamp, granularity), event.category, group)].append(event.intensity)

        buckets = [
            TrendBucket(
                time_key=key,
                category=category,
                group=group,
                count=len(values),
                mean_intensity=_round(sum(values) / len(values)),
                min_intensity=min(values),
                max_intensity=max(values),
            )
            for (key, category, group), values in grouped.items()
        ]
        buckets.sort(key=lambda b: (b.time_key, b.category.value, b.group or ""))
        return buckets

    def sentiment(self, events: Sequence[EmotionEvent]) -> list[SentimentScore]:
        grouped: dict[EmotionCategory, list[EmotionEvent]] = defaultdict(list)
        for event in events:
            grouped[event.category].append(event)

        return [
            SentimentScore(
                category=category,
                count=len(members),
                mean_intensity=_round(sum(e.intensity for e in members) / len(members)),
                polarity=sum(polarity(e.category) for e in members) / len(members),
            )
            for category, members in sorted(grouped.items(), key=lambda item: item[0].value)
        ]

    def summarize(
        self,
        events: Sequence[EmotionEvent],
        *,
        subscriber_count: int = 0,
        region: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> StatsSnapshot:
        """Totals for one scope (global, a region, or a topic)."""
        total = len(events)
        mean = sum(e.intensity for e in events) / total if total else 0.0
        return StatsSnapshot(
            total_events=total,
            mean_intensity=_round(mean),
            dominant_category=dominant_category(events),
            last_updated=datetime.now(tz=timezone.utc),
            active_subscriber_count=subscriber_count,
            region=region,
            topic=topic,
        )

    def period_totals(self, events: Sequence[EmotionEvent]) -> PeriodTotals:
        total = len(events)
        seen: dict[EmotionCategory, None] = {}
        for event in events:
            seen.setdefault(event.category, None)
        return PeriodTotals(
            count=total,
            mean_intensity=_round(sum(e.intensity for e in events) / total) if total else 0.0,
            categories=list(seen),
        )

    def top_regions(self, events: Sequence[EmotionEvent], limit: int = 10) -> list[RegionVolume]:
        grouped: dict[tuple[Optional[str], Optional[str]], list[float]] = defaultdict(list)
        for event in events:
            grouped[(event.city, event.country)].append(event.intensity)

        ranked = sorted(grouped.items(), key=lambda item: len(item[1]), reverse=True)[:limit]
        return [
            RegionVolume(
                city=city,
                country=country,
                count=len(values),
                mean_intensity=_round(sum(values) / len(values)),
            )
            for (city, country), values in ranked
        ]

    def compare(self, name: str, events: Sequence[EmotionEvent]) -> RegionComparison:
        breakdown = Counter(e.category.value for e in events)
        total = len(events)
        return RegionComparison(
            name=name,
            total_events=total,
            mean_intensity=_round(sum(e.intensity for e in events) / total) if total else 0.0,
            dominant_category=dominant_category(events),
            breakdown=dict(breakdown),
        )
