"""
forecaster.py — Hour-by-hour intensity projection from calendar baselines.

This is a moving-average heuristic, not a trained model:

  1. Build two lookup tables from the historical events, mean intensity
     by hour-of-day (0–23, UTC) and by day-of-week (Mon=0 … Sun=6).
  2. For each of the next `horizon_hours` hours, predict the average of
     the two table entries for that hour's slot. If either slot has no
     history, fall back to the midpoint of the legacy five-point scale
     (3.0, i.e. 0.6 after normalisation).
  3. The predicted category is the most frequent category across ALL
     history, the same for every hour.
  4. Confidence is whatever the caller supplies (default 0.7). It is a
     label, not a statistic.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from moodmap.core.errors import Deadline, InvalidInput
from moodmap.models.analytics import Forecast
from moodmap.models.emotion import LEGACY_SCALE_MAX, EmotionEvent
from moodmap.services.trends import dominant_category

DEFAULT_CONFIDENCE = 0.7
LEGACY_FALLBACK_INTENSITY = 3.0
FALLBACK_INTENSITY = LEGACY_FALLBACK_INTENSITY / LEGACY_SCALE_MAX
MAX_HORIZON_HOURS = 24 * 14


def _means(table: dict[int, list[float]]) -> dict[int, float]:
    return {slot: sum(values) / len(values) for slot, values in table.items()}


class Forecaster:

    def baselines(self, events: Sequence[EmotionEvent]) -> tuple[dict[int, float], dict[int, float]]:
        """(mean intensity by hour-of-day, mean intensity by day-of-week)."""
        by_hour: dict[int, list[float]] = defaultdict(list)
        by_weekday: dict[int, list[float]] = defaultdict(list)
        for event in events:
            ts = event.timestamp.astimezone(timezone.utc)
            by_hour[ts.hour].append(event.intensity)
            by_weekday[ts.weekday()].append(event.intensity)
        return _means(by_hour), _means(by_weekday)

    def forecast(
        self,
        events: Sequence[EmotionEvent],
        horizon_hours: int,
        confidence: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> list[Forecast]:
        if not 0 <= horizon_hours <= MAX_HORIZON_HOURS:
            raise InvalidInput(f"horizon must be within 0–{MAX_HORIZON_HOURS} hours, got {horizon_hours}")
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise InvalidInput(f"confidence must be within [0, 1], got {confidence}")
        deadline = deadline or Deadline(None)

        by_hour, by_weekday = self.baselines(events)
        deadline.check()
        category = dominant_category(events)
        start = (now or datetime.now(tz=timezone.utc)).astimezone(timezone.utc)
        confidence = DEFAULT_CONFIDENCE if confidence is None else confidence

        forecasts = []
        for step in range(1, horizon_hours + 1):
            target = start + timedelta(hours=step)
            hourly = by_hour.get(target.hour)
            daily = by_weekday.get(target.weekday())
            if hourly is None or daily is None:
                predicted = FALLBACK_INTENSITY
            else:
                predicted = (hourly + daily) / 2
            forecasts.append(Forecast(
                target_time=target,
                predicted_intensity=round(predicted, 2),
                predicted_category=category,
                confidence=confidence,
            ))
        return forecasts
