"""
heatmap.py — Snap events onto a uniform lat/lon grid for density rendering.

Cell key    (round(lon / resolution), round(lat / resolution))
Coordinates [key_lon * resolution, key_lat * resolution]

The output coordinate is the grid anchor the key rounds to, not the
geometric center of a [lo, hi) bin, so feeding a cell's coordinates back
through bin() at the same resolution lands in the same cell.

dominantCategory
────────────────
"first" (default) keeps the category of the first event seen in the cell
during the single pass over the input. It depends on input order and is
NOT the most common category. Pass dominant="mode" for a per-cell
frequency count instead (ties go to the category seen first).
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from moodmap.core.errors import Deadline, InvalidInput
from moodmap.models.analytics import Bounds, HeatCell
from moodmap.models.emotion import EmotionCategory, EmotionEvent

logger = logging.getLogger(__name__)

DominantMode = Literal["first", "mode"]


@dataclass
class _CellAccumulator:
    first: EmotionCategory
    count: int = 0
    total: float = 0.0
    categories: Counter = field(default_factory=Counter)


def cell_key(lat: float, lon: float, resolution: float) -> tuple[int, int]:
    return round(lon / resolution), round(lat / resolution)


class HeatmapBinner:

    def bin(
        self,
        events: Sequence[EmotionEvent],
        bounds: Optional[Bounds],
        resolution: float = 0.1,
        *,
        dominant: DominantMode = "first",
        deadline: Optional[Deadline] = None,
    ) -> list[HeatCell]:
        if resolution <= 0:
            raise InvalidInput(f"resolution must be positive, got {resolution}")
        if dominant not in ("first", "mode"):
            raise InvalidInput(f"unknown dominant-category mode '{dominant}'")
        deadline = deadline or Deadline(None)

        cells: dict[tuple[int, int], _CellAccumulator] = {}
        for index, event in enumerate(events):
            if index % 1000 == 0:
                deadline.check()
            if bounds is not None and not bounds.contains(event.latitude, event.longitude):
                continue
            key = cell_key(event.latitude, event.longitude, resolution)
            acc = cells.get(key)
            if acc is None:
                acc = cells[key] = _CellAccumulator(first=event.category)
            acc.count += 1
            acc.total += event.intensity
            acc.categories[event.category] += 1

        return [
            HeatCell(
                key=key,
                coordinates=(key[0] * resolution, key[1] * resolution),
                count=acc.count,
                mean_intensity=round(acc.total / acc.count, 2),
                dominant_category=acc.first if dominant == "first" else acc.categories.most_common(1)[0][0],
            )
            for key, acc in cells.items()
        ]
