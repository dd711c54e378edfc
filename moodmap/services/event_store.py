"""
event_store.py — Read-only adapter over the external emotion event store.

The engine never writes events. It asks for them through the EventStore
protocol, which keeps every aggregate testable against an in-memory list
and lets the production path translate EventFilter into a single Motor
query. Both stored shapes (flat latitude/longitude + coreEmotion, and
GeoJSON location + category) are matched:

    {
      "timestamp": {"$gte": since, "$lte": until},
      "$and": [
        {"$or": [{"latitude": ..., "longitude": ...},
                 {"location": {"$geoWithin": {"$box": [[w, s], [e, n]]}}}]},
        {"$or": [{"coreEmotion": {"$in": [...]}}, {"category": {"$in": [...]}}]},
        {"$or": [{"intensity": [lo, hi]}, {"intensity": [lo*5, hi*5]}]},
        {"$or": [{"city": /region/i}, {"country": /region/i}]}
      ],
      "$expr": {"$and": [{"$in": [{"$hour": "$timestamp"}, hours]},
                         {"$in": [{"$isoDayOfWeek": "$timestamp"}, days]}]}
    }

A single constraint group is inlined instead of wrapped in "$and". A
radius is queried as its enclosing box; the exact distance, like the
exact normalised intensity range, is enforced by matches() after the
fetch, so a limited fetch can come back short.
Documents that fail EmotionEvent validation are logged and skipped so one
bad row never aborts an aggregate.

Suggested indexes on the events collection:
    db.emotions.createIndex({ timestamp: -1 })
    db.emotions.createIndex({ latitude: 1, longitude: 1 })
    db.emotions.createIndex({ coreEmotion: 1, timestamp: -1 })
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional, Protocol

from moodmap.core.errors import InvalidInput, StoreUnavailable
from moodmap.models.analytics import EventFilter
from moodmap.models.emotion import EmotionEvent, LEGACY_SCALE_MAX
from moodmap.services.geo_index import distance_km, radius_box

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    async def find_events(self, event_filter: EventFilter) -> list[EmotionEvent]: ...


def build_query(event_filter: EventFilter) -> dict:
    """Translate an EventFilter into a MongoDB query document."""
    query: dict = {}
    clauses: list[dict] = []

    if event_filter.since or event_filter.until:
        window = {}
        if event_filter.since:
            window["$gte"] = event_filter.since
        if event_filter.until:
            window["$lte"] = event_filter.until
        query["timestamp"] = window

    if event_filter.bounds:
        b = event_filter.bounds
        clauses.append(_box_clause(b.south, b.west, b.north, b.east))

    # The circle is fetched as its enclosing box and trimmed in to_events().
    if event_filter.radius:
        r = event_filter.radius
        clauses.append(_box_clause(*radius_box(r.lat, r.lon, r.km)))

    if event_filter.categories:
        values = [c.value for c in event_filter.categories]
        clauses.append({"$or": [{"coreEmotion": {"$in": values}}, {"category": {"$in": values}}]})

    # Stored intensities may still be on the legacy 1–5 scale, so the
    # range is widened to a superset of both readings here and enforced
    # exactly after normalisation in to_events().
    if event_filter.min_intensity is not None or event_filter.max_intensity is not None:
        lo = event_filter.min_intensity if event_filter.min_intensity is not None else 0.0
        hi = event_filter.max_intensity if event_filter.max_intensity is not None else 1.0
        clauses.append({"$or": [
            {"intensity": {"$gte": lo, "$lte": hi}},
            {"intensity": {"$gte": lo * LEGACY_SCALE_MAX, "$lte": hi * LEGACY_SCALE_MAX}},
        ]})

    if event_filter.region:
        pattern = {"$regex": re.escape(event_filter.region), "$options": "i"}
        clauses.append({"$or": [{"city": pattern}, {"country": pattern}]})

    calendar = []
    if event_filter.hours_of_day:
        calendar.append({"$in": [{"$hour": "$timestamp"}, event_filter.hours_of_day]})
    if event_filter.days_of_week:
        calendar.append({"$in": [{"$isoDayOfWeek": "$timestamp"}, event_filter.days_of_week]})
    if calendar:
        query["$expr"] = calendar[0] if len(calendar) == 1 else {"$and": calendar}

    if len(clauses) == 1:
        query.update(clauses[0])
    elif clauses:
        query["$and"] = clauses
    return query


def _box_clause(south: float, west: float, north: float, east: float) -> dict:
    return {"$or": [
        {"latitude": {"$gte": south, "$lte": north}, "longitude": {"$gte": west, "$lte": east}},
        {"location": {"$geoWithin": {"$box": [[west, south], [east, north]]}}},
    ]}


def to_events(docs: Iterable[dict], event_filter: EventFilter | None = None) -> list[EmotionEvent]:
    """Convert raw documents, skipping (and logging) the invalid ones."""
    events = []
    for doc in docs:
        try:
            event = EmotionEvent.from_document(doc)
        except InvalidInput as exc:
            logger.warning("Skipping invalid event: %s", exc)
            continue
        if event_filter is not None and not matches(event, event_filter):
            continue
        events.append(event)
    return events


def matches(event: EmotionEvent, event_filter: EventFilter) -> bool:
    """
    The constraints the query can only approximate: normalised intensity,
    true great-circle radius, UTC hour of day and ISO weekday.
    """
    if event_filter.min_intensity is not None and event.intensity < event_filter.min_intensity:
        return False
    if event_filter.max_intensity is not None and event.intensity > event_filter.max_intensity:
        return False
    radius = event_filter.radius
    if radius and distance_km(radius.lat, radius.lon, event.latitude, event.longitude) > radius.km:
        return False
    if event_filter.hours_of_day and event.timestamp.hour not in event_filter.hours_of_day:
        return False
    if event_filter.days_of_week and event.timestamp.isoweekday() not in event_filter.days_of_week:
        return False
    return True


class MongoEventStore:
    """
    EventStore backed by a Motor database handle.

    Pass `db` for a request-scoped handle, or `db_provider` for long-lived
    owners (the scheduler) that must pick up a connection made after they
    were built.
    """

    def __init__(
        self,
        db=None,
        collection: str = "emotions",
        *,
        db_provider: Optional[Callable[[], object]] = None,
    ):
        self._db = db
        self._db_provider = db_provider
        self._collection = collection

    def _database(self):
        db = self._db if self._db is not None else (self._db_provider() if self._db_provider else None)
        if db is None:
            raise StoreUnavailable("Event store unavailable")
        return db

    async def find_events(self, event_filter: EventFilter) -> list[EmotionEvent]:
        db = self._database()
        query = build_query(event_filter)
        if event_filter.limit:
            # Most recent N, returned oldest first like the unbounded path.
            cursor = db[self._collection].find(query).sort("timestamp", -1).limit(event_filter.limit)
            docs = [doc async for doc in cursor]
            docs.reverse()
        else:
            cursor = db[self._collection].find(query).sort("timestamp", 1)
            docs = [doc async for doc in cursor]
        events = to_events(docs, event_filter)
        logger.debug("find_events %s → %d docs, %d valid", query, len(docs), len(events))
        return events
