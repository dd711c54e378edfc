"""
emotion.py — The EmotionEvent input record and the emotion vocabulary.

Events arrive from the external store as MongoDB documents in one of two
shapes, both handled by EmotionEvent.from_document():

  Flat (map submissions):
    { "_id": ObjectId, "latitude": 27.7, "longitude": 85.3,
      "coreEmotion": "joy", "intensity": 0.8, "city": "Kathmandu",
      "country": "Nepal", "timestamp": ISODate(...) }

  GeoJSON (mood log):
    { "_id": ObjectId, "location": { "type": "Point", "coordinates": [85.3, 27.7] },
      "category": "joy", "intensity": 4, "timestamp": ISODate(...) }

Intensity is normalised onto [0, 1]. Legacy five-point scores (integers 1..5,
or anything above 1) are divided by 5, so a legacy 3 becomes 0.6 and a
legacy 1 becomes 0.2. The mood log only ever stored five-point scores, so
whole numbers in the GeoJSON shape are read as legacy even when the
driver hands them back as doubles.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from moodmap.core.errors import InvalidInput

LEGACY_SCALE_MIN = 1
LEGACY_SCALE_MAX = 5.0


class EmotionCategory(str, Enum):
    JOY = "joy"
    TRUST = "trust"
    FEAR = "fear"
    SURPRISE = "surprise"
    SADNESS = "sadness"
    DISGUST = "disgust"
    ANGER = "anger"
    ANTICIPATION = "anticipation"


POSITIVE_CATEGORIES = frozenset({EmotionCategory.JOY, EmotionCategory.TRUST, EmotionCategory.ANTICIPATION})
NEGATIVE_CATEGORIES = frozenset({
    EmotionCategory.FEAR, EmotionCategory.SADNESS, EmotionCategory.DISGUST, EmotionCategory.ANGER,
})


def polarity(category: EmotionCategory) -> int:
    """Hand-assigned sign: +1 positive, -1 negative, 0 neutral (surprise)."""
    if category in POSITIVE_CATEGORIES:
        return 1
    if category in NEGATIVE_CATEGORIES:
        return -1
    return 0


def normalize_intensity(value: Any, legacy: Optional[bool] = None) -> float:
    """
    Map a raw intensity onto [0, 1].

    legacy=True reads the value on the five-point scale (1..5 → 0.2..1.0)
    and legacy=False requires it to be normalised already. Left as None,
    the scale is inferred: integers from 1 up and any value above 1 are
    five-point, everything else is taken as normalised. An integer 1 is
    therefore the lowest legacy score, while a float 1.0 is the top of
    the normalised range.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"intensity must be a number, got {value!r}")
    if legacy is None:
        legacy = (isinstance(value, int) and value >= LEGACY_SCALE_MIN) or value > 1.0
    value = float(value)
    if legacy:
        if not LEGACY_SCALE_MIN <= value <= LEGACY_SCALE_MAX:
            raise ValueError(f"intensity {value} outside the legacy 1–5 scale")
        return value / LEGACY_SCALE_MAX
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"intensity {value} outside [0, 1]")
    return value


class EmotionEvent(BaseModel):
    """A single geotagged, timestamped, categorised intensity observation."""

    model_config = ConfigDict(frozen=True)

    id: str
    category: EmotionCategory
    intensity: float
    coordinates: tuple[float, float]   # (longitude, latitude) — GeoJSON order
    timestamp: datetime
    city: Optional[str] = None
    country: Optional[str] = None

    @field_validator("intensity", mode="before")
    @classmethod
    def _normalise_intensity(cls, value: Any) -> float:
        return normalize_intensity(value)

    @field_validator("coordinates")
    @classmethod
    def _check_coordinates(cls, value: tuple[float, float]) -> tuple[float, float]:
        lon, lat = value
        if not -180.0 <= lon <= 180.0:
            raise ValueError(f"longitude {lon} outside [-180, 180]")
        if not -90.0 <= lat <= 90.0:
            raise ValueError(f"latitude {lat} outside [-90, 90]")
        return value

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # Motor returns naive datetimes that are already UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]

    @property
    def region_key(self) -> str:
        return f"{self.city or 'unknown'}-{self.country or 'unknown'}"

    @classmethod
    def from_document(cls, doc: dict) -> "EmotionEvent":
        """
        Build an event from a raw store document.

        Raises InvalidInput for anything the upstream validator should
        have rejected, so callers can log and skip the single event.
        """
        intensity = doc.get("intensity")
        location = doc.get("location") or {}
        if "coordinates" in location:
            try:
                lon, lat = location["coordinates"][:2]
            except (TypeError, ValueError) as exc:
                raise InvalidInput(f"malformed GeoJSON coordinates in {doc.get('_id')}") from exc
            # Mood-log scores are five-point even when stored as 1.0, 2.0, ...
            if isinstance(intensity, float) and intensity.is_integer() and intensity >= LEGACY_SCALE_MIN:
                intensity = int(intensity)
        else:
            lon, lat = doc.get("longitude"), doc.get("latitude")

        try:
            return cls(
                id=str(doc.get("_id") or doc.get("id")),
                category=(doc.get("coreEmotion") or doc.get("category") or "").lower(),
                intensity=intensity,
                coordinates=(lon, lat),
                timestamp=doc.get("timestamp") or doc.get("createdAt"),
                city=doc.get("city"),
                country=doc.get("country"),
            )
        except ValidationError as exc:
            raise InvalidInput(f"rejected event {doc.get('_id')}: {exc.errors()[0]['msg']}") from exc


class EventArrival(BaseModel):
    """Payload posted by the external writer once an event has been persisted."""

    id: str = Field(..., min_length=1, max_length=64)
    category: EmotionCategory
    intensity: Union[int, float]   # int keeps a legacy 1 distinguishable from 1.0
    coordinates: tuple[float, float]
    timestamp: Optional[datetime] = None
    city: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)

    def to_event(self) -> EmotionEvent:
        try:
            return EmotionEvent(
                id=self.id,
                category=self.category,
                intensity=self.intensity,
                coordinates=self.coordinates,
                timestamp=self.timestamp or datetime.now(tz=timezone.utc),
                city=self.city,
                country=self.country,
            )
        except ValidationError as exc:
            raise InvalidInput(exc.errors()[0]["msg"]) from exc
