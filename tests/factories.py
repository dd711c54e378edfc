"""
Event and document builders shared by the test modules.

Place coordinates are (lat, lon). The three Kathmandu-valley cities sit
within ~12 km of each other; Pokhara is ~142 km west of Kathmandu.
"""

from datetime import datetime, timedelta, timezone

from moodmap.models.emotion import EmotionEvent

# Monday 2026-10-12 09:00 UTC
BASE_TIME = datetime(2026, 10, 12, 9, 0, tzinfo=timezone.utc)

KATHMANDU = (27.7172, 85.3240)
LALITPUR = (27.6588, 85.3247)
BHAKTAPUR = (27.6710, 85.4298)
POKHARA = (28.2096, 83.9856)
LONDON = (51.5074, -0.1278)
TOKYO = (35.6762, 139.6503)


def make_event(
    event_id,
    place=KATHMANDU,
    category="joy",
    intensity=0.5,
    timestamp=BASE_TIME,
    city=None,
    country=None,
):
    lat, lon = place
    return EmotionEvent(
        id=str(event_id),
        category=category,
        intensity=intensity,
        coordinates=(lon, lat),
        timestamp=timestamp,
        city=city,
        country=country,
    )


def make_doc(
    doc_id,
    place=KATHMANDU,
    emotion="joy",
    intensity=0.5,
    hours_ago=1,
    city="Kathmandu",
    country="Nepal",
):
    """A flat-shape store document timestamped relative to now."""
    lat, lon = place
    return {
        "_id": str(doc_id),
        "latitude": lat,
        "longitude": lon,
        "coreEmotion": emotion,
        "intensity": intensity,
        "city": city,
        "country": country,
        "timestamp": datetime.now(tz=timezone.utc) - timedelta(hours=hours_ago),
    }
