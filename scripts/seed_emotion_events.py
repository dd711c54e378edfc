#!/usr/bin/env python3
"""
seed_emotion_events.py — Populate MongoDB with realistic emotion events.

The engine itself never writes to the events collection; this script
stands in for the external writer during local development and demos.

Usage (from the repository root):
    python scripts/seed_emotion_events.py                 # replace existing seed data
    python scripts/seed_emotion_events.py --append        # add without clearing first
    python scripts/seed_emotion_events.py --per-city 40 --days 14

Prerequisites:
    • MONGO_URI env var set (or .env file present)
    • `pip install -e .`

What this script creates
────────────────────────
  emotions  ← per-city bursts of flat-shape events spread over the last
              N days, with a small share stored on the legacy 1–5
              intensity scale and in the GeoJSON shape so both read
              paths get exercised
  indexes   ← timestamp, lat/lon, category + timestamp, 2dsphere

Change streams (WATCH_CHANGE_STREAM=true) need a replica set: Atlas M0+
or a local `mongod --replSet rs0`.
"""

import argparse
import asyncio
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from moodmap.models.emotion import EmotionCategory  # noqa: E402

import certifi
from motor.motor_asyncio import AsyncIOMotorClient

MONGO_URI = os.environ.get("MONGO_URI", "")
MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", "moodmap")
EVENTS_COLLECTION = os.environ.get("EVENTS_COLLECTION", "emotions")

if not MONGO_URI:
    print("ERROR: MONGO_URI not set. Add it to .env")
    sys.exit(1)

# ── Seed cities ───────────────────────────────────────────────────────────────
# Columns: city, country, lat, lng, spread_km, mood bias (categories drawn more often)
_CITIES = [
    # ── Kathmandu valley (dense, for clustering demos) ────────────────────────
    ("Kathmandu",     "Nepal",          27.7172,   85.3240,  4, ["joy", "anticipation"]),
    ("Lalitpur",      "Nepal",          27.6588,   85.3247,  3, ["trust", "joy"]),
    ("Bhaktapur",     "Nepal",          27.6710,   85.4298,  3, ["joy", "surprise"]),
    ("Pokhara",       "Nepal",          28.2096,   83.9856,  5, ["trust", "anticipation"]),
    ("Biratnagar",    "Nepal",          26.4525,   87.2718,  5, ["fear", "sadness"]),
    # ── Rest of the world ─────────────────────────────────────────────────────
    ("Delhi",         "India",          28.6139,   77.2090,  8, ["anger", "anticipation"]),
    ("London",        "United Kingdom", 51.5074,   -0.1278,  6, ["sadness", "trust"]),
    ("New York",      "United States",  40.7128,  -74.0060,  6, ["anticipation", "fear"]),
    ("Tokyo",         "Japan",          35.6762,  139.6503,  8, ["joy", "trust"]),
    ("Nairobi",       "Kenya",          -1.2921,   36.8219,  5, ["joy", "surprise"]),
    ("Sao Paulo",     "Brazil",        -23.5505,  -46.6333,  8, ["joy", "anger"]),
    ("Sydney",        "Australia",     -33.8688,  151.2093,  6, ["trust", "surprise"]),
]

_ALL = [c.value for c in EmotionCategory]
_KM_PER_DEGREE = 111.0


def _jitter(lat: float, lng: float, spread_km: float) -> tuple[float, float]:
    """Scatter a point uniformly-ish within spread_km of the city center."""
    d_lat = random.uniform(-spread_km, spread_km) / _KM_PER_DEGREE
    d_lng = random.uniform(-spread_km, spread_km) / _KM_PER_DEGREE
    return round(lat + d_lat, 6), round(lng + d_lng, 6)


def _make_event(row: tuple, ts: datetime) -> dict:
    """Convert a seed row into a MongoDB document."""
    city, country, lat, lng, spread_km, bias = row
    lat, lng = _jitter(lat, lng, spread_km)
    category = random.choice(bias) if random.random() < 0.6 else random.choice(_ALL)
    intensity = round(random.uniform(0.1, 1.0), 2)

    # ~10% legacy documents: five-point intensity and/or GeoJSON location
    if random.random() < 0.1:
        return {
            "timestamp": ts,
            "location":  {"type": "Point", "coordinates": [lng, lat]},   # GeoJSON: [lng, lat]
            "category":  category,
            "intensity": random.randint(1, 5),
            "city":      city,
            "country":   country,
        }
    return {
        "timestamp":   ts,
        "latitude":    lat,
        "longitude":   lng,
        "coreEmotion": category,
        "intensity":   intensity,
        "city":        city,
        "country":     country,
    }


async def create_indexes(collection) -> None:
    """Idempotent index creation — safe to run multiple times."""
    print("  Creating indexes…")
    await collection.create_index([("timestamp", -1)], name="ts_desc")
    await collection.create_index([("latitude", 1), ("longitude", 1)], name="lat_lng")
    await collection.create_index([("coreEmotion", 1), ("timestamp", -1)], name="emotion_ts")
    await collection.create_index(
        [("location", "2dsphere")],
        name="location_2dsphere",
        sparse=True,        # flat-shape docs have no location field
    )
    print("  Indexes OK")


async def seed(append: bool = False, per_city: int = 25, days: int = 7) -> None:
    options = {"serverSelectionTimeoutMS": 5000}
    if MONGO_URI.startswith("mongodb+srv://"):
        options["tlsCAFile"] = certifi.where()
    client = AsyncIOMotorClient(MONGO_URI, **options)
    collection = client[MONGO_DB_NAME][EVENTS_COLLECTION]

    try:
        await client.admin.command("ping")
        print(f"Connected to MongoDB ({MONGO_DB_NAME}.{EVENTS_COLLECTION})")
    except Exception as exc:
        print(f"ERROR: Cannot connect to MongoDB: {exc}")
        return

    if not append:
        print("\nClearing existing events…")
        result = await collection.delete_many({})
        print(f"  Deleted {result.deleted_count} existing documents")

    print("\nInserting emotion events…")
    now = datetime.now(tz=timezone.utc)
    window = timedelta(days=days).total_seconds()
    docs = [
        _make_event(row, now - timedelta(seconds=random.uniform(0, window)))
        for row in _CITIES
        for _ in range(per_city)
    ]
    result = await collection.insert_many(docs)
    print(f"  Inserted {len(result.inserted_ids)} events across {len(_CITIES)} cities")

    print("\nEnsuring indexes…")
    await create_indexes(collection)

    total = await collection.count_documents({})
    countries = await collection.distinct("country")
    last_day = await collection.count_documents({"timestamp": {"$gte": now - timedelta(hours=24)}})

    print("\n✓ Done")
    print(f"  events total   : {total}")
    print(f"  last 24 hours  : {last_day}")
    print(f"  Countries      : {sorted(countries)}")

    client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed emotion events into MongoDB")
    parser.add_argument("--append", action="store_true", help="Add events without clearing existing data first")
    parser.add_argument("--per-city", type=int, default=25, help="Events generated per city")
    parser.add_argument("--days", type=int, default=7, help="Spread timestamps over the last N days")
    args = parser.parse_args()

    print(f"moodmap Event Seeder  (db: {MONGO_DB_NAME})")
    print(f"Mode: {'append' if args.append else 'replace'}\n")

    asyncio.run(seed(append=args.append, per_city=args.per_city, days=args.days))
