"""
pytest configuration and shared fixtures for the moodmap tests.

Key concern: tests must not require a live MongoDB or a running scheduler.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so health reports
     "disconnected" and analytics routes answer 503 unless a test
     overrides get_db with a FakeDB.
  3. Setting SCHEDULER_ENABLED=false so the periodic broadcast tasks
     never start behind a test's back.
"""

import os
import re
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("WATCH_CHANGE_STREAM", "false")


@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock
    - close_mongo_connection → no-op AsyncMock
    - db_client.client / db_client.db → None
    - slowapi counters reset so route tests never trip a rate limit
    """
    with (
        patch("moodmap.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("moodmap.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import moodmap.core.database as db_module
        from moodmap.core.rate_limit import limiter

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None
        limiter.reset()

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 — mock_db must run first
    """HTTPX async test client wired to the FastAPI app (no database)."""
    from moodmap.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ── In-memory MongoDB double ──────────────────────────────────────────────────

class FakeCollection:
    """
    Just enough of a Motor collection for MongoEventStore: find / sort /
    limit / async iteration, with the query operators build_query emits.
    """

    def __init__(self, docs=None):
        self._docs = list(docs or [])

    def insert_many(self, docs):
        self._docs.extend(docs)

    def find(self, query=None):
        self._query = query or {}
        self._sort = None
        self._limit_n = None
        return self

    def sort(self, key, direction=1):
        self._sort = (key, direction)
        return self

    def limit(self, n):
        self._limit_n = n
        return self

    async def __aiter__(self):
        docs = [d for d in self._docs if self._matches(d, self._query)]
        if self._sort:
            key, direction = self._sort
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        if self._limit_n:
            docs = docs[: self._limit_n]
        for doc in docs:
            yield doc

    @classmethod
    def _matches(cls, doc, query):
        for key, condition in query.items():
            if key == "$or":
                if not any(cls._matches(doc, sub) for sub in condition):
                    return False
            elif key == "$and":
                if not all(cls._matches(doc, sub) for sub in condition):
                    return False
            elif key == "$expr":
                if not cls._expr_matches(doc, condition):
                    return False
            elif not cls._field_matches(doc.get(key), condition):
                return False
        return True

    _DATE_PARTS = {"$hour": lambda ts: ts.hour, "$isoDayOfWeek": lambda ts: ts.isoweekday()}

    @classmethod
    def _expr_matches(cls, doc, expr):
        """Only the date-part membership tests build_query emits."""
        if "$and" in expr:
            return all(cls._expr_matches(doc, sub) for sub in expr["$and"])
        operand, values = expr["$in"]
        (part, field), = operand.items()
        ts = doc.get(field.lstrip("$"))
        return ts is not None and cls._DATE_PARTS[part](ts) in values

    @staticmethod
    def _field_matches(value, condition):
        if not isinstance(condition, dict):
            return value == condition
        for op, arg in condition.items():
            if op == "$options":
                continue
            if value is None:
                return False
            if op == "$gte" and not value >= arg:
                return False
            if op == "$gt" and not value > arg:
                return False
            if op == "$lte" and not value <= arg:
                return False
            if op == "$in" and value not in arg:
                return False
            if op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if not re.search(arg, value, flags):
                    return False
            if op == "$geoWithin":
                (west, south), (east, north) = arg["$box"]
                lon, lat = value["coordinates"][:2]
                if not (west <= lon <= east and south <= lat <= north):
                    return False
        return True


class FakeDB:
    def __init__(self):
        self._cols = {}

    def __getitem__(self, name):
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


@pytest.fixture()
def fake_db():
    return FakeDB()
