"""
moodmap API — Application entry point.

Bootstraps FastAPI, wires up middleware and error handlers, registers
route groups, and manages the MongoDB connection and broadcast scheduler
lifecycle.

    uvicorn moodmap.main:app --reload

Extension points:
  - Add new route groups with app.include_router() below
  - Map new EngineError subclasses onto status codes in _STATUS_BY_ERROR
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from moodmap import __version__
from moodmap.core import database
from moodmap.core.config import settings
from moodmap.core.errors import (
    ComputationTimeout,
    EngineError,
    InvalidInput,
    StoreUnavailable,
    UnsupportedAlgorithm,
)
from moodmap.core.rate_limit import limiter
from moodmap.routes.analytics import router as analytics_router
from moodmap.routes.health import router as health_router
from moodmap.routes.stream import router as stream_router
from moodmap.services.analytics import AnalyticsService
from moodmap.services.broadcast import BroadcastRegistry
from moodmap.services.event_store import MongoEventStore
from moodmap.services.scheduler import BroadcastScheduler

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _change_stream():
    """Open a change stream on the events collection (insert-only)."""
    db = database.get_db()
    if db is None:
        raise StoreUnavailable("Event store unavailable")
    return db[settings.events_collection].watch([{"$match": {"operationType": "insert"}}])


def build_scheduler(registry: BroadcastRegistry) -> BroadcastScheduler:
    # The scheduler outlives any one connection attempt, so it resolves
    # the database on every query instead of capturing it here.
    store = MongoEventStore(collection=settings.events_collection, db_provider=database.get_db)
    return BroadcastScheduler(
        registry,
        AnalyticsService(store),
        global_interval=settings.global_refresh_seconds,
        heartbeat_interval=settings.heartbeat_seconds,
        topic_interval=settings.topic_refresh_seconds,
        change_stream=_change_stream if settings.watch_change_stream else None,
    )


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: connect to MongoDB, start the periodic broadcast tasks.
    Shutdown: notify subscribers, stop the tasks, close the connection.
    """
    logger.info("Starting moodmap API (env: %s)", settings.environment)
    await database.connect_to_mongo()
    if settings.scheduler_enabled:
        await app.state.scheduler.start()
    yield
    logger.info("Shutting down moodmap API")
    await app.state.scheduler.stop()
    await database.close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="moodmap API",
    description=(
        "Geospatial emotion analytics: clustering, trends, heatmaps, "
        "forecasts and a real-time broadcast stream."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)

# The registry and scheduler exist before startup so routes (and tests that
# skip the lifespan) always find them on app.state.
app.state.registry = BroadcastRegistry(drop_failed=settings.drop_failed_subscribers)
app.state.scheduler = build_scheduler(app.state.registry)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Engine errors → HTTP ──────────────────────────────────────────────────────
_STATUS_BY_ERROR: list[tuple[type[EngineError], int]] = [
    (UnsupportedAlgorithm, 400),
    (InvalidInput, 400),
    (ComputationTimeout, 504),
    (StoreUnavailable, 503),
]


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            if status >= 500:
                logger.warning("%s %s → %d: %s", request.method, request.url.path, status, exc)
            return JSONResponse(status_code=status, content={"detail": str(exc)})
    logger.error("Unmapped engine error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal engine error"})


# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(analytics_router)
app.include_router(stream_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "moodmap API",
        "version": __version__,
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
