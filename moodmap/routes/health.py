"""
Health check endpoint.

Used by container HEALTHCHECKs, load balancers and the map frontend to
distinguish "API down" from "API up but event store unreachable".
"""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from moodmap import __version__
from moodmap.core import database as db_module

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    environment: str
    subscribers: int
    scheduler: str  # "running" | "stopped"


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(request: Request) -> HealthResponse:
    """
    Liveness of the API, its database connection and the broadcast loop.

    Returns 200 even when the database is disconnected.
    """
    from moodmap.core.config import settings

    db_status = "disconnected"
    try:
        # Access via module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    registry = request.app.state.registry
    scheduler = request.app.state.scheduler
    return HealthResponse(
        status="ok",
        version=__version__,
        database=db_status,
        environment=settings.environment,
        subscribers=registry.subscriber_count,
        scheduler="running" if scheduler.running else "stopped",
    )
