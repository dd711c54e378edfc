"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. The analytics routes that run
clustering or heatmap binning over up to `max_cluster_events` documents
opt in with a per-route limit:

    @router.get("/clusters")
    @limiter.limit(CLUSTER_LIMIT)
    async def get_clusters(request: Request, ...):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

CLUSTER_LIMIT = "20/minute"
AGGREGATE_LIMIT = "60/minute"

limiter = Limiter(key_func=get_remote_address)
