"""
stream.py — Real-time transport: subscriber WebSocket + event arrival hook.

Routes:
  WS   /api/v1/stream            — subscribe to broadcast topics
  POST /api/v1/events/arrivals   — called by the writer after persisting an event
  GET  /api/v1/stream/topics     — currently joined topics + subscriber count

WEBSOCKET PROTOCOL
──────────────────
Server → client, every frame (BroadcastEnvelope):
    { "type": "globalStatsUpdated", "topic": "global",
      "data": {...}, "timestamp": "2026-10-18T09:00:00+00:00" }

Client → server:
    { "action": "join",  "topic": "emotion-joy" }
    { "action": "leave", "topic": "region-Kathmandu" }

On connect the client receives a "connected" frame carrying its
subscriber id. Joining a topic answers with that topic's current stats.
Every subscriber receives the global topic without joining it.

    wscat -c ws://localhost:8000/api/v1/stream
    > {"action": "join", "topic": "emotion-fear"}
"""

import json
import logging
from contextlib import suppress

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from moodmap.core.errors import EngineError, InvalidInput
from moodmap.models.emotion import EventArrival
from moodmap.services.broadcast import BroadcastRegistry
from moodmap.services.scheduler import BroadcastScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])


class ArrivalAccepted(BaseModel):
    ok: bool
    id: str
    delivered: int


class TopicsResponse(BaseModel):
    subscribers: int
    topics: list[str]


def get_registry(request: Request) -> BroadcastRegistry:
    return request.app.state.registry


def get_scheduler(request: Request) -> BroadcastScheduler:
    return request.app.state.scheduler


@router.post("/api/v1/events/arrivals", response_model=ArrivalAccepted, status_code=202)
async def event_arrived(request: Request, payload: EventArrival):
    """
    Relay a newly persisted event to subscribers immediately.

    The writer has already stored and validated the event; this hook only
    fans it out and refreshes the affected stats.
    """
    event = payload.to_event()
    delivered = await get_scheduler(request).on_event(event)
    return ArrivalAccepted(ok=True, id=event.id, delivered=delivered)


@router.get("/api/v1/stream/topics", response_model=TopicsResponse)
async def list_topics(request: Request):
    registry = get_registry(request)
    return TopicsResponse(subscribers=registry.subscriber_count, topics=sorted(registry.active_topics()))


@router.websocket("/api/v1/stream")
async def stream(websocket: WebSocket):
    registry: BroadcastRegistry = websocket.app.state.registry
    scheduler: BroadcastScheduler = websocket.app.state.scheduler

    await websocket.accept()
    subscriber = await registry.connect(websocket.send_json)
    await registry.send_to(subscriber.id, "connected", {
        "subscriberId": subscriber.id,
        "connectedAt": subscriber.connected_at.isoformat(),
        "topics": ["global"],
    })

    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_message(registry, scheduler, subscriber.id, raw)
    except WebSocketDisconnect:
        logger.info("Stream client %s disconnected", subscriber.id)
    except Exception as exc:
        logger.warning("Stream error for %s: %s", subscriber.id, exc)
        with suppress(RuntimeError):  # already closed by the failed send
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await registry.disconnect(subscriber.id)


async def _handle_message(
    registry: BroadcastRegistry, scheduler: BroadcastScheduler, subscriber_id: str, raw: str,
) -> None:
    try:
        message = json.loads(raw)
        action = message.get("action")
        topic = message.get("topic", "")
    except (json.JSONDecodeError, AttributeError):
        await registry.send_to(subscriber_id, "error", {"message": "Frames must be JSON objects"})
        return
    if not isinstance(topic, str):
        await registry.send_to(subscriber_id, "error", {"message": "topic must be a string"})
        return

    try:
        if action == "join":
            await registry.join(subscriber_id, topic)
            await _send_topic_stats(registry, scheduler, subscriber_id, topic)
        elif action == "leave":
            await registry.leave(subscriber_id, topic)
        else:
            raise InvalidInput(f"unknown action '{action}'; use 'join' or 'leave'")
    except EngineError as exc:
        await registry.send_to(subscriber_id, "error", {"message": str(exc), "topic": topic or None})


async def _send_topic_stats(
    registry: BroadcastRegistry, scheduler: BroadcastScheduler, subscriber_id: str, topic: str,
) -> None:
    """Answer a join with the topic's current stats; the membership stands either way."""
    try:
        stats = await scheduler.analytics.topic_stats(topic, registry.subscriber_count)
    except EngineError:
        raise
    except Exception as exc:
        logger.warning("Stats for %s failed: %s", topic, exc)
        await registry.send_to(subscriber_id, "error", {"message": "Topic stats unavailable", "topic": topic})
        return
    await registry.send_to(subscriber_id, "topicStatsUpdated", stats)
