"""
broadcast.py — Subscriber registry and topic fan-out.

Subscriber lifecycle
────────────────────
    connect ──▶ (join | leave)* ──▶ disconnect

Topics
──────
    global              every subscriber receives it, joined or not
    emotion-<category>  e.g. emotion-joy
    region-<text>       e.g. region-Kathmandu (matched against city / country)

Concurrency
───────────
The registry is the only shared mutable state in the engine. Every
mutation (connect / join / leave / disconnect) happens under one
asyncio.Lock. publish() takes a snapshot of the recipients under the same
lock, releases it, then sends, so a subscriber joining, leaving or
disconnecting mid-fan-out never breaks the loop and a slow client never
blocks registry writes.

A failed send is wrapped in TransportFailure, logged, and (by default)
the subscriber is dropped. The remaining recipients still receive the
frame. No ordering is guaranteed between two concurrent publishes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from moodmap.core.errors import InvalidInput, TransportFailure
from moodmap.models.analytics import BroadcastEnvelope
from moodmap.models.emotion import EmotionCategory, EmotionEvent

logger = logging.getLogger(__name__)

GLOBAL_TOPIC = "global"
EMOTION_TOPIC_PREFIX = "emotion-"
REGION_TOPIC_PREFIX = "region-"
MAX_TOPIC_LENGTH = 120

SendFn = Callable[[dict], Awaitable[None]]


def emotion_topic(category: EmotionCategory | str) -> str:
    value = category.value if isinstance(category, EmotionCategory) else category
    return f"{EMOTION_TOPIC_PREFIX}{value}"


def region_topic(region: str) -> str:
    return f"{REGION_TOPIC_PREFIX}{region}"


def topics_for_event(event: EmotionEvent) -> list[str]:
    """Every topic an incoming event should be relayed to, global first."""
    topics = [GLOBAL_TOPIC, emotion_topic(event.category)]
    for place in (event.city, event.country):
        if place:
            topics.append(region_topic(place))
    return topics


def validate_topic(topic: str) -> str:
    if not isinstance(topic, str):
        raise InvalidInput("topic must be a string")
    topic = topic.strip()
    if not topic or len(topic) > MAX_TOPIC_LENGTH:
        raise InvalidInput("topic must be 1–120 characters")
    if topic == GLOBAL_TOPIC:
        return topic
    if topic.startswith(EMOTION_TOPIC_PREFIX):
        try:
            EmotionCategory(topic[len(EMOTION_TOPIC_PREFIX):])
        except ValueError:
            raise InvalidInput(f"unknown emotion topic '{topic}'") from None
        return topic
    if topic.startswith(REGION_TOPIC_PREFIX) and len(topic) > len(REGION_TOPIC_PREFIX):
        return topic
    raise InvalidInput(f"topic '{topic}' must be 'global', 'emotion-<category>' or 'region-<name>'")


@dataclass
class Subscriber:
    id: str
    send: SendFn
    connected_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    topics: set[str] = field(default_factory=set)


class BroadcastRegistry:
    """Owns the subscriber map. Nothing outside this class mutates it."""

    def __init__(self, drop_failed: bool = True):
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = asyncio.Lock()
        self.drop_failed = drop_failed

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self, send: SendFn, subscriber_id: Optional[str] = None) -> Subscriber:
        subscriber = Subscriber(id=subscriber_id or uuid.uuid4().hex, send=send)
        async with self._lock:
            self._subscribers[subscriber.id] = subscriber
        logger.info("Subscriber connected: %s (%d total)", subscriber.id, len(self._subscribers))
        return subscriber

    async def join(self, subscriber_id: str, topic: str) -> bool:
        topic = validate_topic(topic)
        async with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None:
                return False
            subscriber.topics.add(topic)
        logger.debug("Subscriber %s joined %s", subscriber_id, topic)
        return True

    async def leave(self, subscriber_id: str, topic: str) -> bool:
        topic = validate_topic(topic)
        async with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None or topic not in subscriber.topics:
                return False
            subscriber.topics.discard(topic)
        logger.debug("Subscriber %s left %s", subscriber_id, topic)
        return True

    async def disconnect(self, subscriber_id: str) -> bool:
        async with self._lock:
            removed = self._subscribers.pop(subscriber_id, None)
        if removed is not None:
            logger.info("Subscriber disconnected: %s", subscriber_id)
        return removed is not None

    # ── Read-only views ───────────────────────────────────────────────────────

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def topics_of(self, subscriber_id: str) -> set[str]:
        subscriber = self._subscribers.get(subscriber_id)
        return set(subscriber.topics) if subscriber else set()

    def active_topics(self) -> set[str]:
        """Every non-global topic at least one subscriber has joined."""
        topics: set[str] = set()
        for subscriber in list(self._subscribers.values()):
            topics.update(subscriber.topics)
        topics.discard(GLOBAL_TOPIC)
        return topics

    # ── Fan-out ───────────────────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        event_type: str,
        payload: BaseModel | dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> int:
        """
        Deliver one frame to every subscriber of `topic` (everyone for the
        global topic). Returns the number of successful deliveries.
        """
        data = payload.model_dump(mode="json", by_alias=True) if isinstance(payload, BaseModel) else payload
        frame = BroadcastEnvelope(
            type=event_type,
            topic=topic,
            data=data,
            timestamp=timestamp or datetime.now(tz=timezone.utc),
        ).model_dump(mode="json", by_alias=True)

        async with self._lock:
            recipients = [
                s for s in self._subscribers.values()
                if topic == GLOBAL_TOPIC or topic in s.topics
            ]

        delivered = 0
        for subscriber in recipients:
            try:
                await self._deliver(subscriber, frame)
                delivered += 1
            except TransportFailure as failure:
                logger.warning("%s", failure)
                if self.drop_failed:
                    await self.disconnect(failure.subscriber_id)
        return delivered

    async def send_to(self, subscriber_id: str, event_type: str, payload: BaseModel | dict[str, Any]) -> bool:
        """Direct message to a single subscriber (e.g. stats on join)."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return False
        data = payload.model_dump(mode="json", by_alias=True) if isinstance(payload, BaseModel) else payload
        frame = BroadcastEnvelope(
            type=event_type,
            topic=data.get("topic") or GLOBAL_TOPIC,
            data=data,
            timestamp=datetime.now(tz=timezone.utc),
        ).model_dump(mode="json", by_alias=True)
        try:
            await self._deliver(subscriber, frame)
        except TransportFailure as failure:
            logger.warning("%s", failure)
            if self.drop_failed:
                await self.disconnect(failure.subscriber_id)
            return False
        return True

    @staticmethod
    async def _deliver(subscriber: Subscriber, frame: dict) -> None:
        try:
            await subscriber.send(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportFailure(subscriber.id, exc) from exc
