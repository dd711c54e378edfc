"""
scheduler.py — Background refresh loops and the event-arrival relay.

Three independent periodic tasks, each an asyncio.Task with its own timer:

  global refresh   every global_refresh_seconds (30s)
                   → publish("global", globalStatsUpdated)
  heartbeat        every heartbeat_seconds (10s)
                   → publish("global", heartbeat {timestamp, subscriberCount, uptimeSeconds})
  topic refresh    every topic_refresh_seconds (60s)
                   → publish(topic, topicStatsUpdated) for each joined topic

Each tick catches and logs its own exceptions, so a failing store query
in one loop never stops the others, and the next tick is the retry.

on_event() is the arrival hook: it relays the raw event to the global,
emotion and region topics immediately, then refreshes the global and
regional stats, independent of the periodic cadence. When
watch_change_stream is on, a fourth task tails a MongoDB change stream
and feeds every inserted document through on_event().
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from moodmap.core.errors import InvalidInput
from moodmap.models.analytics import Heartbeat
from moodmap.models.emotion import EmotionEvent
from moodmap.services.analytics import AnalyticsService
from moodmap.services.broadcast import GLOBAL_TOPIC, BroadcastRegistry, topics_for_event

logger = logging.getLogger(__name__)


class BroadcastScheduler:

    def __init__(
        self,
        registry: BroadcastRegistry,
        analytics: AnalyticsService,
        *,
        global_interval: float = 30.0,
        heartbeat_interval: float = 10.0,
        topic_interval: float = 60.0,
        change_stream: Optional[Callable[[], object]] = None,
    ):
        self.registry = registry
        self.analytics = analytics
        self.global_interval = global_interval
        self.heartbeat_interval = heartbeat_interval
        self.topic_interval = topic_interval
        # Factory returning an async context manager over a Motor change stream.
        self._change_stream = change_stream
        self._started_at = time.monotonic()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at

    async def start(self) -> None:
        if self.running:
            return
        self._started_at = time.monotonic()
        self._tasks = [
            asyncio.create_task(self._every(self.global_interval, self.refresh_global), name="global-refresh"),
            asyncio.create_task(self._every(self.heartbeat_interval, self.send_heartbeat), name="heartbeat"),
            asyncio.create_task(self._every(self.topic_interval, self.refresh_topics), name="topic-refresh"),
        ]
        if self._change_stream is not None:
            self._tasks.append(asyncio.create_task(self._watch(), name="change-stream"))
        logger.info(
            "Broadcast scheduler started (global=%ss, heartbeat=%ss, topics=%ss)",
            self.global_interval, self.heartbeat_interval, self.topic_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.registry.publish(GLOBAL_TOPIC, "serverShutdown", {"message": "Server is shutting down"})
        logger.info("Broadcast scheduler stopped")

    async def _every(self, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.run_safely(job)

    @staticmethod
    async def run_safely(job: Callable[[], Awaitable[object]]) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled task %s failed; retrying next tick", getattr(job, "__name__", job))

    # ── Periodic jobs ─────────────────────────────────────────────────────────

    async def refresh_global(self) -> int:
        stats = await self.analytics.global_stats(self.registry.subscriber_count)
        return await self.registry.publish(GLOBAL_TOPIC, "globalStatsUpdated", stats)

    async def send_heartbeat(self) -> int:
        beat = Heartbeat(
            timestamp=datetime.now(tz=timezone.utc),
            subscriber_count=self.registry.subscriber_count,
            uptime_seconds=round(self.uptime_seconds, 1),
        )
        return await self.registry.publish(GLOBAL_TOPIC, "heartbeat", beat)

    async def refresh_topics(self) -> int:
        """Push fresh stats to every joined topic; one failing topic doesn't stop the rest."""
        delivered = 0
        for topic in sorted(self.registry.active_topics()):
            try:
                stats = await self.analytics.topic_stats(topic, self.registry.subscriber_count)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Topic refresh failed for %s", topic)
                continue
            delivered += await self.registry.publish(topic, "topicStatsUpdated", stats)
        return delivered

    # ── Event arrival ─────────────────────────────────────────────────────────

    async def on_event(self, event: EmotionEvent) -> int:
        """
        Relay a freshly persisted event to the global, emotion and region
        topics, then refresh the global and regional stats.
        """
        payload = event.model_dump(mode="json")
        delivered = 0
        for topic in topics_for_event(event):
            delivered += await self.registry.publish(topic, "newEmotion", payload)

        await self.run_safely(self.refresh_global)
        if event.city or event.country:
            await self.run_safely(lambda: self._refresh_region(event))
        return delivered

    async def _refresh_region(self, event: EmotionEvent) -> int:
        stats = await self.analytics.regional_stats(event.city, event.country)
        return await self.registry.publish(GLOBAL_TOPIC, "regionalStatsUpdated", stats)

    async def _watch(self) -> None:
        """Tail the events collection and relay every insert."""
        while True:
            try:
                async with self._change_stream() as stream:
                    async for change in stream:
                        if change.get("operationType") != "insert":
                            continue
                        try:
                            event = EmotionEvent.from_document(change["fullDocument"])
                        except InvalidInput as exc:
                            logger.warning("Ignoring invalid inserted event: %s", exc)
                            continue
                        await self.on_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Change stream dropped; reopening in %ss", self.heartbeat_interval)
                await asyncio.sleep(self.heartbeat_interval)
