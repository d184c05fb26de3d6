"""
Activity feed for HTTP clients.

Keeps the most recent job and conflict events from the event bus, numbered
with a running sequence, so dashboards can follow a matching job and the
conflicts it opens by polling `/api/events?since=<seq>`. A poll with a timeout
is held open until something newer arrives (long-polling).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from concord.core.events import Event, EventBus, event_bus

logger = logging.getLogger(__name__)

FEED_PATTERNS = ("job.*", "conflict.*")


class ActivityFeed:
    """Bounded, sequence-numbered buffer of published events."""

    def __init__(self, bus: EventBus | None = None, *, max_events: int = 500) -> None:
        self._bus = bus or event_bus
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._seq = 0
        self._changed = asyncio.Condition()
        self._started = False

    @property
    def last_seq(self) -> int:
        return self._seq

    async def start(self) -> None:
        """Subscribe to job and conflict events."""
        if self._started:
            return
        for pattern in FEED_PATTERNS:
            await self._bus.subscribe(pattern, self.handle_event)
        self._started = True
        logger.info("ActivityFeed started")

    async def stop(self) -> None:
        if not self._started:
            return
        for pattern in FEED_PATTERNS:
            await self._bus.unsubscribe(pattern, self.handle_event)
        self._started = False
        logger.info("ActivityFeed stopped")

    async def handle_event(self, event: Event) -> None:
        async with self._changed:
            self._seq += 1
            self._events.append({"seq": self._seq, **event.to_dict()})
            self._changed.notify_all()

    def events_since(self, since: int, limit: int = 100) -> list[dict[str, Any]]:
        """Buffered events with a sequence number above `since`, oldest first."""
        newer = [e for e in self._events if e["seq"] > since]
        return newer[:limit]

    async def wait_for_events(
        self, since: int, *, timeout: float = 0.0, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Like `events_since`, but wait up to `timeout` seconds for a newer event."""
        if timeout > 0:
            async with self._changed:
                try:
                    await asyncio.wait_for(
                        self._changed.wait_for(lambda: self._seq > since), timeout
                    )
                except TimeoutError:
                    pass
        return self.events_since(since, limit)
