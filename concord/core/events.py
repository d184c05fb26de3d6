"""
Event Bus for Concord.

A simple pub/sub event system for decoupled communication between components.
The matching job and the conflict queue publish here; the web layer's
`ActivityFeed` subscribes and serves the events at `/api/events`.

Event types:
- job.started: A matching job started running
- job.progress: Progress counters of a running job were flushed
- job.completed / job.failed / job.cancelled: A job reached a terminal state
- conflict.created: A scan opened a new conflict
- conflict.updated: A scan refreshed an open conflict
- conflict.resolved: An operator resolved a conflict

Usage:
    from concord.core.events import event_bus

    async def on_job(event: JobEvent) -> None:
        print(f"Job {event.job_id} is now {event.status}")

    await event_bus.subscribe("job.*", on_job)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[["Event"], Coroutine[Any, Any, None]]


@dataclass
class Event:
    """Base class for all events."""

    event_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {"type": self.event_type}


@dataclass
class JobEvent(Event):
    """Fired on matching job lifecycle changes."""

    event_type: str = field(default="job", init=False)
    action: str = ""  # started, progress, completed, failed, cancelled
    job_id: int = 0
    job_type: str = ""
    status: str = ""
    processed_works: int = 0
    total_works: int = 0
    matches_found: int = 0
    conflicts_created: int = 0
    failed_items: int = 0
    error: str = ""

    def __post_init__(self) -> None:
        self.event_type = f"job.{self.action}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.event_type,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status,
            "processed_works": self.processed_works,
            "total_works": self.total_works,
            "matches_found": self.matches_found,
            "conflicts_created": self.conflicts_created,
            "failed_items": self.failed_items,
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ConflictEvent(Event):
    """Fired when a conflict is opened, refreshed or resolved."""

    event_type: str = field(default="conflict", init=False)
    action: str = ""  # created, updated, resolved
    conflict_id: int = 0
    match_group_id: int = 0
    conflict_type: str = ""
    severity: str = ""
    job_id: int | None = None

    def __post_init__(self) -> None:
        self.event_type = f"conflict.{self.action}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "conflict_id": self.conflict_id,
            "match_group_id": self.match_group_id,
            "conflict_type": self.conflict_type,
            "severity": self.severity,
            "job_id": self.job_id,
        }


class EventBus:
    """
    Simple async pub/sub event bus.

    Supports:
    - Multiple handlers per event type
    - Wildcard subscriptions (e.g., "job.*")
    - Error isolation (one handler failing doesn't affect others)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event type to subscribe to. Use ".*" suffix or "*" for wildcards.
            handler: Async function to call when event is published.
        """
        async with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug("Subscribed to %s: %s", event_type, handler)

    async def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Unsubscribe a handler. Returns True if it was found and removed."""
        async with self._lock:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
                logger.debug("Unsubscribed from %s: %s", event_type, handler)
                return True
            return False

    async def publish(self, event: Event) -> int:
        """
        Publish an event to all subscribed handlers.

        Returns:
            Number of handlers that received the event.
        """
        event_type = event.event_type
        handlers_called = 0

        async with self._lock:
            matching_handlers: list[EventHandler] = list(self._handlers.get(event_type, ()))
            for pattern, handlers in self._handlers.items():
                if pattern.endswith(".*"):
                    if event_type.startswith(pattern[:-1]):
                        matching_handlers.extend(handlers)
                elif pattern == "*":
                    matching_handlers.extend(handlers)

        # Call handlers outside of lock
        for handler in matching_handlers:
            try:
                await handler(event)
                handlers_called += 1
            except Exception as e:
                logger.exception("Error in event handler for %s: %s", event_type, e)

        if handlers_called > 0:
            logger.debug("Published %s to %d handlers", event_type, handlers_called)

        return handlers_called

    async def clear(self) -> None:
        """Remove all subscriptions."""
        async with self._lock:
            self._handlers.clear()
            logger.debug("Cleared all event subscriptions")


# Global event bus instance
event_bus = EventBus()
