"""In-process event channel connecting playback components to the sync engine."""

import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any


logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Any]


# Event type constants to prevent string duplication
class EventTypes:
    """Centralized event type definitions."""

    # Emitted by playback and lesson UI
    LESSON_PROGRESS = "lesson-progress"
    LESSON_SECTION_COMPLETE = "lesson-section-complete"

    # Emitted by the sync engine
    PROGRESS_UPDATED = "progress:updated"
    SYNC_STATUS = "sync-status"


class EventChannel:
    """Topic based publish/subscribe channel.

    Handlers may be plain functions or coroutine functions and run in the order
    they subscribed. A handler that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event type; returns a callable that unsubscribes."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event_type: str, detail: dict[str, Any] | None = None) -> int:
        """Deliver an event to every subscriber.

        Returns
        -------
            Number of handlers that ran without raising
        """
        detail = detail or {}
        delivered = 0
        # Copy so handlers can unsubscribe while being called
        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(detail)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(f"Handler for '{event_type}' failed")
        return delivered
