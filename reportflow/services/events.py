"""
EventBus - Local observer registry for engine, schedule and delivery events.

Handlers are invoked in registration order within the emitting call.
Delivery is best-effort and in-process only; this is not a message broker.
"""

from typing import Dict, Any, List, Callable, Optional, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field
import logging
import fnmatch

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """An event in the system."""
    event_type: str
    payload: Dict[str, Any]
    source: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int = 0


class EventBus:
    """
    Event bus for publish/subscribe messaging.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: List[Tuple[str, Callable]] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._sequence = 0
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize event bus."""
        self._initialized = True
        logger.info("EventBus initialized")

    async def shutdown(self) -> None:
        """Shutdown event bus."""
        self._initialized = False
        self._subscribers.clear()
        logger.info("EventBus shut down")

    def subscribe(self, pattern: str, callback: Callable) -> None:
        """Subscribe to events matching pattern (fnmatch glob)."""
        self._subscribers.append((pattern, callback))

    def unsubscribe(self, pattern: str, callback: Callable) -> None:
        """Unsubscribe from events."""
        try:
            self._subscribers.remove((pattern, callback))
        except ValueError:
            pass

    async def emit(
        self,
        event_type: str,
        payload: Dict[str, Any],
        source: str,
    ) -> None:
        """Emit an event."""
        self._sequence += 1

        event = Event(
            event_type=event_type,
            payload=payload,
            source=source,
            sequence=self._sequence,
        )

        self._event_history.insert(0, event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[:self._max_history]

        # Snapshot so handlers may (un)subscribe while being called
        for pattern, callback in list(self._subscribers):
            if not fnmatch.fnmatch(event_type, pattern):
                continue
            try:
                result = callback({
                    "event_type": event_type,
                    "payload": payload,
                    "source": source,
                })
                if hasattr(result, "__await__"):
                    await result
            except Exception as e:
                logger.error(f"Event callback error for {event_type}: {e}")

    def get_events(
        self,
        source: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Event]:
        """Get recent events (newest first) with optional filtering."""
        events = self._event_history

        if source:
            events = [e for e in events if e.source == source]

        if event_type:
            if "*" in event_type:
                events = [e for e in events if fnmatch.fnmatch(e.event_type, event_type)]
            else:
                events = [e for e in events if e.event_type == event_type]

        return events[offset:offset + limit]

    def get_event_types(self) -> List[str]:
        """Get list of unique event types in history."""
        return sorted(set(e.event_type for e in self._event_history))

    def clear_history(self) -> int:
        """Clear event history. Returns count of cleared events."""
        count = len(self._event_history)
        self._event_history.clear()
        logger.info(f"Cleared {count} events from history")
        return count
