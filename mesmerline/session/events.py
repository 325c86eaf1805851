"""Session event system for broadcasting playback state changes.

Provides event types, event data structures, and an event emitter for
decoupled communication between the PlaybackScheduler and UI / logging /
progression observers. The scheduler never imports any of its observers.

Usage:
    emitter = SessionEventEmitter()
    emitter.subscribe(SessionEventType.FEATURE_ACTIVATED, lambda evt: print(evt.data["feature_id"]))
    emitter.emit(SessionEvent(SessionEventType.FEATURE_ACTIVATED, data={"feature_id": "spiral"}))
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Any, Optional
import logging
import time


class SessionEventType(Enum):
    """Types of events that can occur during playback."""

    # Session lifecycle
    SESSION_START = auto()     # Run started
    SESSION_END = auto()       # Run completed normally
    SESSION_PAUSE = auto()     # Run paused
    SESSION_RESUME = auto()    # Run resumed from pause
    SESSION_STOP = auto()      # Run cancelled before completion

    # Feature lifecycle
    FEATURE_ACTIVATED = auto()    # Start event processed
    FEATURE_DEACTIVATED = auto()  # Stop event (or synthetic stop) processed

    # Phase changes
    PHASE_CHANGED = auto()     # Playback crossed a phase's start minute

    # Progress events (for UI updates)
    PROGRESS = auto()          # Emitted once per tick while running

    # Error events
    ERROR = auto()             # Recovered error (sink failure, bad transition, ...)


@dataclass
class SessionEvent:
    """Represents a session event with optional payload data.

    Attributes:
        event_type: Type of event that occurred
        data: Optional dictionary with event-specific data
        timestamp: Optional timestamp (set by emitter when missing)
    """
    event_type: SessionEventType
    data: Optional[dict[str, Any]] = None
    timestamp: Optional[float] = None

    def __str__(self) -> str:
        """Human-readable event representation."""
        if self.data:
            data_str = ", ".join(f"{k}={v}" for k, v in self.data.items())
            return f"SessionEvent({self.event_type.name}, {data_str})"
        return f"SessionEvent({self.event_type.name})"


SessionCallback = Callable[[SessionEvent], None]


class SessionEventEmitter:
    """Event bus for playback state changes.

    Supports multiple subscribers per event type, plus catch-all subscribers
    registered with :meth:`subscribe_all`. A failing subscriber is logged and
    never interrupts delivery to the others.
    """

    def __init__(self):
        """Initialize event emitter with empty subscriber lists."""
        self._subscribers: dict[SessionEventType, list[SessionCallback]] = {}
        self._catch_all: list[SessionCallback] = []
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: SessionEventType, callback: SessionCallback) -> None:
        """Subscribe to a specific event type.

        Args:
            event_type: Type of event to listen for
            callback: Function to call when event occurs (receives SessionEvent)
        """
        callbacks = self._subscribers.setdefault(event_type, [])
        if callback not in callbacks:
            callbacks.append(callback)
            self.logger.debug(f"[events] Subscribed to {event_type.name} (total={len(callbacks)})")

    def subscribe_all(self, callback: SessionCallback) -> None:
        """Receive every event regardless of type."""
        if callback not in self._catch_all:
            self._catch_all.append(callback)

    def unsubscribe(self, event_type: SessionEventType, callback: SessionCallback) -> None:
        """Unsubscribe from a specific event type.

        Args:
            event_type: Type of event to stop listening for
            callback: The callback function to remove
        """
        callbacks = self._subscribers.get(event_type)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
            self.logger.debug(f"[events] Unsubscribed from {event_type.name} (total={len(callbacks)})")

    def unsubscribe_all(self, callback: SessionCallback) -> None:
        if callback in self._catch_all:
            self._catch_all.remove(callback)

    def emit(self, event: SessionEvent) -> None:
        """Emit an event to all subscribed callbacks.

        Args:
            event: The event to emit
        """
        if event.timestamp is None:
            event.timestamp = time.time()

        if event.event_type is not SessionEventType.PROGRESS:
            self.logger.debug(f"[events] Emitting: {event}")

        # Copy so callbacks may unsubscribe themselves
        callbacks = list(self._subscribers.get(event.event_type, ())) + list(self._catch_all)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"[events] Callback error for {event.event_type.name}: {e}", exc_info=True)

    def clear_all(self) -> None:
        """Remove all event subscribers (useful for testing/cleanup)."""
        self._subscribers.clear()
        self._catch_all.clear()
        self.logger.debug("[events] Cleared all subscribers")
