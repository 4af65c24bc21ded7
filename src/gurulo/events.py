"""In-process event bus for the safety gate and executor."""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event types
EVENT_APPROVAL_NEEDED = "approval_needed"
EVENT_ACTION_CONFIRMED = "action_confirmed"
EVENT_ACTION_DENIED = "action_denied"
EVENT_ACTION_TIMEOUT = "action_timeout"
EVENT_TOOL_EXECUTED = "tool_executed"
EVENT_ERROR = "error"


class EventCollector:
    """Central event bus: keeps a short history and notifies listeners."""

    def __init__(self, history_size: int = 200):
        self._listeners: list[Callable] = []
        self._history: list[dict[str, Any]] = []
        self._history_size = history_size
        self._ids = itertools.count(1)

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        request_id: str | None = None,
        action_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Emit an event and notify all listeners."""
        event_id = next(self._ids)
        event_data = {
            "id": event_id,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "request_id": request_id,
            "action_id": action_id,
            "metadata": metadata,
        }
        self._history.append(event_data)
        if len(self._history) > self._history_size:
            del self._history[0]

        for listener in self._listeners:
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_id

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def recent(self, event_type: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent events, newest last."""
        events = self._history
        if event_type:
            events = [e for e in events if e["event_type"] == event_type]
        return events[-limit:]
