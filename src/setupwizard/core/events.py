"""Synchronous event bus for wizard progress signals.

Listeners run in publish order before ``publish`` returns. A failing
listener is logged and skipped, so it never aborts the lifecycle transition
that published the event.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from setupwizard.core.logging import get_logger

_logger = get_logger(__name__)

INSTALLATION_STARTED = "installation.started"
INSTALLATION_COMPLETED = "installation.completed"
INSTALLATION_FAILED = "installation.failed"
INSTALLATION_ROLLED_BACK = "installation.rolled_back"
STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
STEP_FAILED = "step.failed"

EventCallback = Callable[[dict[str, Any]], None]
AnyEventCallback = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Per-event and catch-all listeners for wizard events."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventCallback]] = defaultdict(list)
        self._all_subscribers: list[AnyEventCallback] = []

    def subscribe(self, event: str, callback: EventCallback) -> None:
        self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        if callback in self._subscribers.get(event, []):
            self._subscribers[event].remove(callback)

    def subscribe_all(self, callback: AnyEventCallback) -> None:
        """Receive every event as ``callback(event, data)`` (diagnostics sink, tests)."""
        self._all_subscribers.append(callback)

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        data = data or {}

        for cb in list(self._subscribers.get(event, [])):
            try:
                cb(data)
            except Exception as e:
                _logger.error(f"listener for '{event}' failed: {type(e).__name__}: {e}")

        for cb_all in list(self._all_subscribers):
            try:
                cb_all(event, data)
            except Exception as e:
                _logger.error(f"catch-all listener failed on '{event}': {type(e).__name__}: {e}")


_global_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Process-wide bus used when no bus is passed explicitly."""
    global _global_bus
    if _global_bus is None:
        _global_bus = EventBus()
    return _global_bus
