"""Runtime diagnostics envelope + JSONL sink.

Every wizard event can be mirrored into a JSONL file for post-mortem analysis
of an installation run. The sink self-filters when diagnostics are disabled.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from setupwizard.core.events import EventBus
from setupwizard.core.logging import get_logger

_logger = get_logger(__name__)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_envelope(
    *,
    event: str,
    component: str,
    operation: str,
    data: dict[str, Any],
) -> dict[str, Any]:
    """Build the canonical diagnostics envelope.

    Schema:
        {
          "event": "<string>",
          "component": "<string>",
          "operation": "<string>",
          "timestamp": "<iso8601 utc>",
          "data": { ... }
        }
    """
    return {
        "event": event,
        "component": component,
        "operation": operation,
        "timestamp": utcnow_iso(),
        "data": data,
    }


def install_jsonl_sink(bus: EventBus, *, path: Path, enabled: bool) -> bool:
    """Subscribe a JSONL writer for every event published on ``bus``.

    Returns False (and subscribes nothing) when diagnostics are disabled.
    """
    if not enabled:
        return False

    def _on_any_event(event: str, data: dict[str, Any]) -> None:
        component, _sep, operation = event.partition(".")
        payload = build_envelope(
            event=event,
            component=component or "unknown",
            operation=operation or "unknown",
            data=data,
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(
                payload,
                ensure_ascii=True,
                separators=(",", ":"),
                sort_keys=True,
                default=str,
            )
            with path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        except OSError as e:
            _logger.warning(f"Diagnostics sink write failed: {type(e).__name__}: {e}")

    bus.subscribe_all(_on_any_event)
    return True
