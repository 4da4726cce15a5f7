"""Persistent completion marker for a finalized deployment."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from setupwizard.core.diagnostics import utcnow_iso
from setupwizard.core.errors import StateError
from setupwizard.core.session import atomic_write_text


class CompletionMarker:
    """Sentinel file whose presence means "installation finalized"."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # A marker we cannot parse still marks the deployment as installed.
            return {"unreadable": True}
        return data if isinstance(data, dict) else {}

    def write(self, run_id: str, completed_steps: list[str]) -> None:
        payload = {
            "run_id": run_id,
            "installed_at": utcnow_iso(),
            "completed_steps": list(completed_steps),
        }
        atomic_write_text(self.path, json.dumps(payload, indent=2, sort_keys=True) + "\n")

    def remove(self) -> None:
        if self.path.exists():
            self.path.unlink()

    def guard(self, dev_override: bool) -> None:
        """Refuse re-entry into an installed deployment unless overridden.

        Raises:
            StateError: If the marker exists and ``dev_override`` is False
        """
        if self.exists() and not dev_override:
            raise StateError(
                f"Application is already installed (marker: {self.path})",
                "Set install.dev_override to re-run the wizard in development",
            )
