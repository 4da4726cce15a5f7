"""Run state and the context object threaded through every wizard call."""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.diagnostics import utcnow_iso
from setupwizard.core.events import get_event_bus
from setupwizard.core.interfaces import EventEmitting, SessionStore
from setupwizard.core.session import FileSession
from setupwizard.core.staging import StagedDataStore


@dataclass(slots=True)
class RunState:
    """Progress of one install run.

    Mutated only by lifecycle transitions and by the installation manager.
    """

    run_id: str
    started_at: str | None = None
    current_step: str | None = None
    completed_steps: list[str] = field(default_factory=list)
    finalized: bool = False
    finalized_at: str | None = None

    def mark_step_complete(self, step_id: str) -> None:
        if step_id not in self.completed_steps:
            self.completed_steps.append(step_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "current_step": self.current_step,
            "completed_steps": list(self.completed_steps),
            "finalized": self.finalized,
            "finalized_at": self.finalized_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        return cls(
            run_id=str(data["run_id"]),
            started_at=data.get("started_at"),
            current_step=data.get("current_step"),
            completed_steps=[str(s) for s in data.get("completed_steps", [])],
            finalized=bool(data.get("finalized", False)),
            finalized_at=data.get("finalized_at"),
        )


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class RunContext:
    """Staged data + run state + settings + event bus for one install run.

    Passed explicitly to every lifecycle, validator and manager call; nothing
    in the engine reaches for an ambient session.
    """

    def __init__(
        self,
        session: SessionStore,
        settings: WizardSettings | None = None,
        *,
        events: EventEmitting | None = None,
        run_id: str | None = None,
    ) -> None:
        self.settings = settings or WizardSettings()
        self.session = session
        self.events = events or get_event_bus()
        self.staged = StagedDataStore(session, prefix=self.settings.session_prefix)
        self._state_key = f"{self.settings.session_prefix}/run_state"
        self.state = self._load_state(run_id)

    @classmethod
    def open(
        cls,
        settings: WizardSettings,
        run_id: str,
        *,
        events: EventEmitting | None = None,
    ) -> RunContext:
        """Open (or create) the file-backed run ``run_id``."""
        session = FileSession(settings.session_dir, run_id)
        return cls(session, settings, events=events, run_id=run_id)

    @property
    def run_id(self) -> str:
        return self.state.run_id

    def _load_state(self, run_id: str | None) -> RunState:
        raw = self.session.get(self._state_key)
        if isinstance(raw, dict) and "run_id" in raw:
            return RunState.from_dict(raw)
        state = RunState(run_id=run_id or new_run_id(), started_at=utcnow_iso())
        self.session.set(self._state_key, state.to_dict())
        return state

    def save_state(self) -> None:
        self.session.set(self._state_key, self.state.to_dict())

    def reset(self) -> None:
        """Drop staged data and start a fresh run state under the same run id."""
        self.staged.clear_all()
        self.state = RunState(run_id=self.state.run_id, started_at=utcnow_iso())
        self.save_state()

    def finalize(self) -> None:
        """Drop staged data and persist ``finalized=True`` in one session write.

        On failure the session and ``self.state`` are left as they were.
        """
        state = dataclasses.replace(
            self.state,
            completed_steps=list(self.state.completed_steps),
            current_step=None,
            finalized=True,
            finalized_at=utcnow_iso(),
        )
        self.session.replace_prefix(
            f"{self.settings.session_prefix}/", {self._state_key: state.to_dict()}
        )
        self.state = state
