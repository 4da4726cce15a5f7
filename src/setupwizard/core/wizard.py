"""Request-scoped facade over the registry, run context and installer.

One ``Wizard`` serves one install run. Callers (CLI, a web handler) hold it
for the duration of a request and call exactly one operation per
interaction; the run state itself lives in the session store.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from setupwizard.core.config import ConfigResolver
from setupwizard.core.context import RunContext
from setupwizard.core.errors import StateError
from setupwizard.core.installer import InstallationManager, InstallationResult, InstallOptions
from setupwizard.core.interfaces import PermanentStore
from setupwizard.core.lifecycle import StepLifecycle, StepState
from setupwizard.core.logging import get_logger
from setupwizard.core.marker import CompletionMarker
from setupwizard.core.schema import SchemaIntrospector
from setupwizard.core.steps import StepDescriptor, StepRegistry
from setupwizard.core.validator import StepValidator, ValidationResult

_LOGGER = get_logger(__name__)


class Wizard:
    """Drive the active step sequence of one run and hand off to installation."""

    def __init__(
        self,
        registry: StepRegistry,
        context: RunContext,
        store: PermanentStore,
        introspector: SchemaIntrospector,
        *,
        resolver: ConfigResolver | None = None,
        marker: CompletionMarker | None = None,
    ) -> None:
        self.registry = registry
        self.context = context
        self.marker = marker or CompletionMarker(context.settings.marker_path)
        self.validator = StepValidator(registry)
        self.installer = InstallationManager(
            context,
            registry,
            store,
            introspector,
            resolver=resolver,
            marker=self.marker,
        )
        self._lifecycles: dict[str, StepLifecycle] = {}

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def enter(self) -> list[StepDescriptor]:
        """Open the wizard and return the active sequence.

        Raises:
            StateError: If the deployment or run is finalized (no dev override)
        """
        dev = self.context.settings.dev_override
        self.marker.guard(dev)
        if self.context.state.finalized and not dev:
            raise StateError(
                f"Run '{self.run_id}' is already finalized",
                "Set install.dev_override to re-run the wizard in development",
            )
        sequence = self.sequence()
        _LOGGER.verbose(f"wizard entered: run={self.run_id} steps={[d.id for d in sequence]}")
        return sequence

    def sequence(self) -> list[StepDescriptor]:
        return self.registry.active_sequence(self.context.staged.snapshot())

    def _displayed(self, step_id: str) -> StepDescriptor:
        descriptor = self.registry.resolve(step_id)
        if descriptor not in self.sequence():
            raise StateError(
                f"Step '{step_id}' is not part of the active sequence",
                "Hidden or disabled steps cannot be mounted",
            )
        return descriptor

    def _lifecycle(self, step_id: str) -> StepLifecycle:
        descriptor = self._displayed(step_id)
        lifecycle = self._lifecycles.get(step_id)
        if lifecycle is None or lifecycle.state == StepState.COMPLETED:
            lifecycle = StepLifecycle(descriptor, self.context, self.validator)
            self._lifecycles[step_id] = lifecycle
        return lifecycle

    def mount(self, step_id: str) -> dict[str, Any]:
        """Mount a step and return its working form state."""
        return self._lifecycle(step_id).mount()

    def submit(self, step_id: str, form_data: Mapping[str, Any]) -> ValidationResult:
        """Submit a step, mounting it first if this request has not."""
        lifecycle = self._lifecycle(step_id)
        if lifecycle.state != StepState.AWAITING_INPUT:
            lifecycle.mount()
        return lifecycle.submit(form_data)

    def pending_steps(self) -> list[StepDescriptor]:
        done = set(self.context.state.completed_steps)
        return [d for d in self.sequence() if d.id not in done]

    def next_step(self) -> StepDescriptor | None:
        pending = self.pending_steps()
        return pending[0] if pending else None

    def install(self, options: InstallOptions | None = None) -> InstallationResult:
        """Commit the run once every active step is completed.

        Raises:
            StateError: If steps are still pending or the run is finalized
        """
        pending = self.pending_steps()
        if pending:
            raise StateError(
                f"Steps not completed: {', '.join(d.id for d in pending)}",
                "Submit every step of the wizard before installing",
            )
        return self.installer.execute(options)

    def rollback(self) -> bool:
        return self.installer.rollback()

    def generate_secret(self) -> str:
        return self.installer.generate_secret()

    def reset(self) -> None:
        """Discard staged data and progress for this run.

        A finalized run may only be reset with the development override, which
        also removes the completion marker.
        """
        dev = self.context.settings.dev_override
        if (self.context.state.finalized or self.marker.exists()) and not dev:
            raise StateError(
                "Cannot reset a finalized installation",
                "Set install.dev_override to reset in development",
            )
        self.context.reset()
        self._lifecycles.clear()
        if dev:
            self.marker.remove()
        _LOGGER.info(f"run reset: {self.run_id}")
