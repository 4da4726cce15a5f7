"""Per-step lifecycle state machine.

    UNMOUNTED -> MOUNTED -> AWAITING_INPUT -> VALIDATING -> EXECUTING -> COMPLETED
                                  ^               |             |
                                  +---- FAILED <--+-------------+

Each public method performs one transition chain to completion and publishes
the matching events synchronously before returning. Field and dependency
problems are returned as ``ValidationResult`` data; only state misuse raises.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

import requests

from setupwizard.core import events as ev
from setupwizard.core.context import RunContext
from setupwizard.core.errors import (
    ConfigurationError,
    ExternalCallError,
    SetupWizardError,
    StateError,
    StorageError,
    ValidationError,
    describe_error,
)
from setupwizard.core.logging import get_logger
from setupwizard.core.staging import StagedSnapshot
from setupwizard.core.steps import StepDescriptor
from setupwizard.core.validator import StepValidator, ValidationResult

_LOGGER = get_logger(__name__)

_REDACT_MARKERS = ("password", "secret", "token")


class StepState(StrEnum):
    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"
    AWAITING_INPUT = "awaiting_input"
    VALIDATING = "validating"
    FAILED = "failed"
    EXECUTING = "executing"
    COMPLETED = "completed"


_ALLOWED_TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.UNMOUNTED: {StepState.MOUNTED},
    StepState.MOUNTED: {StepState.AWAITING_INPUT},
    StepState.AWAITING_INPUT: {StepState.MOUNTED, StepState.VALIDATING},
    StepState.VALIDATING: {StepState.FAILED, StepState.EXECUTING},
    StepState.EXECUTING: {StepState.FAILED, StepState.COMPLETED},
    StepState.FAILED: {StepState.AWAITING_INPUT},
    StepState.COMPLETED: set(),
}


def redact(data: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of ``data`` with credential-like values masked for event payloads."""
    out: dict[str, Any] = {}
    for k, v in data.items():
        if any(m in str(k).lower() for m in _REDACT_MARKERS):
            out[k] = "***"
        elif isinstance(v, Mapping):
            out[k] = redact(v)
        else:
            out[k] = v
    return out


class StepLifecycle:
    """Drive one step instance through mount -> submit -> completed."""

    def __init__(
        self,
        descriptor: StepDescriptor,
        context: RunContext,
        validator: StepValidator | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.context = context
        self.validator = validator or StepValidator()
        self.state = StepState.UNMOUNTED
        self.history: list[StepState] = [StepState.UNMOUNTED]
        self.form_state: dict[str, Any] = {}
        self.last_result: ValidationResult | None = None
        self.output: dict[str, Any] | None = None

    @property
    def step_id(self) -> str:
        return self.descriptor.id

    def _transition(self, new_state: StepState) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise StateError(
                f"illegal step transition for '{self.step_id}': "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def _guard_finalized(self) -> None:
        if self.context.state.finalized and not self.context.settings.dev_override:
            raise StateError(
                "Installation is already finalized",
                "Set install.dev_override to re-run the wizard in development",
            )

    def mount(self, snapshot: StagedSnapshot | None = None) -> dict[str, Any]:
        """Load previously staged data for this step into the working form state.

        Idempotent: mounting again with the same snapshot yields the same state.
        Only the first mount of an instance publishes ``step.started``.
        """
        self._guard_finalized()
        if self.state == StepState.COMPLETED:
            raise StateError(f"Step '{self.step_id}' is completed; start a new instance")
        if self.state not in (StepState.UNMOUNTED, StepState.AWAITING_INPUT):
            raise StateError(f"Step '{self.step_id}' cannot be mounted while {self.state.value}")

        first_mount = self.state == StepState.UNMOUNTED
        self._transition(StepState.MOUNTED)
        snap = snapshot if snapshot is not None else self.context.staged.snapshot()
        self.form_state = snap.namespace(self.descriptor.namespace)

        if self.context.state.current_step != self.step_id:
            self.context.state.current_step = self.step_id
            self.context.save_state()

        if first_mount:
            self.context.events.publish(
                ev.STEP_STARTED,
                {"step_id": self.step_id, "data": redact(self.form_state)},
            )
        self._transition(StepState.AWAITING_INPUT)
        return dict(self.form_state)

    def submit(self, form_data: Mapping[str, Any]) -> ValidationResult:
        """Validate, execute and stage one submission.

        Returns:
            The ValidationResult; empty errors mean the step completed
        """
        self._guard_finalized()
        if self.state != StepState.AWAITING_INPUT:
            raise StateError(
                f"Step '{self.step_id}' cannot accept input while {self.state.value}",
                "Mount the step before submitting",
            )

        data = dict(form_data)
        self.form_state = dict(data)
        self._transition(StepState.VALIDATING)

        result = self.validator.validate(
            self.descriptor, data, self.context.state.completed_steps
        )
        if not result.passed:
            return self._fail(result, data)

        self._transition(StepState.EXECUTING)
        try:
            output = self._run_execute(data)
            self.context.staged.put_many(self.descriptor.namespace, output, replace=True)
        except (ConfigurationError, StateError):
            raise
        except ValidationError as e:
            result.merge_errors(e.errors or {self.step_id: [e.message]})
            result.failure = e
            return self._fail(result, data)
        except ExternalCallError as e:
            result.add(self.step_id, e.message)
            result.failure = e
            return self._fail(result, data)
        except StorageError as e:
            result.add(self.step_id, f"Cannot stage step output: {e.message}")
            result.failure = e
            return self._fail(result, data)
        except requests.RequestException as e:
            err = ExternalCallError(f"External call failed: {e}")
            result.add(self.step_id, err.message)
            result.failure = err
            return self._fail(result, data)
        except Exception as e:
            _LOGGER.error(f"step '{self.step_id}' execute hook raised {type(e).__name__}: {e}")
            err = SetupWizardError(f"Step '{self.step_id}' failed: {e}")
            result.add(self.step_id, err.message)
            result.failure = err
            return self._fail(result, data)

        self.output = output
        self._transition(StepState.COMPLETED)

        self.context.state.mark_step_complete(self.step_id)
        self.context.save_state()
        self.last_result = result
        _LOGGER.info(f"step completed: {self.step_id}")

        self.context.events.publish(
            ev.STEP_COMPLETED,
            {"step_id": self.step_id, "data": redact(output)},
        )
        return result

    def _run_execute(self, data: dict[str, Any]) -> dict[str, Any]:
        hook = self.descriptor.execute
        if hook is None:
            return data
        out = hook(data, self.context)
        if out is None:
            return {}
        if not isinstance(out, Mapping):
            raise TypeError(f"execute hook must return a mapping, got {type(out).__name__}")
        return dict(out)

    def _fail(self, result: ValidationResult, data: dict[str, Any]) -> ValidationResult:
        self._transition(StepState.FAILED)
        self.last_result = result
        failure = result.failure or ValidationError("validation failed", result.errors)
        _LOGGER.warning(f"step failed: {self.step_id}: {failure.message}")

        self.context.events.publish(
            ev.STEP_FAILED,
            {
                "step_id": self.step_id,
                "error": {**describe_error(failure), "fields": result.errors},
                "data": redact(data),
            },
        )
        self._transition(StepState.AWAITING_INPUT)
        return result
