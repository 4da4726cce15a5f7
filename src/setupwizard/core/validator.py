"""Step validation: field rules plus dependency satisfaction.

Validation problems are returned as data (``ValidationResult``), never raised,
so the caller can render them next to the form.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from setupwizard.core.errors import (
    ConfigurationError,
    DependencyUnmetError,
    SetupWizardError,
    ValidationError,
)
from setupwizard.core.interfaces import Validatable
from setupwizard.core.logging import get_logger
from setupwizard.core.rules import evaluate, strip_store_rules
from setupwizard.core.steps import StepDescriptor, StepRegistry

_LOGGER = get_logger(__name__)


@dataclass
class ValidationResult:
    """Per-step map of field path -> error messages. Empty means passed.

    ``skipped_rules`` records the store-dependent rules that were stripped
    before evaluation, per field. ``failure`` carries the error that
    classifies the failure (validation, unmet dependency, external call).
    """

    step_id: str
    errors: dict[str, list[str]] = field(default_factory=dict)
    skipped_rules: dict[str, list[str]] = field(default_factory=dict)
    failure: SetupWizardError | None = None

    @property
    def passed(self) -> bool:
        return not self.errors

    def add(self, path: str, message: str) -> None:
        self.errors.setdefault(path, []).append(message)

    def merge_errors(self, errors: Mapping[str, Iterable[str]]) -> None:
        for path, messages in errors.items():
            for msg in messages:
                self.add(path, msg)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "step_id": self.step_id,
            "passed": self.passed,
            "errors": {k: list(v) for k, v in self.errors.items()},
            "skipped_rules": {k: list(v) for k, v in self.skipped_rules.items()},
        }
        if self.failure is not None:
            out["failure"] = type(self.failure).__name__
        return out


@dataclass
class BatchValidationResult:
    passed: bool
    results: dict[str, ValidationResult] = field(default_factory=dict)
    structural_error: ConfigurationError | None = None

    def errors(self) -> dict[str, dict[str, list[str]]]:
        return {sid: r.errors for sid, r in self.results.items() if r.errors}


class StepValidator:
    """Run a step's field rules and dependency check."""

    def __init__(self, registry: StepRegistry | None = None) -> None:
        self._registry = registry

    def validate_fields(
        self, descriptor: Validatable, form_data: Mapping[str, Any]
    ) -> ValidationResult:
        """Apply the declared field rules, skipping store-dependent ones."""
        result = ValidationResult(step_id=descriptor.id)
        parsed = getattr(descriptor, "parsed_rules", None)
        if parsed is None:
            parsed = StepDescriptor(id=descriptor.id, position=0, rules=descriptor.rules).parsed_rules

        for path, rules in parsed.items():
            kept, skipped = strip_store_rules(rules)
            if skipped:
                result.skipped_rules[path] = [str(r) for r in skipped]
                _LOGGER.debug(
                    f"{descriptor.id}.{path}: skipped store rules {result.skipped_rules[path]}"
                )
            for msg in evaluate(path, kept, form_data):
                result.add(path, msg)

        if result.errors:
            result.failure = ValidationError(
                f"Step '{descriptor.id}' has invalid fields", result.errors
            )
        return result

    def validate_dependencies(
        self,
        descriptor: StepDescriptor,
        completed_step_ids: Iterable[str],
        result: ValidationResult | None = None,
    ) -> bool:
        """Return False when any ``depends_on`` id is not completed.

        The error is recorded on ``result`` (keyed by the step id) when given.
        """
        done = set(completed_step_ids)
        missing = sorted(d for d in descriptor.depends_on if d not in done)
        if not missing:
            return True
        if result is not None:
            err = DependencyUnmetError(descriptor.id, missing)
            result.add(descriptor.id, err.message)
            result.failure = err
        return False

    def validate(
        self,
        descriptor: StepDescriptor,
        form_data: Mapping[str, Any],
        completed_step_ids: Iterable[str],
    ) -> ValidationResult:
        """Dependency check plus field rules, aggregated into one result."""
        result = self.validate_fields(descriptor, form_data)
        # An unmet dependency takes precedence as the failure classification.
        self.validate_dependencies(descriptor, completed_step_ids, result)
        return result

    def validate_steps(
        self,
        items: Sequence[tuple[StepDescriptor, Mapping[str, Any]]],
        completed_step_ids: Iterable[str] = (),
    ) -> BatchValidationResult:
        """Validate several steps in order.

        Stops at the first structural error (a dependency that is not
        registered) but collects every field-level error of the steps it
        visits. Steps earlier in ``items`` that pass count as completed for
        the dependency checks of later ones.
        """
        batch = BatchValidationResult(passed=True)
        done = set(completed_step_ids)

        for descriptor, form_data in items:
            if self._registry is not None:
                unknown = sorted(d for d in descriptor.depends_on if d not in self._registry)
                if unknown:
                    batch.structural_error = ConfigurationError(
                        f"Step '{descriptor.id}' depends on unregistered steps: "
                        f"{', '.join(unknown)}"
                    )
                    batch.passed = False
                    break

            result = self.validate(descriptor, form_data, done)
            batch.results[descriptor.id] = result
            if result.passed:
                done.add(descriptor.id)
            else:
                batch.passed = False

        return batch
