"""Error handling with friendly messages."""

from __future__ import annotations

from typing import Any


class SetupWizardError(Exception):
    """Base exception for all setupwizard errors."""

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message}\nSuggestion: {self.suggestion}"
        return self.message


class ConfigError(SetupWizardError):
    """Configuration value could not be resolved or is invalid."""

    pass


class ConfigurationError(SetupWizardError):
    """Step registration is inconsistent. Fatal at startup."""

    pass


class DuplicateStepError(ConfigurationError):
    """A step id was registered twice."""

    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(
            f"Step '{step_id}' is already registered",
            "Each plugin must register a unique step id",
        )


class StepNotFoundError(SetupWizardError):
    """Step id is not registered."""

    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(
            f"Step '{step_id}' not found",
            "Check registered steps with: setupwizard steps",
        )


class ValidationError(SetupWizardError):
    """Field-level validation failed. The user corrects and resubmits."""

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None) -> None:
        self.errors = dict(errors or {})
        super().__init__(message)


class DependencyUnmetError(SetupWizardError):
    """A prerequisite step has not been completed."""

    def __init__(self, step_id: str, missing: list[str]) -> None:
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(
            f"Step '{step_id}' requires: {', '.join(self.missing)}",
            "Complete the prerequisite steps first",
        )


class ExternalCallError(SetupWizardError):
    """A remote collaborator timed out or was unreachable."""

    pass


class StorageError(SetupWizardError):
    """Session or permanent storage primitive failed."""

    pass


class CommitError(SetupWizardError):
    """Schema migration or permanent-storage write failed during install."""

    def __init__(self, message: str, phase: str, cause: BaseException | None = None) -> None:
        self.phase = phase
        self.cause = cause
        super().__init__(message, "Staged data is preserved; fix the fault and retry")


class StateError(SetupWizardError):
    """Operation is not allowed in the current run state."""

    pass


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Return a JSON-safe description of an exception for event payloads."""
    out: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, SetupWizardError):
        out["message"] = exc.message
        if exc.suggestion:
            out["suggestion"] = exc.suggestion
    return out
