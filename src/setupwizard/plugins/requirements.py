"""Server requirements step.

Runs the configured runtime, capability and permission checks. A failed check
is reported as field errors keyed ``<kind>.<name>`` so the operator can fix
the host and resubmit.
"""

from __future__ import annotations

from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.diagnostics import utcnow_iso
from setupwizard.core.errors import ValidationError
from setupwizard.core.requirements import RequirementChecker
from setupwizard.core.steps import StepDescriptor, StepRegistry

STEP_ID = "requirements"


def execute(data: dict[str, Any], context: RunContext) -> dict[str, Any]:
    report = RequirementChecker.from_settings(context.settings).check()
    if not report.ok:
        raise ValidationError("Server requirements are not met", report.errors())
    return {"checked_at": utcnow_iso(), "report": report.to_dict()}


def register(registry: StepRegistry, settings: WizardSettings) -> StepDescriptor:
    return registry.register(
        StepDescriptor(
            id=STEP_ID,
            position=20,
            title="Server Requirements",
            execute=execute,
        )
    )
