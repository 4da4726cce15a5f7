"""Welcome step - language selection and start of the run."""

from __future__ import annotations

from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.steps import StepDescriptor, StepRegistry

STEP_ID = "welcome"
LOCALES = ("en", "de", "fr", "es", "cs", "sk")


def execute(data: dict[str, Any], context: RunContext) -> dict[str, Any]:
    return {"locale": data.get("locale") or "en"}


def register(registry: StepRegistry, settings: WizardSettings) -> StepDescriptor:
    return registry.register(
        StepDescriptor(
            id=STEP_ID,
            position=10,
            title="Welcome",
            rules={"locale": "nullable|string|in:" + ",".join(LOCALES)},
            execute=execute,
        )
    )
