"""Application environment step (name, URL, environment, debug flag)."""

from __future__ import annotations

from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.rules import is_empty
from setupwizard.core.steps import StepDescriptor, StepRegistry

STEP_ID = "environment"

RULES = {
    "app_name": "required|string|max:64",
    "app_url": "required|url|max:255",
    "app_env": "nullable|in:local,staging,production",
    "app_debug": "nullable|boolean",
    "create_admin": "nullable|boolean",
}

_TRUE = {True, 1, "1", "true", "on", "yes"}


def _flag(value: Any, default: bool) -> bool:
    if is_empty(value):
        return default
    return value in _TRUE


def execute(data: dict[str, Any], context: RunContext) -> dict[str, Any]:
    return {
        "app_name": str(data["app_name"]).strip(),
        "app_url": str(data["app_url"]).rstrip("/"),
        "app_env": data.get("app_env") or "production",
        "app_debug": _flag(data.get("app_debug"), False),
        "create_admin": _flag(data.get("create_admin"), True),
    }


def register(registry: StepRegistry, settings: WizardSettings) -> StepDescriptor:
    return registry.register(
        StepDescriptor(
            id=STEP_ID,
            position=30,
            title="Application",
            namespace="app",
            rules=RULES,
            execute=execute,
        )
    )
