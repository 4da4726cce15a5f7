"""Built-in wizard steps.

Each module exposes ``register(registry, settings)``. The application calls
``register_builtin_steps`` once at startup; the core never scans for plugins.
"""

from __future__ import annotations

from setupwizard.core.config import WizardSettings
from setupwizard.core.steps import StepRegistry
from setupwizard.plugins import account, environment, requirements, welcome

# Registration order matters: dependencies must be registered first.
BUILTIN_PLUGINS = (welcome, requirements, environment, account)


def register_builtin_steps(registry: StepRegistry, settings: WizardSettings) -> StepRegistry:
    """Register every built-in step and apply the configured ``steps`` list."""
    for plugin in BUILTIN_PLUGINS:
        plugin.register(registry, settings)
    registry.restrict(settings.steps)
    return registry
