"""Step descriptors and the step registry.

Plugins call ``StepRegistry.register`` explicitly at process start; the core
never scans for them. Ordering is ``(position, registration order)``, so two
plugins that pick the same position keep the order they registered in.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from setupwizard.core.errors import ConfigurationError, DuplicateStepError, StepNotFoundError
from setupwizard.core.interfaces import Committable, Executable
from setupwizard.core.logging import get_logger
from setupwizard.core.rules import Rule, parse_rules
from setupwizard.core.staging import StagedSnapshot

_LOGGER = get_logger(__name__)

DisplayPredicate = Callable[[StagedSnapshot], bool]


def always_displayed(snapshot: StagedSnapshot) -> bool:
    return True


@dataclass(frozen=True, eq=False)
class StepDescriptor:
    """Immutable description of one wizard step.

    Attributes:
        id: Unique step id
        position: Sort key (ascending); ties keep registration order
        depends_on: Ids of steps that must be completed first
        display_predicate: Pure function of the staged snapshot; False hides the step
        title: Human readable title
        namespace: Staged-data namespace (defaults to ``id``)
        rules: field path -> rule string or list of rules
        execute: Hook producing the document to stage (default: the form data)
        commit: Hook writing staged data to permanent storage
        schema_requirements: table -> columns the commit needs
    """

    id: str
    position: int
    depends_on: frozenset[str] = frozenset()
    display_predicate: DisplayPredicate = always_displayed
    title: str = ""
    namespace: str = ""
    rules: Mapping[str, str | Sequence[str]] = field(default_factory=dict)
    execute: Executable | None = None
    commit: Committable | None = None
    schema_requirements: Mapping[str, Sequence[str]] = field(default_factory=dict)
    _parsed_rules: Mapping[str, tuple[Rule, ...]] = field(
        init=False, repr=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id or "/" in self.id:
            raise ConfigurationError(f"Invalid step id: {self.id!r}")
        if isinstance(self.position, bool) or not isinstance(self.position, int):
            raise ConfigurationError(f"Step '{self.id}': position must be an int")
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        if self.id in self.depends_on:
            raise ConfigurationError(f"Step '{self.id}' cannot depend on itself")
        if not self.namespace:
            object.__setattr__(self, "namespace", self.id)
        if not self.title:
            object.__setattr__(self, "title", self.id.replace("_", " ").title())
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))
        object.__setattr__(
            self,
            "schema_requirements",
            MappingProxyType({t: tuple(c) for t, c in self.schema_requirements.items()}),
        )
        parsed = {name: tuple(parse_rules(name, spec)) for name, spec in self.rules.items()}
        object.__setattr__(self, "_parsed_rules", MappingProxyType(parsed))

    @property
    def parsed_rules(self) -> Mapping[str, tuple[Rule, ...]]:
        return self._parsed_rules

    def is_displayed(self, snapshot: StagedSnapshot) -> bool:
        return bool(self.display_predicate(snapshot))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position,
            "title": self.title,
            "namespace": self.namespace,
            "depends_on": sorted(self.depends_on),
            "rules": {k: v if isinstance(v, str) else list(v) for k, v in self.rules.items()},
        }


class StepRegistry:
    """Sorted, deduplicated set of registered steps."""

    def __init__(self) -> None:
        self._steps: dict[str, StepDescriptor] = {}
        self._order: dict[str, int] = {}
        self._enabled: tuple[str, ...] = ()

    def register(self, descriptor: StepDescriptor) -> StepDescriptor:
        """Register a step.

        Raises:
            DuplicateStepError: If the id is already registered
            ConfigurationError: If a dependency is unregistered or sorts after the step
        """
        if descriptor.id in self._steps:
            raise DuplicateStepError(descriptor.id)

        for dep in sorted(descriptor.depends_on):
            dep_desc = self._steps.get(dep)
            if dep_desc is None:
                raise ConfigurationError(
                    f"Step '{descriptor.id}' depends on unregistered step '{dep}'",
                    "Register prerequisite steps before the steps that depend on them",
                )
            if dep_desc.position > descriptor.position:
                raise ConfigurationError(
                    f"Step '{descriptor.id}' (position {descriptor.position}) depends on "
                    f"'{dep}' which sorts after it (position {dep_desc.position})"
                )

        self._order[descriptor.id] = len(self._order)
        self._steps[descriptor.id] = descriptor
        _LOGGER.debug(f"registered step {descriptor.id} at position {descriptor.position}")
        return descriptor

    def restrict(self, enabled: Sequence[str]) -> None:
        """Limit the active sequence to ``enabled`` ids (empty: no restriction).

        Raises:
            ConfigurationError: If an id is unknown or a prerequisite is left out
        """
        ids = tuple(enabled)
        unknown = [i for i in ids if i not in self._steps]
        if unknown:
            raise ConfigurationError(
                f"Configured steps are not registered: {', '.join(unknown)}",
                "Check the 'steps' list in the configuration",
            )
        if ids:
            for sid in ids:
                missing = sorted(self._steps[sid].depends_on - set(ids))
                if missing:
                    raise ConfigurationError(
                        f"Configured step '{sid}' needs disabled steps: {', '.join(missing)}"
                    )
        self._enabled = ids

    def resolve(self, step_id: str) -> StepDescriptor:
        try:
            return self._steps[step_id]
        except KeyError:
            raise StepNotFoundError(step_id) from None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def _sort_key(self, descriptor: StepDescriptor) -> tuple[int, int]:
        return descriptor.position, self._order[descriptor.id]

    def all(self) -> list[StepDescriptor]:
        """Every registered step in sequence order, ignoring predicates."""
        return sorted(self._steps.values(), key=self._sort_key)

    def active_sequence(self, snapshot: StagedSnapshot) -> list[StepDescriptor]:
        """Displayed steps sorted by (position, registration order)."""
        enabled = set(self._enabled)
        out = [
            d
            for d in self.all()
            if (not enabled or d.id in enabled) and d.is_displayed(snapshot)
        ]
        return out
