"""Capability interfaces.

Collaborators plug into the engine through these small protocols. A step
implementation composes only the capabilities it needs instead of inheriting
a bundle of behavior.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from setupwizard.core.context import RunContext
    from setupwizard.core.schema import Migration


class SessionStore(Protocol):
    """Run-scoped key/value store holding JSON documents."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def replace_prefix(self, prefix: str, values: Mapping[str, Any]) -> None:
        """Swap every key under ``prefix`` for ``values`` as one all-or-nothing write."""
        ...


class PermanentStore(Protocol):
    """Permanent storage reached by the installation manager.

    The manager never issues ad-hoc queries beyond these primitives.
    """

    def migrate(self, migrations: Sequence[Migration], *, reset: bool = False) -> list[str]:
        """Apply pending migrations as one batch.

        Returns:
            Names of the migrations applied

        Raises:
            StorageError: If any migration fails
        """
        ...

    def rollback(self) -> list[str]:
        """Revert the most recent batch. Returns the reverted migration names."""
        ...

    def seed(self, seed_sets: Sequence[Mapping[str, Any]]) -> int:
        """Upsert seed rows. Returns the number of rows written."""
        ...

    def upsert(self, table: str, row: Mapping[str, Any], keys: Sequence[str]) -> None:
        """Insert or update a row identified by ``keys``."""
        ...

    def table_exists(self, table: str) -> bool: ...


class Validatable(Protocol):
    """Step that declares field rules."""

    @property
    def id(self) -> str: ...

    @property
    def rules(self) -> Mapping[str, str | Sequence[str]]: ...


class Executable(Protocol):
    """Step execute hook.

    Receives the validated form data and the run context; returns the document
    to stage for the step namespace. Must be non-interactive.
    """

    def __call__(self, data: dict[str, Any], context: RunContext) -> Mapping[str, Any] | None: ...


class Committable(Protocol):
    """Step commit hook: writes the staged namespace into permanent storage.

    Writes must be upserts keyed by logical identity so that a full retry is
    idempotent.
    """

    def __call__(self, staged: Mapping[str, Any], store: PermanentStore) -> None: ...


class EventEmitting(Protocol):
    """Anything that can publish wizard events."""

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None: ...
