"""Installation commit phase.

``InstallationManager.execute`` is the single point where staged data crosses
into permanent storage:

1. invalidate cached configuration
2. verify schema requirements offline, then run schema migration
3. commit every staged namespace in active-sequence order (upserts)
4. optionally seed data and create the storage link
5. write the completion marker, then clear staged data and mark the run
   finalized in one session write

A failure in 2-5 aborts the run, leaves staged data untouched and is reported
as an ``InstallationResult`` with status ``error``. The manager never retries
on its own; staged data surviving the failure is what makes a caller retry
safe.
"""

from __future__ import annotations

import base64
import json
import os
import secrets
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from setupwizard.core import events as ev
from setupwizard.core.config import ConfigResolver
from setupwizard.core.context import RunContext
from setupwizard.core.diagnostics import utcnow_iso
from setupwizard.core.errors import CommitError, StateError, StorageError
from setupwizard.core.interfaces import PermanentStore
from setupwizard.core.log_bus import get_log_bus
from setupwizard.core.logging import get_logger
from setupwizard.core.marker import CompletionMarker
from setupwizard.core.schema import SchemaIntrospector
from setupwizard.core.session import atomic_write_text
from setupwizard.core.staging import StagedSnapshot
from setupwizard.core.steps import StepDescriptor, StepRegistry

_LOGGER = get_logger(__name__)

SETTINGS_TABLE = "settings"
SETTINGS_COLUMNS = ("namespace", "key", "value", "updated_at")

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class InstallOptions:
    run_schema_migration: bool = True
    run_seed: bool = False
    create_storage_link: bool = False
    reset_schema: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class InstallationResult:
    """Terminal outcome of one ``execute`` call."""

    status: str
    message: str
    output: str = ""
    committed_steps: tuple[str, ...] = ()
    migrations: tuple[str, ...] = ()
    duration_seconds: float = 0.0
    failed_phase: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "output": self.output,
            "committed_steps": list(self.committed_steps),
            "migrations": list(self.migrations),
            "duration_seconds": self.duration_seconds,
            "failed_phase": self.failed_phase,
        }


def commit_to_settings(namespace: str, staged: Mapping[str, Any], store: PermanentStore) -> None:
    """Default commit: one JSON row per staged key, upserted by (namespace, key)."""
    now = utcnow_iso()
    for key, value in staged.items():
        store.upsert(
            SETTINGS_TABLE,
            {
                "namespace": namespace,
                "key": key,
                "value": json.dumps(value, sort_keys=True, ensure_ascii=True),
                "updated_at": now,
            },
            keys=("namespace", "key"),
        )


def load_seed_sets(path: Path) -> list[dict[str, Any]]:
    """Read ``seeds: [{table, keys, rows}, ...]`` from a YAML file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise StorageError(f"Cannot read seed file {path}: {e}") from e
    seeds = data.get("seeds") if isinstance(data, dict) else None
    if not isinstance(seeds, list):
        raise StorageError(f"Seed file {path} must contain a 'seeds' list")
    return [s for s in seeds if isinstance(s, dict)]


@dataclass
class _Progress:
    migrations: list[str] = field(default_factory=list)
    committed: list[str] = field(default_factory=list)


class InstallationManager:
    """Commit staged data into permanent storage and finalize the run."""

    def __init__(
        self,
        context: RunContext,
        registry: StepRegistry,
        store: PermanentStore,
        introspector: SchemaIntrospector,
        *,
        resolver: ConfigResolver | None = None,
        marker: CompletionMarker | None = None,
    ) -> None:
        self.context = context
        self.registry = registry
        self.store = store
        self.introspector = introspector
        self.resolver = resolver
        self.marker = marker or CompletionMarker(context.settings.marker_path)

    def _guard(self) -> None:
        dev = self.context.settings.dev_override
        if self.context.state.finalized and not dev:
            raise StateError(
                f"Run '{self.context.run_id}' is already finalized",
                "Reset the run (development override) before installing again",
            )
        self.marker.guard(dev)

    def execute(self, options: InstallOptions | None = None) -> InstallationResult:
        """Run the commit phase once.

        Raises:
            StateError: If the run or deployment is already finalized
        """
        options = options or InstallOptions()
        self._guard()

        run_id = self.context.run_id
        t0 = time.monotonic()
        progress = _Progress()
        self.context.events.publish(
            ev.INSTALLATION_STARTED, {"run_id": run_id, "config": options.to_dict()}
        )

        with get_log_bus().capture() as lines:
            _LOGGER.info(f"installation started: {run_id}")
            try:
                self._invalidate_config()
                snapshot = self.context.staged.snapshot()
                sequence = self.registry.active_sequence(snapshot)
                self._check_schema(sequence, snapshot)
                if options.run_schema_migration:
                    self._migrate(options, progress)
                self._commit_staged(sequence, snapshot, progress)
                self._post_install(options)
                self._finalize(progress)
            except CommitError as e:
                _LOGGER.error(f"installation failed during {e.phase}: {e.message}")
                if e.cause is not None:
                    _LOGGER.error(f"cause: {type(e.cause).__name__}: {e.cause}")
                output = "\n".join(lines)
                duration = round(time.monotonic() - t0, 3)
                result = InstallationResult(
                    status=STATUS_ERROR,
                    message=e.message,
                    output=output,
                    committed_steps=tuple(progress.committed),
                    migrations=tuple(progress.migrations),
                    duration_seconds=duration,
                    failed_phase=e.phase,
                )
                self.context.events.publish(
                    ev.INSTALLATION_FAILED,
                    {
                        "run_id": run_id,
                        "error": e.message,
                        "phase": e.phase,
                        "committed_steps": list(progress.committed),
                    },
                )
                return result

            _LOGGER.info(f"installation completed: {run_id}")
            output = "\n".join(lines)

        duration = round(time.monotonic() - t0, 3)
        self.context.events.publish(
            ev.INSTALLATION_COMPLETED,
            {
                "run_id": run_id,
                "completed_steps": list(progress.committed),
                "duration_seconds": duration,
            },
        )
        return InstallationResult(
            status=STATUS_SUCCESS,
            message="Application installed successfully",
            output=output,
            committed_steps=tuple(progress.committed),
            migrations=tuple(progress.migrations),
            duration_seconds=duration,
        )

    def _invalidate_config(self) -> None:
        if self.resolver is not None:
            self.resolver.invalidate()
        self.introspector.invalidate()
        _LOGGER.verbose("configuration cache invalidated")

    def _check_schema(self, sequence: list[StepDescriptor], snapshot: StagedSnapshot) -> None:
        try:
            needs: dict[str, list[str]] = {}
            for desc in sequence:
                for table, cols in desc.schema_requirements.items():
                    needs.setdefault(table, []).extend(cols)
                if desc.commit is None and snapshot.namespace(desc.namespace):
                    needs.setdefault(SETTINGS_TABLE, []).extend(SETTINGS_COLUMNS)

            for table, cols in needs.items():
                if not self.introspector.has_table(table):
                    raise CommitError(f"Schema does not declare table '{table}'", phase="schema")
                missing = self.introspector.missing_columns(table, dict.fromkeys(cols))
                if missing:
                    raise CommitError(
                        f"Table '{table}' is missing columns: {', '.join(missing)}",
                        phase="schema",
                    )
        except CommitError:
            raise
        except Exception as e:
            raise CommitError(f"Cannot read schema definitions: {e}", "schema", e) from e

    def _migrate(self, options: InstallOptions, progress: _Progress) -> None:
        try:
            migrations = self.introspector.migrations()
            applied = self.store.migrate(migrations, reset=options.reset_schema)
        except Exception as e:
            raise CommitError(f"Schema migration failed: {e}", "migration", e) from e
        progress.migrations.extend(applied)

    def _commit_staged(
        self,
        sequence: list[StepDescriptor],
        snapshot: StagedSnapshot,
        progress: _Progress,
    ) -> None:
        for desc in sequence:
            staged = snapshot.namespace(desc.namespace)
            try:
                if staged:
                    if desc.commit is not None:
                        desc.commit(staged, self.store)
                    else:
                        commit_to_settings(desc.namespace, staged, self.store)
                    _LOGGER.verbose(f"committed {desc.namespace} ({len(staged)} keys)")
            except Exception as e:
                raise CommitError(f"Failed to commit step '{desc.id}': {e}", "commit", e) from e
            progress.committed.append(desc.id)

    def _post_install(self, options: InstallOptions) -> None:
        settings = self.context.settings
        if options.run_seed:
            if settings.seed_path is None:
                _LOGGER.warning("seeding requested but install.seed_path is not configured")
            else:
                try:
                    count = self.store.seed(load_seed_sets(settings.seed_path))
                except Exception as e:
                    raise CommitError(f"Seeding failed: {e}", "seed", e) from e
                _LOGGER.info(f"seeded {count} rows")

        if options.create_storage_link:
            target, link = settings.storage_link_target, settings.storage_link_path
            if target is None or link is None:
                _LOGGER.warning("storage link requested but install.storage_link is incomplete")
                return
            try:
                if link.is_symlink() and Path(os.readlink(link)) == target:
                    _LOGGER.verbose(f"storage link already present: {link}")
                    return
                if link.exists() or link.is_symlink():
                    raise FileExistsError(f"{link} exists and is not the expected link")
                link.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(target, link, target_is_directory=True)
            except OSError as e:
                raise CommitError(f"Cannot create storage link: {e}", "storage_link", e) from e
            _LOGGER.info(f"storage link created: {link} -> {target}")

    def _finalize(self, progress: _Progress) -> None:
        had_marker = self.marker.exists()
        try:
            self.marker.write(self.context.run_id, progress.committed)
        except OSError as e:
            raise CommitError(f"Cannot write completion marker: {e}", "finalize", e) from e

        try:
            self.context.finalize()
        except Exception as e:
            if not had_marker:
                try:
                    self.marker.remove()
                except OSError as rm_err:
                    _LOGGER.error(f"cannot remove completion marker: {rm_err}")
            raise CommitError(f"Cannot finalize run state: {e}", "finalize", e) from e

    def rollback(self) -> bool:
        """Revert the most recently applied migration batch. Staged data is untouched."""
        try:
            reverted = self.store.rollback()
        except Exception as e:
            _LOGGER.error(f"rollback failed: {type(e).__name__}: {e}")
            return False
        if not reverted:
            _LOGGER.info("nothing to roll back")
            return False
        self.context.events.publish(
            ev.INSTALLATION_ROLLED_BACK,
            {"run_id": self.context.run_id, "migrations": reverted},
        )
        return True

    def generate_secret(self) -> str:
        """Create a fresh application secret and persist it to the env file.

        Every call rotates the secret; call it at most once per install run.
        """
        key = "base64:" + base64.b64encode(secrets.token_bytes(32)).decode("ascii")
        path = self.context.settings.env_path
        lines: list[str] = []
        if path.exists():
            lines = path.read_text(encoding="utf-8").splitlines()
        replaced = False
        for i, line in enumerate(lines):
            if line.startswith("APP_KEY="):
                lines[i] = f"APP_KEY={key}"
                replaced = True
        if not replaced:
            lines.append(f"APP_KEY={key}")
        atomic_write_text(path, "\n".join(lines) + "\n")
        _LOGGER.info(f"application secret written to {path}")
        return key
