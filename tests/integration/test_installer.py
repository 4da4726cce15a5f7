"""Integration tests for InstallationManager against a real SQLite store."""

from __future__ import annotations

import dataclasses
import json
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from setupwizard.core import events as ev
from setupwizard.core.config import BUILTIN_SCHEMA_DIR, ConfigResolver, WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.errors import StateError, StorageError
from setupwizard.core.installer import InstallationManager, InstallOptions
from setupwizard.core.interfaces import PermanentStore
from setupwizard.core.marker import CompletionMarker
from setupwizard.core.schema import Migration, SchemaIntrospector
from setupwizard.core.session import MemorySession
from setupwizard.core.steps import StepDescriptor, StepRegistry
from setupwizard.core.storage import SqliteStore


class FlakyStore(SqliteStore):
    """SqliteStore whose migrate fails a configurable number of times."""

    def __init__(self, path: Path, failures: int) -> None:
        super().__init__(path)
        self.failures = failures
        self.migrate_calls = 0

    def migrate(self, migrations: Sequence[Migration], *, reset: bool = False) -> list[str]:
        self.migrate_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("database is locked")
        return super().migrate(migrations, reset=reset)


class BrokenFinalizeSession(MemorySession):
    """MemorySession whose prefix replacement (used by finalize) fails."""

    def replace_prefix(self, prefix: str, values: Mapping[str, Any]) -> None:
        if prefix == "setupwizard/":
            raise StorageError("session file is read-only")
        super().replace_prefix(prefix, values)


def _save_users(staged: Mapping[str, Any], store: PermanentStore) -> None:
    store.upsert(
        "users",
        {"name": staged["name"], "email": staged["email"], "password": staged["password"]},
        keys=("email",),
    )


def _registry() -> StepRegistry:
    registry = StepRegistry()
    registry.register(StepDescriptor(id="welcome", position=1))
    registry.register(StepDescriptor(id="environment", position=2, namespace="app"))
    registry.register(
        StepDescriptor(
            id="account",
            position=3,
            depends_on={"environment"},
            commit=_save_users,
            schema_requirements={"users": ["name", "email", "password"]},
        )
    )
    return registry


def _stage(context: RunContext) -> None:
    context.staged.put_many("app", {"app_name": "Demo", "app_url": "https://demo.test"})
    context.staged.put_many(
        "account", {"name": "Admin", "email": "admin@demo.test", "password": "hash"}
    )
    for sid in ("welcome", "environment", "account"):
        context.state.mark_step_complete(sid)
    context.save_state()


def _manager(context: RunContext, store: PermanentStore, **kwargs: Any) -> InstallationManager:
    return InstallationManager(
        context, _registry(), store, SchemaIntrospector([BUILTIN_SCHEMA_DIR]), **kwargs
    )


def test_successful_install(
    context: RunContext, store: SqliteStore, recorded_events: list
) -> None:
    _stage(context)

    result = _manager(context, store).execute(InstallOptions(run_schema_migration=True))

    assert result.status == "success"
    assert result.committed_steps == ("welcome", "environment", "account")
    assert result.migrations == ("0000_create_settings", "0001_create_users")
    assert "installation completed" in result.output

    settings_rows = {(r["namespace"], r["key"]): r["value"] for r in store.fetch_all("settings")}
    assert json.loads(settings_rows[("app", "app_name")]) == "Demo"
    assert [u["email"] for u in store.fetch_all("users")] == ["admin@demo.test"]

    assert context.staged.namespaces() == []
    assert context.state.finalized is True
    assert CompletionMarker(context.settings.marker_path).read()["completed_steps"] == [
        "welcome",
        "environment",
        "account",
    ]

    names = [e for e, _ in recorded_events]
    assert names[0] == ev.INSTALLATION_STARTED
    assert names[-1] == ev.INSTALLATION_COMPLETED
    assert recorded_events[0][1]["config"]["run_schema_migration"] is True
    assert recorded_events[-1][1]["completed_steps"] == ["welcome", "environment", "account"]


def test_migration_failure_preserves_staged_data(
    context: RunContext, settings: WizardSettings, recorded_events: list
) -> None:
    _stage(context)
    store = FlakyStore(settings.database_path, failures=1)

    result = _manager(context, store).execute(InstallOptions(run_schema_migration=True))

    assert result.status == "error"
    assert result.committed_steps == ()
    assert result.failed_phase == "migration"
    assert "database is locked" in result.output
    assert context.staged.get("app", "app_name") == "Demo"
    assert context.staged.get("account", "email") == "admin@demo.test"
    assert context.state.finalized is False
    assert not settings.marker_path.exists()
    assert recorded_events[-1][0] == ev.INSTALLATION_FAILED


def test_retry_after_fixed_fault_succeeds(context: RunContext, settings: WizardSettings) -> None:
    _stage(context)
    store = FlakyStore(settings.database_path, failures=1)
    manager = _manager(context, store)

    first = manager.execute(InstallOptions(run_schema_migration=True))
    second = manager.execute(InstallOptions(run_schema_migration=True))

    assert first.status == "error"
    assert second.status == "success"
    assert second.committed_steps == ("welcome", "environment", "account")
    assert store.migrate_calls == 2


def test_commit_failure_midway_keeps_staged_data(
    context: RunContext, store: SqliteStore
) -> None:
    _stage(context)

    def broken(staged: Mapping[str, Any], s: PermanentStore) -> None:
        raise StorageError("disk full")

    registry = StepRegistry()
    registry.register(StepDescriptor(id="environment", position=1, namespace="app"))
    registry.register(StepDescriptor(id="account", position=2, commit=broken))
    manager = InstallationManager(
        context, registry, store, SchemaIntrospector([BUILTIN_SCHEMA_DIR])
    )

    result = manager.execute()

    assert result.status == "error"
    assert result.failed_phase == "commit"
    assert result.committed_steps == ("environment",)
    assert context.staged.namespace("account")["email"] == "admin@demo.test"
    assert context.state.finalized is False


def test_retry_does_not_duplicate_rows(context: RunContext, settings: WizardSettings) -> None:
    _stage(context)
    calls = {"n": 0}

    def fail_once(staged: Mapping[str, Any], s: PermanentStore) -> None:
        calls["n"] += 1
        if calls["n"] == 1:
            raise StorageError("connection reset")

    registry = _registry()
    registry.register(StepDescriptor(id="finish", position=9, commit=fail_once))
    context.staged.put("finish", "done", True)
    store = SqliteStore(settings.database_path)
    manager = InstallationManager(
        context, registry, store, SchemaIntrospector([BUILTIN_SCHEMA_DIR])
    )

    assert manager.execute().status == "error"
    assert manager.execute().status == "success"
    assert len(store.fetch_all("users")) == 1
    assert len(store.fetch_all("settings")) == 2


def test_missing_schema_columns_fail_before_migration(
    context: RunContext, store: SqliteStore
) -> None:
    _stage(context)
    registry = StepRegistry()
    registry.register(
        StepDescriptor(
            id="account",
            position=1,
            commit=_save_users,
            schema_requirements={"users": ["email", "phone"]},
        )
    )
    manager = InstallationManager(
        context, registry, store, SchemaIntrospector([BUILTIN_SCHEMA_DIR])
    )

    result = manager.execute()

    assert result.status == "error"
    assert result.failed_phase == "schema"
    assert "phone" in result.message
    assert not store.table_exists("users")


def test_hidden_steps_are_not_committed(context: RunContext, store: SqliteStore) -> None:
    context.staged.put("optional", "flag", 1)
    registry = StepRegistry()
    registry.register(StepDescriptor(id="welcome", position=1))
    registry.register(StepDescriptor(id="optional", position=2, display_predicate=lambda s: False))
    manager = InstallationManager(
        context, registry, store, SchemaIntrospector([BUILTIN_SCHEMA_DIR])
    )

    result = manager.execute()

    assert result.committed_steps == ("welcome",)
    assert store.fetch_all("settings") == []


def test_second_install_refused(context: RunContext, store: SqliteStore) -> None:
    _stage(context)
    manager = _manager(context, store)
    assert manager.execute().ok

    with pytest.raises(StateError):
        manager.execute()


def test_unwritable_marker_fails_finalize_and_keeps_staged_data(
    settings: WizardSettings,
    store: SqliteStore,
    event_bus,
    recorded_events: list,
    tmp_path: Path,
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    blocked = dataclasses.replace(settings, marker_path=blocker / "installed.json")
    context = RunContext(MemorySession(), blocked, events=event_bus, run_id="run_m")
    _stage(context)

    result = _manager(context, store).execute()

    assert result.status == "error"
    assert result.failed_phase == "finalize"
    assert "completion marker" in result.message
    assert context.staged.get("app", "app_url") == "https://demo.test"
    assert context.state.finalized is False
    assert recorded_events[-1][0] == ev.INSTALLATION_FAILED
    assert recorded_events[-1][1]["phase"] == "finalize"

    blocker.unlink()
    assert _manager(context, store).execute().ok
    assert blocked.marker_path.exists()


def test_session_failure_in_finalize_removes_marker(
    settings: WizardSettings, store: SqliteStore, event_bus
) -> None:
    context = RunContext(BrokenFinalizeSession(), settings, events=event_bus, run_id="run_f")
    _stage(context)

    result = _manager(context, store).execute()

    assert result.failed_phase == "finalize"
    assert "read-only" in result.message
    assert not settings.marker_path.exists()
    assert context.state.finalized is False
    assert context.session.get("setupwizard/run_state")["finalized"] is False
    assert context.staged.namespace("account")["email"] == "admin@demo.test"


def test_marker_blocks_new_run(settings: WizardSettings, store: SqliteStore, event_bus) -> None:
    CompletionMarker(settings.marker_path).write("run_old", ["welcome"])
    context = RunContext(MemorySession(), settings, events=event_bus)

    with pytest.raises(StateError):
        _manager(context, store).execute()


def test_dev_override_allows_reinstall(settings: WizardSettings, event_bus) -> None:
    dev = dataclasses.replace(settings, dev_override=True)
    context = RunContext(MemorySession(), dev, events=event_bus)
    store = SqliteStore(dev.database_path)
    _stage(context)
    manager = _manager(context, store)
    assert manager.execute().ok

    _stage(context)
    again = manager.execute()

    assert again.ok
    assert len(store.fetch_all("users")) == 1


def test_resolver_cache_invalidated(
    context: RunContext, store: SqliteStore, tmp_path: Path
) -> None:
    user = tmp_path / "user.yaml"
    user.write_text("logging:\n  level: quiet\n")
    resolver = ConfigResolver(user_config_path=user, system_config_path=tmp_path / "sys.yaml")
    assert resolver.resolve("logging.level")[0] == "quiet"
    user.write_text("logging:\n  level: debug\n")

    _manager(context, store, resolver=resolver).execute()

    assert resolver.resolve("logging.level")[0] == "debug"


def test_reset_schema_drops_previous_data(context: RunContext, store: SqliteStore) -> None:
    store.migrate(SchemaIntrospector([BUILTIN_SCHEMA_DIR]).migrations())
    store.upsert(
        "settings", {"namespace": "old", "key": "k", "value": "1"}, keys=("namespace", "key")
    )
    _stage(context)

    result = _manager(context, store).execute(InstallOptions(reset_schema=True))

    assert result.ok
    assert all(r["namespace"] != "old" for r in store.fetch_all("settings"))


def test_seed_and_storage_link(settings: WizardSettings, event_bus, tmp_path: Path) -> None:
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        "seeds:\n"
        "  - table: settings\n"
        "    keys: [namespace, key]\n"
        "    rows:\n"
        "      - {namespace: mail, key: driver, value: smtp}\n"
    )
    target = tmp_path / "storage" / "public"
    target.mkdir(parents=True)
    link = tmp_path / "public" / "storage"
    configured = dataclasses.replace(
        settings, seed_path=seed, storage_link_target=target, storage_link_path=link
    )
    context = RunContext(MemorySession(), configured, events=event_bus)
    store = SqliteStore(configured.database_path)
    _stage(context)

    result = _manager(context, store).execute(
        InstallOptions(run_seed=True, create_storage_link=True)
    )

    assert result.ok
    assert ("mail", "driver") in {(r["namespace"], r["key"]) for r in store.fetch_all("settings")}
    assert link.is_symlink()
    assert Path(os.readlink(link)) == target


def test_bad_seed_file_is_an_error(settings: WizardSettings, event_bus, tmp_path: Path) -> None:
    seed = tmp_path / "seed.yaml"
    seed.write_text("rows: []\n")
    configured = dataclasses.replace(settings, seed_path=seed)
    context = RunContext(MemorySession(), configured, events=event_bus)
    _stage(context)

    result = _manager(context, SqliteStore(configured.database_path)).execute(
        InstallOptions(run_seed=True)
    )

    assert result.status == "error"
    assert result.failed_phase == "seed"
    assert context.staged.get("app", "app_name") == "Demo"


def test_rollback_reverts_latest_migration(
    context: RunContext, store: SqliteStore, recorded_events: list
) -> None:
    _stage(context)
    manager = _manager(context, store)
    manager.execute()

    assert manager.rollback() is True
    assert not store.table_exists("users")
    assert recorded_events[-1][0] == ev.INSTALLATION_ROLLED_BACK
    assert manager.rollback() is False


def test_rollback_leaves_staged_data(context: RunContext, store: SqliteStore) -> None:
    _stage(context)
    store.migrate(SchemaIntrospector([BUILTIN_SCHEMA_DIR]).migrations())

    assert _manager(context, store).rollback() is True
    assert context.staged.get("app", "app_name") == "Demo"


def test_generate_secret_rotates_app_key(context: RunContext, store: SqliteStore) -> None:
    env_path = context.settings.env_path
    env_path.write_text("APP_NAME=Demo\nAPP_KEY=old\n")
    manager = _manager(context, store)

    first = manager.generate_secret()
    second = manager.generate_secret()

    assert first.startswith("base64:")
    assert first != second
    lines = env_path.read_text().splitlines()
    assert lines == ["APP_NAME=Demo", f"APP_KEY={second}"]


def test_generate_secret_creates_env_file(context: RunContext, store: SqliteStore) -> None:
    key = _manager(context, store).generate_secret()
    assert context.settings.env_path.read_text() == f"APP_KEY={key}\n"
