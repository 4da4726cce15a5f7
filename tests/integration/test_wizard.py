"""End-to-end runs of the built-in steps through the Wizard facade."""

from __future__ import annotations

import dataclasses
from typing import Any

import pytest

from setupwizard.core import events as ev
from setupwizard.core.config import WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.errors import ExternalCallError, StateError
from setupwizard.core.events import EventBus
from setupwizard.core.installer import InstallOptions
from setupwizard.core.schema import SchemaIntrospector
from setupwizard.core.session import MemorySession
from setupwizard.core.steps import StepRegistry
from setupwizard.core.storage import SqliteStore
from setupwizard.core.wizard import Wizard
from setupwizard.plugins import account, register_builtin_steps

ANSWERS: dict[str, dict[str, Any]] = {
    "welcome": {"locale": "de"},
    "requirements": {},
    "environment": {"app_name": "Demo", "app_url": "https://demo.test/", "app_env": "local"},
    "account": {
        "name": "Admin",
        "email": "Admin@Demo.test",
        "password": "s3cret-pass",
        "password_confirmation": "s3cret-pass",
    },
}


def _wizard(settings: WizardSettings, event_bus: EventBus) -> Wizard:
    registry = register_builtin_steps(StepRegistry(), settings)
    context = RunContext(MemorySession(), settings, events=event_bus, run_id="run_e2e")
    return Wizard(
        registry,
        context,
        SqliteStore(settings.database_path),
        SchemaIntrospector(settings.schema_paths),
    )


def _submit_all(wizard: Wizard, answers: dict[str, dict[str, Any]]) -> list[str]:
    submitted = []
    while (step := wizard.next_step()) is not None:
        result = wizard.submit(step.id, answers.get(step.id, {}))
        assert result.passed, result.errors
        submitted.append(step.id)
    return submitted


def test_full_run_installs_admin(settings: WizardSettings, event_bus: EventBus) -> None:
    wizard = _wizard(settings, event_bus)
    assert [d.id for d in wizard.enter()] == ["welcome", "requirements", "environment", "account"]

    assert _submit_all(wizard, ANSWERS) == ["welcome", "requirements", "environment", "account"]
    result = wizard.install(InstallOptions())

    assert result.ok, result.output
    assert result.committed_steps == ("welcome", "requirements", "environment", "account")
    store = SqliteStore(settings.database_path)
    users = store.fetch_all("users")
    assert len(users) == 1
    assert users[0]["email"] == "admin@demo.test"
    assert users[0]["is_admin"] == 1
    assert account.verify_password("s3cret-pass", users[0]["password"])
    settings_rows = {(r["namespace"], r["key"]) for r in store.fetch_all("settings")}
    assert ("app", "app_url") in settings_rows
    assert ("welcome", "locale") in settings_rows
    assert not any(ns == "account" for ns, _ in settings_rows)


def test_plain_password_never_staged(settings: WizardSettings, event_bus: EventBus) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()
    _submit_all(wizard, ANSWERS)

    staged = wizard.context.staged.namespace("account")
    assert "password" not in staged
    assert staged["password_hash"].startswith("pbkdf2_sha256$")


def test_step_events_redact_credentials(
    settings: WizardSettings, event_bus: EventBus, recorded_events: list
) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()
    _submit_all(wizard, ANSWERS)

    completed = [d for e, d in recorded_events if e == ev.STEP_COMPLETED]
    account_event = next(d for d in completed if d["step_id"] == "account")
    assert account_event["data"]["password_hash"] == "***"
    assert account_event["data"]["email"] == "admin@demo.test"


def test_account_hidden_when_admin_not_requested(
    settings: WizardSettings, event_bus: EventBus
) -> None:
    answers = dict(ANSWERS)
    answers["environment"] = {**ANSWERS["environment"], "create_admin": False}
    wizard = _wizard(settings, event_bus)
    wizard.enter()

    assert _submit_all(wizard, answers) == ["welcome", "requirements", "environment"]
    assert "account" not in [d.id for d in wizard.sequence()]
    with pytest.raises(StateError):
        wizard.submit("account", ANSWERS["account"])

    result = wizard.install()
    assert result.ok
    assert "account" not in result.committed_steps
    assert SqliteStore(settings.database_path).fetch_all("users") == []


def test_account_requires_environment(settings: WizardSettings, event_bus: EventBus) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()

    result = wizard.submit("account", ANSWERS["account"])

    assert not result.passed
    assert "environment" in " ".join(result.errors["account"])
    assert "account" not in wizard.context.state.completed_steps


def test_invalid_input_can_be_corrected(settings: WizardSettings, event_bus: EventBus) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()

    bad = wizard.submit("environment", {"app_name": "", "app_url": "not a url"})
    assert set(bad.errors) == {"app_name", "app_url"}
    assert wizard.context.staged.namespace("app") == {}

    good = wizard.submit("environment", ANSWERS["environment"])
    assert good.passed
    assert wizard.context.staged.get("app", "app_url") == "https://demo.test"


def test_install_refused_with_pending_steps(
    settings: WizardSettings, event_bus: EventBus
) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()
    wizard.submit("welcome", ANSWERS["welcome"])

    with pytest.raises(StateError, match="requirements"):
        wizard.install()


def test_run_resumes_from_file_session(settings: WizardSettings, event_bus: EventBus) -> None:
    registry = register_builtin_steps(StepRegistry(), settings)
    first = Wizard(
        registry,
        RunContext.open(settings, "run_resume", events=event_bus),
        SqliteStore(settings.database_path),
        SchemaIntrospector(settings.schema_paths),
    )
    first.enter()
    first.submit("welcome", ANSWERS["welcome"])
    first.submit("requirements", {})

    second = Wizard(
        registry,
        RunContext.open(settings, "run_resume", events=event_bus),
        SqliteStore(settings.database_path),
        SchemaIntrospector(settings.schema_paths),
    )

    assert second.next_step().id == "environment"
    assert second.mount("welcome") == {"locale": "de"}


def test_finalized_deployment_blocks_reentry(
    settings: WizardSettings, event_bus: EventBus
) -> None:
    wizard = _wizard(settings, event_bus)
    wizard.enter()
    _submit_all(wizard, ANSWERS)
    assert wizard.install().ok

    with pytest.raises(StateError):
        wizard.enter()
    with pytest.raises(StateError):
        wizard.reset()
    with pytest.raises(StateError):
        _wizard(settings, EventBus()).enter()


def test_dev_override_reset_removes_marker(
    settings: WizardSettings, event_bus: EventBus
) -> None:
    dev = dataclasses.replace(settings, dev_override=True)
    wizard = _wizard(dev, event_bus)
    wizard.enter()
    _submit_all(wizard, ANSWERS)
    assert wizard.install().ok
    assert dev.marker_path.exists()

    wizard.reset()

    assert not dev.marker_path.exists()
    assert wizard.context.state.finalized is False
    assert wizard.next_step().id == "welcome"


def test_license_verified_remotely(
    settings: WizardSettings, event_bus: EventBus, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[tuple[str, dict, float]] = []

    def fake_call(url: str, payload: dict, *, timeout: float) -> dict:
        calls.append((url, payload, timeout))
        return {"valid": True, "licensee": "Demo Ltd", "expires_at": "2030-01-01"}

    monkeypatch.setattr("setupwizard.plugins.account.call_endpoint", fake_call)
    licensed = dataclasses.replace(
        settings, license_verify_url="https://license.test/verify", external_timeout=3.0
    )
    wizard = _wizard(licensed, event_bus)
    wizard.enter()

    answers = dict(ANSWERS)
    answers["account"] = {**ANSWERS["account"], "license_key": "ABC-123"}
    _submit_all(wizard, answers)

    assert calls == [
        (
            "https://license.test/verify",
            {"license_key": "ABC-123", "email": "admin@demo.test"},
            3.0,
        )
    ]
    assert wizard.context.staged.get("account", "license.licensee") == "Demo Ltd"


def _licensed_wizard(settings: WizardSettings, event_bus: EventBus) -> Wizard:
    licensed = dataclasses.replace(settings, license_verify_url="https://license.test/verify")
    wizard = _wizard(licensed, event_bus)
    wizard.enter()
    for step_id in ("welcome", "requirements", "environment"):
        assert wizard.submit(step_id, ANSWERS[step_id]).passed
    return wizard


def test_license_key_required_when_verification_configured(
    settings: WizardSettings, event_bus: EventBus
) -> None:
    wizard = _licensed_wizard(settings, event_bus)

    result = wizard.submit("account", ANSWERS["account"])

    assert "license_key" in result.errors
    assert wizard.next_step().id == "account"


def test_rejected_license_is_a_field_error(
    settings: WizardSettings, event_bus: EventBus, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "setupwizard.plugins.account.call_endpoint",
        lambda url, payload, *, timeout: {"valid": False, "message": "Key expired"},
    )
    wizard = _licensed_wizard(settings, event_bus)

    result = wizard.submit("account", {**ANSWERS["account"], "license_key": "OLD-1"})

    assert result.errors == {"license_key": ["Key expired"]}
    assert wizard.context.staged.namespace("account") == {}


def test_unreachable_license_server_fails_step(
    settings: WizardSettings,
    event_bus: EventBus,
    recorded_events: list,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unreachable(url: str, payload: dict, *, timeout: float) -> dict:
        raise ExternalCallError(f"Request to {url} timed out after {timeout}s")

    monkeypatch.setattr("setupwizard.plugins.account.call_endpoint", unreachable)
    wizard = _licensed_wizard(settings, event_bus)

    result = wizard.submit("account", {**ANSWERS["account"], "license_key": "ABC-123"})

    assert not result.passed
    assert isinstance(result.failure, ExternalCallError)
    assert "timed out" in result.errors["account"][0]
    failed = [d for e, d in recorded_events if e == ev.STEP_FAILED]
    assert failed[-1]["step_id"] == "account"
    assert failed[-1]["data"]["password"] == "***"

    monkeypatch.setattr(
        "setupwizard.plugins.account.call_endpoint",
        lambda url, payload, *, timeout: {"valid": True},
    )
    retry = wizard.submit("account", {**ANSWERS["account"], "license_key": "ABC-123"})
    assert retry.passed
