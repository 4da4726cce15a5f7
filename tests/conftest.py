"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add src to path (for 'setupwizard.*' imports without an install)
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "src"))

from setupwizard.core.config import BUILTIN_SCHEMA_DIR, WizardSettings  # noqa: E402
from setupwizard.core.context import RunContext  # noqa: E402
from setupwizard.core.events import EventBus  # noqa: E402
from setupwizard.core.logging import VerbosityLevel, set_verbosity  # noqa: E402
from setupwizard.core.schema import SchemaIntrospector  # noqa: E402
from setupwizard.core.session import MemorySession  # noqa: E402
from setupwizard.core.storage import SqliteStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_verbosity():
    """Keep verbosity changes made by one test from leaking into the next."""
    set_verbosity(VerbosityLevel.NORMAL)
    yield
    set_verbosity(VerbosityLevel.NORMAL)


@pytest.fixture
def settings(tmp_path: Path) -> WizardSettings:
    """Settings rooted in a temporary directory.

    Args:
        tmp_path: pytest temporary directory

    Returns:
        WizardSettings instance
    """
    return WizardSettings(
        app_root=tmp_path,
        requirements_capabilities={"yaml": "yaml"},
        schema_paths=(BUILTIN_SCHEMA_DIR,),
        database_path=tmp_path / "storage" / "app.sqlite",
        session_dir=tmp_path / "storage" / "sessions",
        marker_path=tmp_path / "storage" / "installed.json",
        env_path=tmp_path / ".env",
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[tuple[str, dict]]:
    """Every event published on ``event_bus``, in order."""
    seen: list[tuple[str, dict]] = []
    event_bus.subscribe_all(lambda event, data: seen.append((event, data)))
    return seen


@pytest.fixture
def context(settings: WizardSettings, event_bus: EventBus) -> RunContext:
    return RunContext(MemorySession(), settings, events=event_bus, run_id="run_test")


@pytest.fixture
def store(settings: WizardSettings) -> SqliteStore:
    return SqliteStore(settings.database_path)


@pytest.fixture
def introspector() -> SchemaIntrospector:
    return SchemaIntrospector([BUILTIN_SCHEMA_DIR])
