"""Tests for StepValidator."""

from __future__ import annotations

import itertools

import pytest

from setupwizard.core.errors import ConfigurationError, DependencyUnmetError, ValidationError
from setupwizard.core.steps import StepDescriptor, StepRegistry
from setupwizard.core.validator import StepValidator, ValidationResult

ALL_IDS = ("a", "b", "c")


def _subsets(items: tuple[str, ...]) -> list[frozenset[str]]:
    return [
        frozenset(combo)
        for n in range(len(items) + 1)
        for combo in itertools.combinations(items, n)
    ]


@pytest.mark.parametrize("depends_on", _subsets(ALL_IDS))
@pytest.mark.parametrize("completed", _subsets(ALL_IDS + ("x",)))
def test_dependency_law(depends_on: frozenset[str], completed: frozenset[str]) -> None:
    descriptor = StepDescriptor(id="target", position=99, depends_on=depends_on)
    result = ValidationResult(step_id="target")

    ok = StepValidator().validate_dependencies(descriptor, completed, result)

    assert ok is depends_on.issubset(completed)
    assert result.passed is ok
    if not ok:
        assert list(result.errors) == ["target"]
        assert isinstance(result.failure, DependencyUnmetError)
        assert result.failure.missing == sorted(depends_on - completed)


def test_validate_fields_records_skipped_rules() -> None:
    descriptor = StepDescriptor(
        id="account",
        position=1,
        rules={"email": "required|email|unique:users,email", "name": "required"},
    )
    validator = StepValidator()

    bad = validator.validate_fields(descriptor, {"email": "not-an-email", "name": "A"})
    good = validator.validate_fields(descriptor, {"email": "a@b.com", "name": "A"})

    assert bad.errors == {"email": ["The email field must be a valid email address."]}
    assert isinstance(bad.failure, ValidationError)
    assert good.passed
    assert good.skipped_rules == {"email": ["unique:users,email"]}


def test_unmet_dependency_classifies_failure() -> None:
    descriptor = StepDescriptor(
        id="account", position=2, depends_on={"license"}, rules={"name": "required"}
    )

    result = StepValidator().validate(descriptor, {}, completed_step_ids=[])

    assert result.errors["name"] == ["The name field is required."]
    assert "account" in result.errors
    assert isinstance(result.failure, DependencyUnmetError)


def test_validate_steps_collects_all_field_errors() -> None:
    first = StepDescriptor(id="first", position=1, rules={"a": "required"})
    second = StepDescriptor(id="second", position=2, rules={"b": "required|integer"})

    batch = StepValidator().validate_steps([(first, {}), (second, {"b": "x"})])

    assert batch.passed is False
    assert batch.errors() == {
        "first": {"a": ["The a field is required."]},
        "second": {"b": ["The b field must be of type integer."]},
    }


def test_validate_steps_counts_passed_steps_as_completed() -> None:
    license_step = StepDescriptor(id="license", position=1, rules={"key": "required"})
    account = StepDescriptor(id="account", position=2, depends_on={"license"})

    passing = StepValidator().validate_steps([(license_step, {"key": "K"}), (account, {})])
    failing = StepValidator().validate_steps([(license_step, {}), (account, {})])

    assert passing.passed is True
    assert failing.passed is False
    assert isinstance(failing.results["account"].failure, DependencyUnmetError)


def test_validate_steps_stops_at_structural_error() -> None:
    registry = StepRegistry()
    first = registry.register(StepDescriptor(id="first", position=1, rules={"a": "required"}))
    orphan = StepDescriptor(id="orphan", position=2, depends_on={"ghost"})
    last = StepDescriptor(id="last", position=3, rules={"c": "required"})

    batch = StepValidator(registry).validate_steps([(first, {}), (orphan, {}), (last, {})])

    assert batch.passed is False
    assert isinstance(batch.structural_error, ConfigurationError)
    assert list(batch.results) == ["first"]
