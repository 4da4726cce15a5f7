"""Field validation rules.

Rules are parsed once from pipe strings (``"required|email|unique:users,email"``)
or lists into small tagged values. Rules that need the permanent store
(``unique``, ``exists``) are removed by the pure filter ``strip_store_rules``
before evaluation, because the store may not exist while the wizard runs.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar
from urllib.parse import urlparse

from setupwizard.core.errors import ConfigurationError
from setupwizard.core.staging import lookup_path

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_INT_RE = re.compile(r"^[+-]?\d+$")

_TYPE_NAMES = frozenset({"string", "integer", "numeric", "boolean", "array"})
_BOOL_VALUES = {True, False, 0, 1, "0", "1", "true", "false"}


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list | tuple | dict):
        return len(value) == 0
    return False


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


class Rule:
    """Base rule. ``check`` returns an error message or None."""

    store_dependent: ClassVar[bool] = False
    implicit: ClassVar[bool] = False  # evaluated even when the value is empty

    def check(self, field: str, value: Any, data: Mapping[str, Any], numeric: bool) -> str | None:
        raise NotImplementedError


@dataclass(frozen=True)
class Required(Rule):
    implicit: ClassVar[bool] = True

    def check(self, field, value, data, numeric):
        return f"The {field} field is required." if is_empty(value) else None

    def __str__(self) -> str:
        return "required"


@dataclass(frozen=True)
class Nullable(Rule):
    def check(self, field, value, data, numeric):
        return None

    def __str__(self) -> str:
        return "nullable"


@dataclass(frozen=True)
class TypeRule(Rule):
    type_name: str

    def check(self, field, value, data, numeric):
        t = self.type_name
        if t == "string":
            ok = isinstance(value, str)
        elif t == "integer":
            ok = (isinstance(value, int) and not isinstance(value, bool)) or (
                isinstance(value, str) and bool(_INT_RE.match(value))
            )
        elif t == "numeric":
            ok = _is_number(value)
        elif t == "boolean":
            ok = isinstance(value, bool | int | str) and value in _BOOL_VALUES
        else:
            ok = isinstance(value, list | dict)
        return None if ok else f"The {field} field must be of type {t}."

    def __str__(self) -> str:
        return self.type_name


@dataclass(frozen=True)
class Email(Rule):
    def check(self, field, value, data, numeric):
        if isinstance(value, str) and _EMAIL_RE.match(value):
            return None
        return f"The {field} field must be a valid email address."

    def __str__(self) -> str:
        return "email"


@dataclass(frozen=True)
class Url(Rule):
    def check(self, field, value, data, numeric):
        if isinstance(value, str):
            parsed = urlparse(value)
            if parsed.scheme in {"http", "https"} and parsed.netloc:
                return None
        return f"The {field} field must be a valid URL."

    def __str__(self) -> str:
        return "url"


def _measure(value: Any, numeric: bool) -> tuple[float, str]:
    if numeric and _is_number(value):
        return float(value), ""
    if isinstance(value, list | tuple | dict):
        return float(len(value)), " items"
    return float(len(str(value))), " characters"


@dataclass(frozen=True)
class MinLength(Rule):
    size: int

    def check(self, field, value, data, numeric):
        measured, unit = _measure(value, numeric)
        if measured >= self.size:
            return None
        return f"The {field} field must be at least {self.size}{unit}."

    def __str__(self) -> str:
        return f"min:{self.size}"


@dataclass(frozen=True)
class MaxLength(Rule):
    size: int

    def check(self, field, value, data, numeric):
        measured, unit = _measure(value, numeric)
        if measured <= self.size:
            return None
        return f"The {field} field must not be greater than {self.size}{unit}."

    def __str__(self) -> str:
        return f"max:{self.size}"


@dataclass(frozen=True)
class Regex(Rule):
    pattern: str

    def check(self, field, value, data, numeric):
        if isinstance(value, str | int | float) and re.search(self.pattern, str(value)):
            return None
        return f"The {field} field format is invalid."

    def __str__(self) -> str:
        return f"regex:{self.pattern}"


@dataclass(frozen=True)
class In(Rule):
    values: tuple[str, ...]

    def check(self, field, value, data, numeric):
        if str(value) in self.values:
            return None
        return f"The selected {field} is invalid."

    def __str__(self) -> str:
        return "in:" + ",".join(self.values)


@dataclass(frozen=True)
class Confirmed(Rule):
    def check(self, field, value, data, numeric):
        if lookup_path(data, f"{field}_confirmation") == value:
            return None
        return f"The {field} field confirmation does not match."

    def __str__(self) -> str:
        return "confirmed"


@dataclass(frozen=True)
class UniqueInStore(Rule):
    """Value must not already exist in ``table.column`` of the permanent store."""

    store_dependent: ClassVar[bool] = True
    table: str
    column: str

    def check(self, field, value, data, numeric):
        raise ConfigurationError(f"Rule '{self}' needs the permanent store and cannot run offline")

    def __str__(self) -> str:
        return f"unique:{self.table},{self.column}"


@dataclass(frozen=True)
class ExistsInStore(Rule):
    """Value must already exist in ``table.column`` of the permanent store."""

    store_dependent: ClassVar[bool] = True
    table: str
    column: str

    def check(self, field, value, data, numeric):
        raise ConfigurationError(f"Rule '{self}' needs the permanent store and cannot run offline")

    def __str__(self) -> str:
        return f"exists:{self.table},{self.column}"


def _parse_one(field: str, text: str) -> Rule:
    name, _sep, arg = text.strip().partition(":")
    name = name.strip().lower()

    if name == "required":
        return Required()
    if name == "nullable":
        return Nullable()
    if name in _TYPE_NAMES:
        return TypeRule(name)
    if name == "email":
        return Email()
    if name == "url":
        return Url()
    if name in {"min", "max"}:
        if not _INT_RE.match(arg.strip()):
            raise ConfigurationError(f"Rule '{text}' on field '{field}' needs an integer argument")
        return MinLength(int(arg)) if name == "min" else MaxLength(int(arg))
    if name == "regex":
        try:
            re.compile(arg)
        except re.error as e:
            raise ConfigurationError(f"Invalid regex for field '{field}': {e}") from e
        return Regex(arg)
    if name == "in":
        return In(tuple(v.strip() for v in arg.split(",") if v.strip()))
    if name == "confirmed":
        return Confirmed()
    if name in {"unique", "exists"}:
        parts = [p.strip() for p in arg.split(",") if p.strip()]
        if not parts:
            raise ConfigurationError(f"Rule '{name}' on field '{field}' needs a table")
        table = parts[0]
        column = parts[1] if len(parts) > 1 else field.rsplit(".", 1)[-1]
        return UniqueInStore(table, column) if name == "unique" else ExistsInStore(table, column)

    raise ConfigurationError(f"Unknown validation rule '{name}' on field '{field}'")


def parse_rules(field: str, spec: str | Sequence[str | Rule]) -> list[Rule]:
    """Parse a pipe string or a list of rule strings/Rule values.

    Use the list form for ``regex`` patterns that contain ``|``.
    """
    if isinstance(spec, str):
        parts: list[str | Rule] = [p for p in spec.split("|") if p.strip()]
    else:
        parts = list(spec)
    return [p if isinstance(p, Rule) else _parse_one(field, p) for p in parts]


def strip_store_rules(rules: Sequence[Rule]) -> tuple[list[Rule], list[Rule]]:
    """Split rules into (kept, skipped) where skipped need the permanent store."""
    kept = [r for r in rules if not r.store_dependent]
    skipped = [r for r in rules if r.store_dependent]
    return kept, skipped


def rules_to_string(rules: Sequence[Rule]) -> str:
    return "|".join(str(r) for r in rules)


def is_numeric_field(rules: Sequence[Rule]) -> bool:
    return any(isinstance(r, TypeRule) and r.type_name in {"integer", "numeric"} for r in rules)


def evaluate(field: str, rules: Sequence[Rule], data: Mapping[str, Any]) -> list[str]:
    """Evaluate offline-safe ``rules`` for ``field`` and return all messages."""
    value = lookup_path(data, field)
    numeric = is_numeric_field(rules)
    empty = is_empty(value)
    errors: list[str] = []
    for rule in rules:
        if empty and not rule.implicit:
            continue
        msg = rule.check(field, value, data, numeric)
        if msg:
            errors.append(msg)
    return errors
