"""Environment requirement checks (runtime version, capabilities, permissions)."""

from __future__ import annotations

import importlib.util
import os
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.errors import ConfigError
from setupwizard.core.logging import get_logger

_LOGGER = get_logger(__name__)

_VERSION_RE = re.compile(r"^\s*(>=|<=|==|>|<)?\s*(\d+(?:\.\d+){0,2})\s*$")

_ACCESS_FLAGS = {"r": os.R_OK, "w": os.W_OK, "x": os.X_OK}


@dataclass(frozen=True)
class RequirementResult:
    kind: str  # runtime | capability | permission
    name: str
    required: str
    actual: str
    ok: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "required": self.required,
            "actual": self.actual,
            "ok": self.ok,
        }


@dataclass
class RequirementReport:
    results: list[RequirementResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    def failures(self) -> list[RequirementResult]:
        return [r for r in self.results if not r.ok]

    def errors(self) -> dict[str, list[str]]:
        """Failures in ValidationResult shape (``<kind>.<name>`` -> messages)."""
        out: dict[str, list[str]] = {}
        for r in self.failures():
            out.setdefault(f"{r.kind}.{r.name}", []).append(
                f"{r.name}: requires {r.required}, found {r.actual}"
            )
        return out

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "results": [r.to_dict() for r in self.results]}


def _parse_version(text: str) -> tuple[int, ...]:
    return tuple(int(p) for p in text.split("."))


def _compare(actual: tuple[int, ...], op: str, required: tuple[int, ...]) -> bool:
    width = len(required)
    a = actual[:width]
    if op == ">=":
        return a >= required
    if op == ">":
        return a > required
    if op == "<=":
        return a <= required
    if op == "<":
        return a < required
    return a == required


class RequirementChecker:
    """Evaluate environment facts against declared requirements.

    Args:
        runtime: Version constraint such as ``>=3.11`` (bare versions mean >=)
        capabilities: capability name -> importable module name
        permissions: path -> permission string; octal (``775``) compares
            mode bits, letters (``rw``) use access checks
        base_dir: Directory relative permission paths are resolved against
    """

    def __init__(
        self,
        runtime: str | None = None,
        capabilities: Mapping[str, str] | None = None,
        permissions: Mapping[str, str] | None = None,
        *,
        base_dir: Path | None = None,
        version_info: tuple[int, ...] | None = None,
    ) -> None:
        self.runtime = runtime
        self.capabilities = dict(capabilities or {})
        self.permissions = dict(permissions or {})
        self.base_dir = base_dir or Path.cwd()
        self._version = tuple(version_info or sys.version_info[:3])

    @classmethod
    def from_settings(cls, settings: WizardSettings) -> RequirementChecker:
        return cls(
            runtime=settings.requirements_runtime,
            capabilities=settings.requirements_capabilities,
            permissions=settings.requirements_permissions,
            base_dir=settings.app_root,
        )

    def check_runtime(self) -> RequirementResult | None:
        if not self.runtime:
            return None
        m = _VERSION_RE.match(self.runtime)
        if m is None:
            raise ConfigError(f"Invalid runtime requirement: {self.runtime!r}")
        op = m.group(1) or ">="
        required = _parse_version(m.group(2))
        actual = ".".join(str(p) for p in self._version)
        return RequirementResult(
            kind="runtime",
            name="python",
            required=f"{op}{m.group(2)}",
            actual=actual,
            ok=_compare(self._version, op, required),
        )

    def check_capability(self, name: str, module: str) -> RequirementResult:
        try:
            found = importlib.util.find_spec(module) is not None
        except (ImportError, ValueError):
            found = False
        return RequirementResult(
            kind="capability",
            name=name,
            required=module,
            actual="available" if found else "missing",
            ok=found,
        )

    def check_permission(self, raw_path: str, required: str) -> RequirementResult:
        path = Path(raw_path)
        if not path.is_absolute():
            path = self.base_dir / path
        if not path.exists():
            return RequirementResult("permission", raw_path, required, "missing", False)

        req = required.strip()
        if req.isdigit():
            need = int(req, 8)
            mode = path.stat().st_mode & 0o7777
            return RequirementResult(
                "permission", raw_path, req, format(mode, "o"), (mode & need) == need
            )

        letters = req.lower()
        unknown = set(letters) - set(_ACCESS_FLAGS)
        if not letters or unknown:
            raise ConfigError(f"Invalid permission string for {raw_path}: {required!r}")
        granted = "".join(ch for ch in "rwx" if os.access(path, _ACCESS_FLAGS[ch]))
        ok = all(os.access(path, _ACCESS_FLAGS[ch]) for ch in letters)
        return RequirementResult("permission", raw_path, letters, granted or "-", ok)

    def check(self) -> RequirementReport:
        """Run every configured check."""
        report = RequirementReport()
        runtime = self.check_runtime()
        if runtime is not None:
            report.results.append(runtime)
        for name, module in self.capabilities.items():
            report.results.append(self.check_capability(name, module))
        for path, perm in self.permissions.items():
            report.results.append(self.check_permission(path, perm))

        for r in report.failures():
            _LOGGER.warning(f"requirement not met: {r.kind} {r.name} ({r.required}, {r.actual})")
        _LOGGER.verbose(f"requirements checked: {len(report.results)} ok={report.ok}")
        return report
