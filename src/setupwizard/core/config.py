"""Configuration resolver with layered priority.

Priority (highest to lowest):
1. CLI arguments
2. Environment variables (SETUPWIZARD_*)
3. Config files (user > system)
4. Defaults

The resolver is consulted exactly once per process: ``WizardSettings`` is the
typed, read-only snapshot that every component receives explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from setupwizard.core.errors import ConfigError

ALLOWED_LOGGING_LEVELS = frozenset({"quiet", "normal", "verbose", "debug"})
DEFAULT_LOGGING_LEVEL = "normal"

ENV_PREFIX = "SETUPWIZARD_"

BUILTIN_SCHEMA_DIR = Path(__file__).resolve().parent.parent / "schema"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ConfigSource:
    """Represents where a config value came from."""

    value: Any
    source: str  # 'cli' | 'env' | 'user_config' | 'system_config' | 'default'


@dataclass(frozen=True)
class LoggingPolicy:
    """Resolved, immutable logging policy."""

    level_name: str  # quiet | normal | verbose | debug
    emit_info: bool
    emit_debug: bool
    source: str


class ConfigResolver:
    """Resolve configuration with strict priority.

    Example:
        resolver = ConfigResolver(
            cli_args={'install': {'dev_override': True}},
            user_config_path=Path('setupwizard.yaml'),
        )

        value, source = resolver.resolve('install.dev_override')
        # value = True, source = 'cli'
    """

    def __init__(
        self,
        cli_args: dict[str, Any] | None = None,
        user_config_path: Path | None = None,
        system_config_path: Path | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        """Initialize config resolver.

        Args:
            cli_args: Arguments from CLI (highest priority, nested dicts)
            user_config_path: Path to user config file
            system_config_path: Path to system config file
            defaults: Default values (lowest priority)
        """
        self.cli_args = cli_args or {}
        self.user_config_path = user_config_path or Path.cwd() / "setupwizard.yaml"
        self.system_config_path = system_config_path or Path("/etc/setupwizard/config.yaml")
        self.defaults = defaults if defaults is not None else self._default_config()

        # Cache loaded configs
        self._user_config: dict[str, Any] | None = None
        self._system_config: dict[str, Any] | None = None

    def resolve(self, key: str) -> tuple[Any, str]:
        """Resolve config value with priority.

        Args:
            key: Config key (supports dot notation: 'logging.level')

        Returns:
            (value, source) tuple

        Raises:
            ConfigError: If key not found in any source
        """
        value = self._get_nested(self.cli_args, key)
        if value is not None:
            return value, "cli"

        value = self._from_env(key)
        if value is not None:
            return value, "env"

        value = self._get_nested(self._get_user_config(), key)
        if value is not None:
            return value, "user_config"

        value = self._get_nested(self._get_system_config(), key)
        if value is not None:
            return value, "system_config"

        value = self._get_nested(self.defaults, key)
        if value is not None:
            return value, "default"

        raise ConfigError(f"Config key '{key}' not found in any source")

    def try_resolve(self, key: str, default: Any = None) -> tuple[Any, str]:
        """Resolve a key, falling back to ``default`` when no source provides it."""
        try:
            return self.resolve(key)
        except ConfigError as e:
            if "not found in any source" in str(e):
                return default, "default"
            raise

    def invalidate(self) -> None:
        """Drop cached config file contents so the next resolve re-reads them."""
        self._user_config = None
        self._system_config = None

    def resolve_logging_policy(self) -> LoggingPolicy:
        """Resolve and validate logging.level into a policy."""
        value, source = self.try_resolve("logging.level", DEFAULT_LOGGING_LEVEL)
        if not isinstance(value, str):
            raise ConfigError(
                f"Config key 'logging.level' must be a string, got {type(value).__name__}"
            )

        norm = value.strip().lower()
        if norm not in ALLOWED_LOGGING_LEVELS:
            allowed = ", ".join(sorted(ALLOWED_LOGGING_LEVELS))
            raise ConfigError(f"Invalid 'logging.level': {value!r}. Allowed values: {allowed}")

        return LoggingPolicy(
            level_name=norm,
            emit_info=norm != "quiet",
            emit_debug=norm in {"verbose", "debug"},
            source=source,
        )

    def _from_env(self, key: str) -> Any | None:
        """Get value from environment variables.

        Environment variable format: SETUPWIZARD_KEY_NAME
        Example: SETUPWIZARD_INSTALL_DEV_OVERRIDE, SETUPWIZARD_LOGGING_LEVEL
        """
        env_key = f"{ENV_PREFIX}{key.upper().replace('.', '_')}"
        return os.environ.get(env_key)

    def _get_user_config(self) -> dict[str, Any]:
        if self._user_config is None:
            self._user_config = self._load_yaml(self.user_config_path)
        return self._user_config

    def _get_system_config(self) -> dict[str, Any]:
        if self._system_config is None:
            self._system_config = self._load_yaml(self.system_config_path)
        return self._system_config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
                return data if isinstance(data, dict) else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

    def _get_nested(self, data: dict[str, Any], key: str) -> Any | None:
        """Get nested value using dot notation.

        Example:
            data = {'logging': {'level': 'debug'}}
            _get_nested(data, 'logging.level') -> 'debug'
        """
        current: Any = data

        for part in key.split("."):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None

        return current

    @staticmethod
    def _default_config() -> dict[str, Any]:
        """Default configuration."""
        return {
            "app_root": ".",
            # Ordered list of enabled step ids (empty: every registered step)
            "steps": [],
            "requirements": {
                "runtime": ">=3.11",
                "capabilities": {
                    "yaml": "yaml",
                    "sqlite": "sqlite3",
                    "http": "requests",
                },
                "permissions": {},
            },
            "schema": {
                "paths": [str(BUILTIN_SCHEMA_DIR)],
            },
            "database": {
                "path": "storage/app.sqlite",
            },
            "session": {
                "dir": "storage/setupwizard/sessions",
                "prefix": "setupwizard",
            },
            "install": {
                "marker_path": "storage/installed.json",
                "env_path": ".env",
                "dev_override": False,
                "seed_path": None,
                "storage_link": {
                    "target": None,
                    "path": None,
                },
            },
            "external": {
                "timeout": 10.0,
            },
            "license": {
                "verify_url": None,
            },
            "logging": {
                "level": DEFAULT_LOGGING_LEVEL,
            },
            "diagnostics": {
                "enabled": False,
            },
        }


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE_VALUES:
        return True
    if s in _FALSE_VALUES:
        return False
    raise ConfigError(f"Config key '{key}' must be a bool, got {value!r}")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Config key '{key}' must be a number")
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Config key '{key}' must be a number, got {value!r}") from e
    if out <= 0:
        raise ConfigError(f"Config key '{key}' must be positive")
    return out


def _coerce_structured(key: str, value: Any, kind: type) -> Any:
    # Environment values arrive as strings; accept YAML flow syntax for them.
    if isinstance(value, str):
        if kind is list and not value.strip().startswith("["):
            return [p.strip() for p in value.split(",") if p.strip()]
        try:
            value = yaml.safe_load(value)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config key '{key}' is not valid YAML: {e}") from e
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ConfigError(f"Config key '{key}' must be a {kind.__name__}")
    return value


@dataclass(frozen=True)
class WizardSettings:
    """Typed configuration assembled once at startup and passed down explicitly."""

    app_root: Path = field(default_factory=Path.cwd)
    steps: tuple[str, ...] = ()
    requirements_runtime: str = ">=3.11"
    requirements_capabilities: dict[str, str] = field(default_factory=dict)
    requirements_permissions: dict[str, str] = field(default_factory=dict)
    schema_paths: tuple[Path, ...] = (BUILTIN_SCHEMA_DIR,)
    seed_path: Path | None = None
    database_path: Path = Path("storage/app.sqlite")
    session_dir: Path = Path("storage/setupwizard/sessions")
    session_prefix: str = "setupwizard"
    marker_path: Path = Path("storage/installed.json")
    env_path: Path = Path(".env")
    storage_link_target: Path | None = None
    storage_link_path: Path | None = None
    dev_override: bool = False
    external_timeout: float = 10.0
    license_verify_url: str | None = None
    logging_level: str = DEFAULT_LOGGING_LEVEL
    diagnostics_enabled: bool = False

    @classmethod
    def from_resolver(cls, resolver: ConfigResolver) -> WizardSettings:
        """Build settings from a resolver (defaults -> file -> environment -> CLI)."""
        root_raw, _src = resolver.try_resolve("app_root", ".")
        app_root = Path(str(root_raw)).expanduser().resolve()

        def _path(key: str, default: Any = None) -> Path | None:
            raw, _src = resolver.try_resolve(key, default)
            if raw is None or str(raw).strip() == "":
                return None
            p = Path(str(raw)).expanduser()
            return p if p.is_absolute() else app_root / p

        def _value(key: str, default: Any = None) -> Any:
            return resolver.try_resolve(key, default)[0]

        steps = _coerce_structured("steps", _value("steps", []), list)
        schema_raw = _coerce_structured("schema.paths", _value("schema.paths", []), list)
        schema_paths: list[Path] = []
        for raw in schema_raw:
            p = Path(str(raw)).expanduser()
            schema_paths.append(p if p.is_absolute() else app_root / p)

        prefix = str(_value("session.prefix", "setupwizard")).strip()
        if not prefix:
            raise ConfigError("Config key 'session.prefix' must not be empty")

        verify_url = _value("license.verify_url")

        return cls(
            app_root=app_root,
            steps=tuple(str(s) for s in steps),
            requirements_runtime=str(_value("requirements.runtime", ">=3.11")),
            requirements_capabilities={
                str(k): str(v)
                for k, v in _coerce_structured(
                    "requirements.capabilities", _value("requirements.capabilities", {}), dict
                ).items()
            },
            requirements_permissions={
                str(k): str(v)
                for k, v in _coerce_structured(
                    "requirements.permissions", _value("requirements.permissions", {}), dict
                ).items()
            },
            schema_paths=tuple(schema_paths),
            seed_path=_path("install.seed_path"),
            database_path=_path("database.path", "storage/app.sqlite") or app_root,
            session_dir=_path("session.dir", "storage/setupwizard/sessions") or app_root,
            session_prefix=prefix,
            marker_path=_path("install.marker_path", "storage/installed.json") or app_root,
            env_path=_path("install.env_path", ".env") or app_root,
            storage_link_target=_path("install.storage_link.target"),
            storage_link_path=_path("install.storage_link.path"),
            dev_override=_coerce_bool("install.dev_override", _value("install.dev_override", False)),
            external_timeout=_coerce_float("external.timeout", _value("external.timeout", 10.0)),
            license_verify_url=str(verify_url) if verify_url else None,
            logging_level=resolver.resolve_logging_policy().level_name,
            diagnostics_enabled=_coerce_bool(
                "diagnostics.enabled", _value("diagnostics.enabled", False)
            ),
        )
