"""Declarative schema definitions and offline introspection.

Schema definitions are YAML documents (or in-memory mappings) that describe
the tables the application will have once migrations run:

    migration: 0001_create_users
    tables:
      users:
        columns:
          - {name: id, type: integer, primary: true}
          - {name: email, type: text, unique: true}
          - name                      # shorthand for a nullable text column
        primary_key: [id]             # optional composite key

Files are applied in file-name order; a later definition may add columns to a
table declared earlier. ``SchemaIntrospector`` answers "does table T have
column C" from these definitions alone, before any connection exists.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from setupwizard.core.errors import ConfigurationError
from setupwizard.core.logging import get_logger

_LOGGER = get_logger(__name__)

COLUMN_TYPES = frozenset({"text", "integer", "real", "boolean", "json", "timestamp"})

SchemaSource = Path | Mapping[str, Any]


@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: str = "text"
    nullable: bool = True
    unique: bool = False
    primary: bool = False
    default: Any = None


@dataclass(frozen=True)
class TableDef:
    name: str
    columns: tuple[ColumnDef, ...]
    primary_key: tuple[str, ...] = ()

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


@dataclass(frozen=True)
class Migration:
    name: str
    tables: tuple[TableDef, ...] = field(default_factory=tuple)


def _parse_column(table: str, raw: Any) -> ColumnDef:
    if isinstance(raw, str):
        return ColumnDef(name=raw)
    if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
        raise ConfigurationError(f"Invalid column definition in table '{table}': {raw!r}")
    ctype = str(raw.get("type", "text")).lower()
    if ctype not in COLUMN_TYPES:
        allowed = ", ".join(sorted(COLUMN_TYPES))
        raise ConfigurationError(
            f"Unsupported column type '{ctype}' for {table}.{raw['name']}",
            f"Allowed types: {allowed}",
        )
    primary = bool(raw.get("primary", False))
    return ColumnDef(
        name=raw["name"],
        type=ctype,
        nullable=bool(raw.get("nullable", not primary)),
        unique=bool(raw.get("unique", False)),
        primary=primary,
        default=raw.get("default"),
    )


def _parse_table(name: str, raw: Any) -> TableDef:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Table definition '{name}' must be a mapping")
    cols_raw = raw.get("columns") or []
    if not isinstance(cols_raw, list):
        raise ConfigurationError(f"Table '{name}': columns must be a list")
    columns = tuple(_parse_column(name, c) for c in cols_raw)
    pk = raw.get("primary_key") or [c.name for c in columns if c.primary]
    return TableDef(name=name, columns=columns, primary_key=tuple(str(p) for p in pk))


def parse_migration(name: str, data: Mapping[str, Any]) -> Migration:
    """Parse one definition document.

    A document with a ``tables`` key is a named migration; any other mapping
    is read as tables keyed by table name.
    """
    if "tables" in data:
        name = str(data.get("migration") or name)
        tables_raw = data.get("tables") or {}
    else:
        tables_raw = data
    if not isinstance(tables_raw, Mapping):
        raise ConfigurationError(f"Schema definition '{name}': tables must be a mapping")
    return Migration(
        name=name,
        tables=tuple(_parse_table(str(t), raw) for t, raw in tables_raw.items()),
    )


def _load_file(path: Path) -> Migration:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read schema definition {path}: {e}") from e
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Schema definition {path} must be a mapping")
    return parse_migration(path.stem, data)


def load_migrations(sources: Iterable[SchemaSource]) -> list[Migration]:
    """Load migrations from files, directories (``*.yaml``/``*.yml``) and mappings."""
    out: list[Migration] = []
    for idx, src in enumerate(sources):
        if isinstance(src, Mapping):
            out.append(parse_migration(f"inline_{idx:04d}", src))
            continue
        path = Path(src)
        if path.is_dir():
            files = sorted(
                p for p in path.iterdir() if p.is_file() and p.suffix in {".yaml", ".yml"}
            )
            out.extend(_load_file(p) for p in files)
        elif path.is_file():
            out.append(_load_file(path))
        else:
            raise ConfigurationError(
                f"Schema source not found: {path}",
                "Check schema.paths in the configuration",
            )

    seen: set[str] = set()
    for m in out:
        if m.name in seen:
            raise ConfigurationError(f"Duplicate migration name: {m.name}")
        seen.add(m.name)
    return out


class SchemaIntrospector:
    """Answer schema questions from declarative definitions only."""

    def __init__(self, sources: Sequence[SchemaSource]) -> None:
        self._sources = list(sources)
        self._migrations: list[Migration] | None = None
        self._tables: dict[str, TableDef] | None = None

    def migrations(self) -> list[Migration]:
        if self._migrations is None:
            self._migrations = load_migrations(self._sources)
            _LOGGER.debug(f"loaded {len(self._migrations)} schema definitions")
        return list(self._migrations)

    def _merged(self) -> dict[str, TableDef]:
        if self._tables is None:
            tables: dict[str, TableDef] = {}
            for m in self.migrations():
                for t in m.tables:
                    prev = tables.get(t.name)
                    if prev is None:
                        tables[t.name] = t
                        continue
                    known = set(prev.column_names())
                    extra = tuple(c for c in t.columns if c.name not in known)
                    tables[t.name] = TableDef(
                        name=t.name,
                        columns=prev.columns + extra,
                        primary_key=prev.primary_key or t.primary_key,
                    )
            self._tables = tables
        return self._tables

    def tables(self) -> list[str]:
        return list(self._merged().keys())

    def table(self, name: str) -> TableDef | None:
        return self._merged().get(name)

    def has_table(self, name: str) -> bool:
        return name in self._merged()

    def columns(self, table: str) -> list[str]:
        t = self._merged().get(table)
        return t.column_names() if t is not None else []

    def missing_columns(self, table: str, required: Iterable[str]) -> list[str]:
        present = set(self.columns(table))
        return [c for c in required if c not in present]

    def invalidate(self) -> None:
        """Forget parsed definitions so the next query re-reads the sources."""
        self._migrations = None
        self._tables = None
