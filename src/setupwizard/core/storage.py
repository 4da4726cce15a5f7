"""SQLite-backed permanent store.

Migrations come from the declarative schema definitions. Every ``migrate``
call applies the pending definitions as one batch inside a transaction and
records what it created, so ``rollback`` can revert exactly the most recent
batch. Row writes are upserts keyed by logical identity.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from setupwizard.core.errors import StorageError
from setupwizard.core.logging import get_logger
from setupwizard.core.schema import ColumnDef, Migration, TableDef

_LOGGER = get_logger(__name__)

MIGRATIONS_TABLE = "_setupwizard_migrations"

_SQL_TYPES = {
    "text": "TEXT",
    "integer": "INTEGER",
    "real": "REAL",
    "boolean": "INTEGER",
    "json": "TEXT",
    "timestamp": "TEXT",
}


def _q(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int | float):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def _column_sql(col: ColumnDef, *, inline_unique: bool = True) -> str:
    parts = [_q(col.name), _SQL_TYPES[col.type]]
    if not col.nullable:
        parts.append("NOT NULL")
    if col.default is not None:
        parts.append(f"DEFAULT {_literal(col.default)}")
    if col.unique and inline_unique:
        parts.append("UNIQUE")
    return " ".join(parts)


def _db_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, sort_keys=True, ensure_ascii=True)
    return value


class SqliteStore:
    """Permanent store on a single SQLite database file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, isolation_level=None)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open database {self.path}: {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _ensure_migrations_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {_q(MIGRATIONS_TABLE)} ("
            '"name" TEXT PRIMARY KEY, "batch" INTEGER NOT NULL, "changes" TEXT NOT NULL)'
        )

    @staticmethod
    def _exists(conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    @staticmethod
    def _columns(conn: sqlite3.Connection, table: str) -> list[str]:
        return [r[1] for r in conn.execute(f"PRAGMA table_info({_q(table)})").fetchall()]

    def _create_table(self, conn: sqlite3.Connection, table: TableDef) -> None:
        multi_pk = len(table.primary_key) > 1
        single_pk = table.primary_key[0] if len(table.primary_key) == 1 else None
        cols = []
        for c in table.columns:
            if c.name == single_pk:
                # INTEGER PRIMARY KEY aliases the rowid and is assigned on insert.
                cols.append(f"{_q(c.name)} {_SQL_TYPES[c.type]} PRIMARY KEY")
            else:
                cols.append(_column_sql(c))
        if multi_pk:
            cols.append("PRIMARY KEY (" + ", ".join(_q(k) for k in table.primary_key) + ")")
        conn.execute(f"CREATE TABLE {_q(table.name)} ({', '.join(cols)})")

    def _add_columns(self, conn: sqlite3.Connection, table: TableDef) -> list[str]:
        present = set(self._columns(conn, table.name))
        added: list[str] = []
        for c in table.columns:
            if c.name in present:
                continue
            conn.execute(
                f"ALTER TABLE {_q(table.name)} ADD COLUMN {_column_sql(c, inline_unique=False)}"
            )
            if c.unique:
                conn.execute(
                    f"CREATE UNIQUE INDEX {_q(f'{table.name}_{c.name}_unique')} "
                    f"ON {_q(table.name)} ({_q(c.name)})"
                )
            added.append(c.name)
        return added

    def _drop_all(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        ).fetchall()
        for (name,) in rows:
            conn.execute(f"DROP TABLE IF EXISTS {_q(name)}")

    def migrate(self, migrations: Sequence[Migration], *, reset: bool = False) -> list[str]:
        """Apply pending migrations as one batch (all or nothing)."""
        try:
            with self._transaction() as conn:
                if reset:
                    _LOGGER.info("resetting schema: dropping all tables")
                    self._drop_all(conn)
                self._ensure_migrations_table(conn)
                applied = {
                    r[0] for r in conn.execute(f"SELECT name FROM {_q(MIGRATIONS_TABLE)}")
                }
                pending = [m for m in migrations if m.name not in applied]
                if not pending:
                    _LOGGER.verbose("schema up to date")
                    return []

                row = conn.execute(f"SELECT MAX(batch) FROM {_q(MIGRATIONS_TABLE)}").fetchone()
                batch = (row[0] or 0) + 1
                for m in pending:
                    changes: dict[str, Any] = {"created": [], "added": {}}
                    for table in m.tables:
                        if self._exists(conn, table.name):
                            added = self._add_columns(conn, table)
                            if added:
                                changes["added"][table.name] = added
                        else:
                            self._create_table(conn, table)
                            changes["created"].append(table.name)
                    conn.execute(
                        f"INSERT INTO {_q(MIGRATIONS_TABLE)} (name, batch, changes) "
                        "VALUES (?, ?, ?)",
                        (m.name, batch, json.dumps(changes, sort_keys=True)),
                    )
                    _LOGGER.info(f"migrated: {m.name}")
                return [m.name for m in pending]
        except sqlite3.Error as e:
            raise StorageError(f"Schema migration failed: {e}") from e

    def rollback(self) -> list[str]:
        """Revert the most recent migration batch."""
        try:
            with self._transaction() as conn:
                self._ensure_migrations_table(conn)
                row = conn.execute(f"SELECT MAX(batch) FROM {_q(MIGRATIONS_TABLE)}").fetchone()
                if row[0] is None:
                    return []
                rows = conn.execute(
                    f"SELECT name, changes FROM {_q(MIGRATIONS_TABLE)} "
                    "WHERE batch = ? ORDER BY rowid DESC",
                    (row[0],),
                ).fetchall()
                reverted: list[str] = []
                for name, raw in rows:
                    changes = json.loads(raw)
                    for table, cols in changes.get("added", {}).items():
                        for col in reversed(cols):
                            conn.execute(
                                f"DROP INDEX IF EXISTS {_q(f'{table}_{col}_unique')}"
                            )
                            conn.execute(f"ALTER TABLE {_q(table)} DROP COLUMN {_q(col)}")
                    for table in reversed(changes.get("created", [])):
                        conn.execute(f"DROP TABLE IF EXISTS {_q(table)}")
                    conn.execute(f"DELETE FROM {_q(MIGRATIONS_TABLE)} WHERE name = ?", (name,))
                    _LOGGER.info(f"rolled back: {name}")
                    reverted.append(name)
                return reverted
        except sqlite3.Error as e:
            raise StorageError(f"Rollback failed: {e}") from e

    def upsert(self, table: str, row: Mapping[str, Any], keys: Sequence[str]) -> None:
        if not row:
            raise StorageError(f"Refusing to upsert an empty row into {table}")
        missing = [k for k in keys if k not in row]
        if not keys or missing:
            raise StorageError(f"Upsert into {table} needs key columns present: {list(keys)}")

        cols = list(row.keys())
        updates = [c for c in cols if c not in keys]
        sql = (
            f"INSERT INTO {_q(table)} ({', '.join(_q(c) for c in cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT ({', '.join(_q(k) for k in keys)}) "
        )
        if updates:
            sql += "DO UPDATE SET " + ", ".join(f"{_q(c)} = excluded.{_q(c)}" for c in updates)
        else:
            sql += "DO NOTHING"
        try:
            with self._connect() as conn:
                conn.execute(sql, [_db_value(row[c]) for c in cols])
        except sqlite3.Error as e:
            raise StorageError(f"Upsert into {table} failed: {e}") from e

    def seed(self, seed_sets: Sequence[Mapping[str, Any]]) -> int:
        """Upsert seed rows. Each set is ``{table, keys, rows}``."""
        count = 0
        for s in seed_sets:
            table = s.get("table")
            keys = s.get("keys") or []
            rows = s.get("rows") or []
            if not isinstance(table, str) or not isinstance(rows, list):
                raise StorageError(f"Invalid seed set: {dict(s)!r}")
            for r in rows:
                self.upsert(table, r, keys)
                count += 1
            _LOGGER.verbose(f"seeded {len(rows)} rows into {table}")
        return count

    def table_exists(self, table: str) -> bool:
        try:
            with self._connect() as conn:
                return self._exists(conn, table)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot inspect {table}: {e}") from e

    def fetch_all(self, table: str) -> list[dict[str, Any]]:
        """Return every row of ``table`` as dicts (used for verification output)."""
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                return [dict(r) for r in conn.execute(f"SELECT * FROM {_q(table)}")]
        except sqlite3.Error as e:
            raise StorageError(f"Cannot read {table}: {e}") from e

    def table_columns(self, table: str) -> list[str]:
        try:
            with self._connect() as conn:
                return self._columns(conn, table)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot inspect {table}: {e}") from e
