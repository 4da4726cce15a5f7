"""Session-like persistence for a single install run.

Both backends expose the same small surface (upsert, read, delete,
prefix-scoped listing, delete and replace). ``FileSession`` keeps one JSON
document per run id so that staged data survives across the requests of a run.

Stored values must be JSON documents: dicts with string keys, lists, strings,
finite numbers, booleans and None. Anything else (tuples, sets, datetimes,
non-string keys) is rejected with ``StorageError`` so that a value reads back
exactly as it was written, whichever backend holds it.
"""

from __future__ import annotations

import copy
import json
import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from setupwizard.core.errors import ConfigError, StorageError
from setupwizard.core.logging import get_logger

_LOGGER = get_logger(__name__)

_SCALARS = (str, int, bool, type(None))


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def check_document(value: Any, where: str = "value") -> None:
    """Raise StorageError unless ``value`` is a plain JSON document.

    Args:
        value: Value about to be stored
        where: Location used in the error message (session key, dotted path)
    """
    if isinstance(value, _SCALARS):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise StorageError(f"Cannot store non-finite number at {where}")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            check_document(item, f"{where}[{i}]")
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise StorageError(
                    f"Cannot store {type(k).__name__} key {k!r} at {where}",
                    "Use string keys in staged documents",
                )
            check_document(v, f"{where}.{k}")
        return
    raise StorageError(
        f"Cannot store {type(value).__name__} at {where}",
        "Stage JSON values only (dict, list, str, number, bool, None)",
    )


class MemorySession:
    """In-process session store. Values are deep-copied in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        check_document(value, key)
        self._store({**self._data, key: copy.deepcopy(value)})

    def delete(self, key: str) -> None:
        if key in self._data:
            self._store({k: v for k, v in self._data.items() if k != key})

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def delete_prefix(self, prefix: str) -> int:
        doomed = self.keys(prefix)
        if doomed:
            self._store({k: v for k, v in self._data.items() if not k.startswith(prefix)})
        return len(doomed)

    def replace_prefix(self, prefix: str, values: Mapping[str, Any]) -> None:
        """Replace every key under ``prefix`` with ``values`` in one write.

        Either all of ``values`` is stored and the old keys are gone, or the
        session is left untouched.

        Raises:
            ValueError: If a key of ``values`` lies outside ``prefix``
            StorageError: If a value is not a JSON document or the write fails
        """
        for k, v in values.items():
            if not k.startswith(prefix):
                raise ValueError(f"key {k!r} is outside prefix {prefix!r}")
            check_document(v, k)
        data = {k: v for k, v in self._data.items() if not k.startswith(prefix)}
        data.update(copy.deepcopy(dict(values)))
        self._store(data)

    def _store(self, data: dict[str, Any]) -> None:
        self._data = data


class FileSession(MemorySession):
    """Session persisted as ``<root>/<run_id>.json``.

    Every change is written to disk before it becomes visible in memory; a
    failed write leaves both untouched.
    """

    def __init__(self, root: Path, run_id: str) -> None:
        safe = "".join(ch if (ch.isalnum() or ch in "_-.") else "_" for ch in run_id)
        if not safe:
            raise ConfigError("Session run id must not be empty")
        self._path = root / f"{safe}.json"
        super().__init__(self._load())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(
                f"Session file is unreadable: {self._path}",
                "Delete it to start a fresh run",
            ) from e
        return data if isinstance(data, dict) else {}

    def _store(self, data: dict[str, Any]) -> None:
        payload = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=True) + "\n"
        try:
            atomic_write_text(self._path, payload)
        except OSError as e:
            raise StorageError(f"Cannot write session file {self._path}: {e}") from e
        self._data = data
        _LOGGER.debug(f"session flushed: {self._path}")
