"""Staged data store.

Staged data is the single source of truth until the installation commit:
nothing downstream may assume the permanent store exists before
``InstallationManager.execute`` reports success.

Session key layout (``<prefix>`` defaults to ``setupwizard``):

    <prefix>/staged/<namespace>/<key> -> value
"""

from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from setupwizard.core.interfaces import SessionStore
from setupwizard.core.logging import get_logger

_LOGGER = get_logger(__name__)

_MISSING = object()


def _check_part(kind: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"staged {kind} must be a non-empty string")
    if "/" in value:
        raise ValueError(f"staged {kind} must not contain '/': {value!r}")
    return value


def lookup_path(document: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path into nested mappings (and list indexes)."""
    current = document
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class StagedSnapshot(Mapping[str, Mapping[str, Any]]):
    """Read-only, detached copy of all staged namespaces.

    Used for display-predicate evaluation: later writes to the store are not
    observable through a snapshot taken earlier.
    """

    def __init__(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        self._data = MappingProxyType({ns: _freeze(entries) for ns, entries in data.items()})

    def __getitem__(self, namespace: str) -> Mapping[str, Any]:
        return self._data[namespace]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get_value(self, namespace: str, key: str, default: Any = None) -> Any:
        entries = self._data.get(namespace)
        if entries is None:
            return default
        return _lookup(entries, key, default)

    def namespace(self, namespace: str) -> dict[str, Any]:
        """Mutable deep copy of one namespace (empty when absent)."""
        return _thaw(self._data.get(namespace, {}))


def _lookup(entries: Mapping[str, Any], key: str, default: Any) -> Any:
    if key in entries:
        return entries[key]
    head, sep, rest = key.partition(".")
    if not sep or head not in entries:
        return default
    return lookup_path(entries[head], rest, default)


class StagedDataStore:
    """Namespaced key/value staging area on top of a session store."""

    def __init__(self, session: SessionStore, prefix: str = "setupwizard") -> None:
        self._session = session
        self._root = f"{prefix}/staged/"

    def _namespace_prefix(self, namespace: str) -> str:
        return f"{self._root}{_check_part('namespace', namespace)}/"

    def _session_key(self, namespace: str, key: str) -> str:
        return f"{self._namespace_prefix(namespace)}{_check_part('key', key)}"

    def put(self, namespace: str, key: str, value: Any) -> None:
        """Upsert one staged entry.

        Raises:
            StorageError: If ``value`` is not a JSON document
        """
        self._session.set(self._session_key(namespace, key), copy.deepcopy(value))
        _LOGGER.debug(f"staged {namespace}/{key}")

    def put_many(self, namespace: str, values: Mapping[str, Any], *, replace: bool = True) -> None:
        """Stage a whole document for ``namespace`` in one session write.

        With ``replace`` (the default) keys absent from ``values`` are removed
        so that re-executing a step never leaves stale entries behind. If any
        key or value is rejected, the namespace keeps its previous content.
        """
        pfx = self._namespace_prefix(namespace)
        entries = {} if replace else {k: self._session.get(k) for k in self._session.keys(pfx)}
        for key, value in values.items():
            entries[self._session_key(namespace, str(key))] = value
        self._session.replace_prefix(pfx, entries)
        _LOGGER.debug(f"staged {namespace} ({len(values)} keys)")

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """Read a staged value; ``key`` may be a dotted path into the document."""
        value = self._session.get(self._session_key(namespace, key), _MISSING)
        if value is not _MISSING:
            return value
        head, sep, rest = key.partition(".")
        if not sep:
            return default
        doc = self._session.get(self._session_key(namespace, head), _MISSING)
        if doc is _MISSING:
            return default
        return lookup_path(doc, rest, default)

    def has(self, namespace: str, key: str) -> bool:
        return self.get(namespace, key, _MISSING) is not _MISSING

    def namespace(self, namespace: str) -> dict[str, Any]:
        """Return every staged key of ``namespace`` as a new dict."""
        pfx = self._namespace_prefix(namespace)
        return {k[len(pfx) :]: self._session.get(k) for k in self._session.keys(pfx)}

    def namespaces(self) -> list[str]:
        names: list[str] = []
        for k in self._session.keys(self._root):
            ns = k[len(self._root) :].split("/", 1)[0]
            if ns not in names:
                names.append(ns)
        return names

    def clear_namespace(self, namespace: str) -> None:
        pfx = self._namespace_prefix(namespace)
        removed = self._session.delete_prefix(pfx)
        if removed:
            _LOGGER.debug(f"cleared staged namespace {namespace} ({removed} keys)")

    def clear_all(self) -> None:
        """Remove every staged entry under the reserved prefix."""
        removed = self._session.delete_prefix(self._root)
        _LOGGER.verbose(f"cleared all staged data ({removed} keys)")

    def snapshot(self) -> StagedSnapshot:
        return StagedSnapshot({ns: self.namespace(ns) for ns in self.namespaces()})
