"""Publish/subscribe channel for the records of the core logger.

The installation manager subscribes for the duration of ``execute`` to copy
the run's log lines into ``InstallationResult.output``.
"""

from __future__ import annotations

import contextlib
import sys
import traceback
from collections.abc import Callable, Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class LogRecord:
    level_name: str
    plain: str
    logger_name: str


class LogBus:
    def __init__(self) -> None:
        self._subs_by_level: dict[str, list[Callable[[LogRecord], None]]] = {}
        self._subs_all: list[Callable[[LogRecord], None]] = []

    def subscribe(self, level_name: str, cb: Callable[[LogRecord], None]) -> None:
        self._subs_by_level.setdefault(level_name, []).append(cb)

    def subscribe_all(self, cb: Callable[[LogRecord], None]) -> None:
        self._subs_all.append(cb)

    def unsubscribe_all(self, cb: Callable[[LogRecord], None]) -> None:
        with contextlib.suppress(ValueError):
            self._subs_all.remove(cb)

    def publish(self, record: LogRecord) -> None:
        for cb in [*self._subs_all, *self._subs_by_level.get(record.level_name, [])]:
            try:
                cb(record)
            except Exception:
                # Written directly: going through the logger would recurse.
                sys.stderr.write("log subscriber failed\n" + traceback.format_exc())

    @contextlib.contextmanager
    def capture(self) -> Iterator[list[str]]:
        """Collect plain log lines published while the block runs."""
        lines: list[str] = []

        def _collect(rec: LogRecord) -> None:
            lines.append(rec.plain)

        self.subscribe_all(_collect)
        try:
            yield lines
        finally:
            self.unsubscribe_all(_collect)


_LOG_BUS: LogBus | None = None


def get_log_bus() -> LogBus:
    global _LOG_BUS
    if _LOG_BUS is None:
        _LOG_BUS = LogBus()
    return _LOG_BUS
