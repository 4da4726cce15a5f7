"""Verbosity-aware logger for setupwizard.

QUIET shows warnings and errors, NORMAL adds info, VERBOSE adds progress
detail and DEBUG adds internal state. Errors go to stderr, everything else to
stdout. Every emitted record is also published on the LogBus.
"""

from __future__ import annotations

import sys
from enum import IntEnum

from setupwizard.core.config import LoggingPolicy
from setupwizard.core.log_bus import LogRecord, get_log_bus


class VerbosityLevel(IntEnum):
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3


_VERBOSITY: VerbosityLevel = VerbosityLevel.NORMAL

_LEVEL_BY_NAME = {
    "quiet": VerbosityLevel.QUIET,
    "normal": VerbosityLevel.NORMAL,
    "verbose": VerbosityLevel.VERBOSE,
    "debug": VerbosityLevel.DEBUG,
}

_COLORS = {
    "DEBUG": "\033[36m",
    "VERBOSE": "\033[34m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
}
_RESET = "\033[0m"


def set_verbosity(level: int | VerbosityLevel) -> None:
    global _VERBOSITY
    _VERBOSITY = VerbosityLevel(level)


def get_verbosity() -> VerbosityLevel:
    return _VERBOSITY


def apply_logging_policy(policy: LoggingPolicy) -> None:
    """Apply the resolved ``logging.level`` to the core logger."""
    set_verbosity(_LEVEL_BY_NAME.get(policy.level_name, VerbosityLevel.NORMAL))


class SetupWizardLogger:
    def __init__(self, name: str):
        self.name = name

    def _emit(self, level_name: str, message: str) -> None:
        plain = f"[{level_name.lower()}] {message}"
        get_log_bus().publish(LogRecord(level_name=level_name, plain=plain, logger_name=self.name))

        stream = sys.stderr if level_name == "ERROR" else sys.stdout
        if stream.isatty():
            text = f"{_COLORS[level_name]}[{level_name.lower()}]{_RESET} {message}"
        else:
            text = plain
        print(text, file=stream)

    def _log(self, level: VerbosityLevel, level_name: str, message: str) -> None:
        if level <= _VERBOSITY:
            self._emit(level_name, message)

    def debug(self, message: str) -> None:
        self._log(VerbosityLevel.DEBUG, "DEBUG", message)

    def verbose(self, message: str) -> None:
        self._log(VerbosityLevel.VERBOSE, "VERBOSE", message)

    def info(self, message: str) -> None:
        self._log(VerbosityLevel.NORMAL, "INFO", message)

    def warning(self, message: str) -> None:
        self._log(VerbosityLevel.QUIET, "WARNING", message)

    def error(self, message: str) -> None:
        """Always emitted, whatever the verbosity."""
        self._emit("ERROR", message)


_LOGGERS: dict[str, SetupWizardLogger] = {}


def get_logger(name: str = __name__) -> SetupWizardLogger:
    if name not in _LOGGERS:
        _LOGGERS[name] = SetupWizardLogger(name)
    return _LOGGERS[name]
