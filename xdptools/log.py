"""Levelled logging to standard error.

The levels mirror the ones used by the BPF loading libraries, plus an extra
VERBOSE level. Messages coming from those libraries are demoted by one level,
so their debug output only shows up at VERBOSE.
"""

from __future__ import annotations

import enum
import sys

__all__ = [
    "LogLevel",
    "log_print",
    "library_print",
    "pr_warn",
    "pr_info",
    "pr_debug",
    "set_log_level",
    "get_log_level",
    "increase_log_level",
]


class LogLevel(enum.IntEnum):
    """Logging levels, from most to least important."""

    WARN = 0
    INFO = 1
    DEBUG = 2
    VERBOSE = 3


_log_level: LogLevel = LogLevel.INFO


def _emit(level: int, indent: int, message: str) -> int:
    if level > _log_level:
        return 0
    text = " " * max(indent, 0) + message
    sys.stderr.write(text)
    return len(text)


def log_print(level: LogLevel | int, message: str) -> int:
    """Write *message* to stderr if *level* is enabled.

    Returns the number of characters written (0 when filtered out).
    """
    return _emit(int(level), 0, message)


def library_print(level: LogLevel | int, message: str, indent: int) -> int:
    """Write a message from a library, demoted by one level and indented.

    *level* is the library's own level (WARN, INFO or DEBUG).
    """
    return _emit(int(level) + 1, indent, message)


def pr_warn(message: str) -> int:
    """Log *message* at WARN level."""
    return log_print(LogLevel.WARN, message)


def pr_info(message: str) -> int:
    """Log *message* at INFO level."""
    return log_print(LogLevel.INFO, message)


def pr_debug(message: str) -> int:
    """Log *message* at DEBUG level."""
    return log_print(LogLevel.DEBUG, message)


def set_log_level(level: LogLevel | int) -> LogLevel:
    """Set the current log level and return the previous one."""
    global _log_level
    old = _log_level
    _log_level = LogLevel(level)
    return old


def get_log_level() -> LogLevel:
    """Return the current log level."""
    return _log_level


def increase_log_level() -> LogLevel:
    """Raise the log level by one step, up to VERBOSE, and return it."""
    global _log_level
    if _log_level < LogLevel.VERBOSE:
        _log_level = LogLevel(_log_level + 1)
    return _log_level