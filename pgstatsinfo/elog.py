"""Message levels, level filtering and error reporting."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, TextIO


class Level(IntEnum):
    """Severity levels, in their physical order."""

    DEBUG5 = 10
    DEBUG4 = 11
    DEBUG3 = 12
    DEBUG2 = 13
    DEBUG1 = 14
    LOG = 15
    COMMERROR = 16
    INFO = 17
    NOTICE = 18
    WARNING = 19
    ERROR = 21
    FATAL = 22
    PANIC = 23


class ElogError(Exception):
    """Raised when a reported message reaches the abort level."""

    def __init__(self, level: int, code: int, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.level = level
        self.code = code
        self.message = message
        self.detail = detail


_DEBUG_LEVELS = frozenset(
    {Level.DEBUG5, Level.DEBUG4, Level.DEBUG3, Level.DEBUG2, Level.DEBUG1}
)

_LEVEL_TAGS = {
    Level.LOG: "LOG",
    Level.INFO: "INFO",
    Level.NOTICE: "NOTICE",
    Level.WARNING: "WARNING",
    Level.COMMERROR: "ERROR",
    Level.ERROR: "ERROR",
    Level.FATAL: "FATAL",
    Level.PANIC: "PANIC",
}

_LEVEL_NAMES = {
    "DEBUG": Level.DEBUG2,
    "INFO": Level.INFO,
    "NOTICE": Level.NOTICE,
    "LOG": Level.LOG,
    "WARNING": Level.WARNING,
    "ERROR": Level.ERROR,
    "FATAL": Level.FATAL,
    "PANIC": Level.PANIC,
}

_ERRCODE_EINVAL = 22


def log_required(elevel: int, log_min_level: int) -> bool:
    """Tell whether ``elevel`` is logically at or above ``log_min_level``.

    In the logical order LOG ranks between ERROR and FATAL.
    """
    if elevel in (Level.LOG, Level.COMMERROR):
        return log_min_level == Level.LOG or log_min_level <= Level.ERROR
    if log_min_level == Level.LOG:
        return elevel >= Level.FATAL
    return elevel >= log_min_level


def format_elevel(elevel: int) -> str:
    """Return the tag printed for a level."""
    if elevel in _DEBUG_LEVELS:
        return "DEBUG"
    try:
        return _LEVEL_TAGS[Level(elevel)]
    except (ValueError, KeyError):
        raise ElogError(
            Level.ERROR, _ERRCODE_EINVAL, f"invalid elevel: {elevel}"
        ) from None


def parse_elevel(value: str) -> Level:
    """Parse a level name, ignoring case."""
    level = _LEVEL_NAMES.get(value.upper())
    if level is None:
        raise ElogError(Level.ERROR, _ERRCODE_EINVAL, f"invalid elevel: {value}")
    return level


def _trim(text: str) -> str:
    return text.rstrip(" \t\n\v\f\r")


@dataclass
class Reporter:
    """Filters messages by level, writes them out and aborts on errors."""

    log_level: int = Level.INFO
    abort_level: int = Level.ERROR
    abort_code: int = 1
    stream: Optional[TextIO] = None

    def elog(self, elevel: int, message: str, detail: Optional[str] = None) -> None:
        """Report a message; raise ElogError if it reaches the abort level."""
        if elevel < self.abort_level and not log_required(elevel, self.log_level):
            return
        code = 1 if elevel >= Level.ERROR else 0
        message = _trim(message)
        detail = _trim(detail) if detail else None
        if log_required(elevel, self.log_level):
            self.emit(elevel, code, message, detail)
        if self.abort_level <= elevel <= Level.PANIC:
            raise ElogError(elevel, self.abort_code, message, detail)

    def emit(self, elevel: int, code: int, message: str, detail: Optional[str] = None) -> None:
        """Write one message with its level tag and optional detail."""
        stream = self.stream if self.stream is not None else sys.stderr
        tag = format_elevel(elevel)
        if detail:
            stream.write(f"{tag}: {message}\nDETAIL: {detail}\n")
        else:
            stream.write(f"{tag}: {message}\n")
        stream.flush()