"""Small helpers shared across the pipeline: level and format parsing, JSON paths, counters."""

from __future__ import annotations

import threading
from enum import IntEnum
from typing import Any, MutableMapping, Sequence

FORMAT_NAMES = (
    "ansic|unixdate|rubydate|rfc822|rfc822z|rfc850|rfc1123|rfc1123z|"
    "rfc3339|rfc3339nano|kitchen|stamp|stampmilli|stampmicro|stampnano"
)

_FORMATS = {
    "ansic": "%a %b %d %H:%M:%S %Y",
    "unixdate": "%a %b %d %H:%M:%S %Z %Y",
    "rubydate": "%a %b %d %H:%M:%S %z %Y",
    "rfc822": "%d %b %y %H:%M %Z",
    "rfc822z": "%d %b %y %H:%M %z",
    "rfc850": "%A, %d-%b-%y %H:%M:%S %Z",
    "rfc1123": "%a, %d %b %Y %H:%M:%S %Z",
    "rfc1123z": "%a, %d %b %Y %H:%M:%S %z",
    "rfc3339": "%Y-%m-%dT%H:%M:%S%z",
    "rfc3339nano": "%Y-%m-%dT%H:%M:%S.%f%z",
    "kitchen": "%I:%M%p",
    "stamp": "%b %d %H:%M:%S",
    "stampmilli": "%b %d %H:%M:%S.%f",
    "stampmicro": "%b %d %H:%M:%S.%f",
    "stampnano": "%b %d %H:%M:%S.%f",
}


def parse_format_name(format_name: str) -> str:
    """Return the strftime/strptime format for a well-known time format name."""
    key = format_name.strip().lower()
    try:
        return _FORMATS[key]
    except KeyError:
        raise ValueError(
            f"unknown format name {format_name!r}, should be one of {FORMAT_NAMES}"
        ) from None


class LogLevel(IntEnum):
    """Syslog severity levels as numbered by RFC 5424."""

    UNKNOWN = -1
    EMERGENCY = 0
    ALERT = 1
    CRITICAL = 2
    ERROR = 3
    WARNING = 4
    NOTICE = 5
    INFORMATIONAL = 6
    DEBUG = 7


LEVEL_UNKNOWN_STR = ""

_LEVEL_ALIASES = {
    "0": LogLevel.EMERGENCY,
    "emergency": LogLevel.EMERGENCY,
    "1": LogLevel.ALERT,
    "alert": LogLevel.ALERT,
    "2": LogLevel.CRITICAL,
    "critical": LogLevel.CRITICAL,
    "crit": LogLevel.CRITICAL,
    "3": LogLevel.ERROR,
    "error": LogLevel.ERROR,
    "err": LogLevel.ERROR,
    "4": LogLevel.WARNING,
    "warning": LogLevel.WARNING,
    "warn": LogLevel.WARNING,
    "5": LogLevel.NOTICE,
    "notice": LogLevel.NOTICE,
    "6": LogLevel.INFORMATIONAL,
    "informational": LogLevel.INFORMATIONAL,
    "info": LogLevel.INFORMATIONAL,
    "7": LogLevel.DEBUG,
    "debug": LogLevel.DEBUG,
}


def parse_level_as_number(level: str) -> LogLevel:
    """Convert a level name or digit to its RFC 5424 number."""
    return _LEVEL_ALIASES.get(level.strip().lower(), LogLevel.UNKNOWN)


def parse_level_as_string(level: str) -> str:
    """Convert a level name or digit to its canonical RFC 5424 name."""
    parsed = parse_level_as_number(level)
    if parsed is LogLevel.UNKNOWN:
        return LEVEL_UNKNOWN_STR
    return parsed.name.lower()


def create_nested_field(root: MutableMapping[str, Any], path: Sequence[str]) -> dict:
    """Make sure ``root`` holds nested objects along ``path`` and return the innermost one.

    A non-object value found on the path is replaced with an empty object.
    """
    current = root
    for key in path:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    return current


def header(title: str) -> str:
    """Return a section header line used in text dumps."""
    return f"============ {title} ============\n"


class AtomicInt:
    """An integer whose operations are safe to use from several threads."""

    __slots__ = ("_value", "_lock")

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def inc(self, delta: int = 1) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def dec(self) -> int:
        """Subtract one and return the new value."""
        return self.inc(-1)

    def load(self) -> int:
        with self._lock:
            return self._value

    def store(self, value: int) -> None:
        with self._lock:
            self._value = value

    def swap(self, value: int) -> int:
        """Set a new value and return the previous one."""
        with self._lock:
            old, self._value = self._value, value
            return old

    def __repr__(self) -> str:
        return f"AtomicInt({self.load()})"