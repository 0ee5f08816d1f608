"""Parsing of configuration values: booleans, integers and timestamps."""

from __future__ import annotations

import time

INFINITE_STR = "INFINITE"

_C_SPACE = " \t\n\v\f\r"
_INT32_MAX = 2**31 - 1
_INT32_MIN = -(2**31)
_UINT32_MAX = 2**32 - 1
_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)
_UINT64_MAX = 2**64 - 1

_ASCII_DIGITS = "0123456789"
_ASCII_ALNUM = frozenset(
    "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)


def _is_prefix(value: str, word: str, minimum: int = 1) -> bool:
    return len(value) >= minimum and word.startswith(value.lower())


def parse_bool(value: str) -> bool:
    """Parse true/false, yes/no, on/off, 1/0 or unique prefixes thereof."""
    if not value:
        raise ValueError(f"invalid boolean value: {value!r}")
    first = value[0].lower()
    if first == "t" and _is_prefix(value, "true"):
        return True
    if first == "f" and _is_prefix(value, "false"):
        return False
    if first == "y" and _is_prefix(value, "yes"):
        return True
    if first == "n" and _is_prefix(value, "no"):
        return False
    if first == "o":
        # a single "o" is not unique enough
        if _is_prefix(value, "on", 2):
            return True
        if _is_prefix(value, "off", 2):
            return False
    if value == "1":
        return True
    if value == "0":
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def _scan_integer(value: str) -> tuple[bool, int]:
    """Scan an integer the way strtol does with base 0.

    Returns the sign and the magnitude; raises ValueError when the text is
    not entirely a number.
    """
    pos = 0
    length = len(value)
    while pos < length and value[pos] in _C_SPACE:
        pos += 1
    negative = False
    if pos < length and value[pos] in "+-":
        negative = value[pos] == "-"
        pos += 1

    rest = value[pos:]
    if rest[:2].lower() == "0x" and len(rest) > 2 and rest[2] in "0123456789abcdefABCDEF":
        base, digits_allowed = 16, "0123456789abcdefABCDEF"
        pos += 2
    elif rest[:1] == "0":
        base, digits_allowed = 8, "01234567"
    else:
        base, digits_allowed = 10, _ASCII_DIGITS

    start = pos
    while pos < length and value[pos] in digits_allowed:
        pos += 1
    if pos == start or pos != length:
        raise ValueError(f"invalid integer value: {value!r}")
    return negative, int(value[start:pos], base)


def _parse_signed(value: str, low: int, high: int, infinite: int) -> int:
    if value == INFINITE_STR:
        return infinite
    negative, magnitude = _scan_integer(value)
    number = -magnitude if negative else magnitude
    if number < _INT64_MIN or number > _INT64_MAX:
        raise ValueError(f"integer out of range: {value!r}")
    if number < low or number > high:
        raise ValueError(f"integer out of range: {value!r}")
    return number


def _parse_unsigned(value: str, high: int, infinite: int) -> int:
    if value == INFINITE_STR:
        return infinite
    negative, magnitude = _scan_integer(value)
    if magnitude > _UINT64_MAX:
        raise ValueError(f"integer out of range: {value!r}")
    # a negated unsigned value wraps around, as strtoul does
    number = (-magnitude) % (2**64) if negative else magnitude
    if number > high:
        raise ValueError(f"integer out of range: {value!r}")
    return number


def parse_int32(value: str) -> int:
    """Parse a signed 32-bit integer; "INFINITE" gives the maximum."""
    return _parse_signed(value, _INT32_MIN, _INT32_MAX, _INT32_MAX)


def parse_uint32(value: str) -> int:
    """Parse an unsigned 32-bit integer; "INFINITE" gives the maximum."""
    return _parse_unsigned(value, _UINT32_MAX, _UINT32_MAX)


def parse_int64(value: str) -> int:
    """Parse a signed 64-bit integer; "INFINITE" gives the maximum."""
    return _parse_signed(value, _INT64_MIN, _INT64_MAX, _INT64_MAX)


def parse_uint64(value: str) -> int:
    """Parse an unsigned 64-bit integer; "INFINITE" gives the maximum."""
    return _parse_unsigned(value, _UINT64_MAX, _UINT64_MAX)


def _scan_time_fields(text: str) -> list[int]:
    """Read up to six numbers of widths 4,2,2,2,2,2; reject trailing text."""
    widths = (4, 2, 2, 2, 2, 2)
    fields: list[int] = []
    pos = 0
    length = len(text)
    for width in widths:
        while pos < length and text[pos] in _C_SPACE:
            pos += 1
        if pos >= length:
            if not fields:
                raise ValueError("empty time value")
            return fields
        start = pos
        while pos < length and pos - start < width and text[pos] in _ASCII_DIGITS:
            pos += 1
        if pos == start:
            return fields
        fields.append(int(text[start:pos]))
    while pos < length and text[pos] in _C_SPACE:
        pos += 1
    if pos < length:
        raise ValueError("trailing characters in time value")
    return fields


def parse_time(value: str) -> int:
    """Convert an ISO-8601 style local time string to seconds since the epoch."""
    text = "".join(ch if ch in _ASCII_ALNUM else " " for ch in value)
    fields = _scan_time_fields(text)
    if not fields:
        raise ValueError(f"invalid time value: {value!r}")

    year = fields[0]
    if year < 100:
        year += 2000
    elif year < 1900:
        year += 1900
    month = fields[1] if len(fields) > 1 else 1
    day = fields[2] if len(fields) > 2 else 1
    hour = fields[3] if len(fields) > 3 else 0
    minute = fields[4] if len(fields) > 4 else 0
    second = fields[5] if len(fields) > 5 else 0

    return int(time.mktime((year, month, day, hour, minute, second, 0, 0, -1)))


def strip_whitespace(value: str) -> str:
    """Trim whitespace from both ends of a string."""
    return value.strip(_C_SPACE)