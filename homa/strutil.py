"""Small string helpers used for formatting log and diagnostic text."""

from __future__ import annotations

import re
from typing import Any, Iterable

__all__ = [
    "flags",
    "sprintf",
    "is_printable",
    "join",
    "replace_all",
    "split",
    "starts_with",
    "ends_with",
    "to_string",
    "trim",
]

# Whitespace as understood by the C locale's isspace().
_C_WHITESPACE = " \t\n\v\f\r"

_SPEC = re.compile(
    r"%(?P<flags>[-+ #0]*)"
    r"(?P<width>\*|\d+)?"
    r"(?:\.(?P<prec>\*|\d*))?"
    r"(?P<length>hh|h|ll|l|j|z|t|L|q)?"
    r"(?P<conv>[diouxXeEfFgGcs%])"
)


def flags(value: int, names: Iterable[tuple[int, str]]) -> str:
    """Render an ORed group of flags as text such as ``"FOO|BAR"``.

    Bits not covered by ``names`` are appended in hexadecimal.
    """
    if value == 0:
        return "0"
    parts: list[str] = []
    for bit, name in names:
        if value & bit:
            parts.append(name)
            value &= ~bit
    if value:
        parts.append(f"0x{value:x}")
    return join(parts, "|")


def _normalise_spec(match: re.Match[str]) -> str:
    conv = match.group("conv")
    if conv == "u":
        conv = "d"
    width = match.group("width") or ""
    prec = match.group("prec")
    precision = "" if prec is None else "." + (prec or "0")
    return f"%{match.group('flags')}{width}{precision}{conv}"


def sprintf(fmt: str, *args: Any) -> str:
    """Format ``args`` according to a printf-style format string.

    C length modifiers (``l``, ``ll``, ``h``, ``z`` and so on) are accepted
    and ignored; ``%u`` behaves like ``%d``.
    """
    return _SPEC.sub(_normalise_spec, fmt) % args


def _display(code: int) -> bool:
    return 32 <= code < 127


def is_printable(data: str | bytes | bytearray | memoryview) -> bool:
    """Tell whether text is fit to show on a single line.

    For ``str``, every character up to the first NUL must be printable ASCII.
    For bytes-like data, the last byte must be a NUL terminator and every
    byte before it printable ASCII.
    """
    if isinstance(data, str):
        text = data.partition("\0")[0]
        return all(_display(ord(ch)) for ch in text)
    raw = bytes(data)
    if not raw or raw[-1] != 0:
        return False
    return all(_display(b) for b in raw[:-1])


def join(components: Iterable[str], glue: str) -> str:
    """Concatenate ``components`` with ``glue`` between each pair."""
    return glue.join(components)


def replace_all(haystack: str, needle: str, replacement: str) -> str:
    """Return ``haystack`` with every occurrence of ``needle`` replaced.

    Replacements are made left to right and never rescanned.
    """
    if not needle:
        raise ValueError("needle must not be empty")
    return haystack.replace(needle, replacement)


def split(subject: str, delimiter: str) -> list[str]:
    """Split ``subject`` on a single-character ``delimiter``.

    Empty fields between or before delimiters are kept; a trailing delimiter
    does not produce a final empty field.
    """
    if len(delimiter) != 1:
        raise ValueError("delimiter must be a single character")
    parts = subject.split(delimiter)
    if parts[-1] == "":
        parts.pop()
    return parts


def starts_with(haystack: str, needle: str) -> bool:
    """Return True if ``haystack`` begins with ``needle``."""
    return haystack.startswith(needle)


def ends_with(haystack: str, needle: str) -> bool:
    """Return True if ``haystack`` ends with ``needle``."""
    return haystack.endswith(needle)


def to_string(value: Any) -> str:
    """Return the textual form of ``value``."""
    return str(value)


def trim(original: str) -> str:
    """Return ``original`` without leading or trailing whitespace."""
    return original.strip(_C_WHITESPACE)