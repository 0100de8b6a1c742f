"""Resolution of ``{{path}}`` markers against an execution context.

A string consisting of exactly one marker resolves to the raw value found at
the path, keeping its type. Markers embedded in longer strings are replaced by
their text form. Markers whose path cannot be found are left untouched so that
later stages (or humans reading logs) can see what was missing.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Mapping

FULL_MARKER = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")
MARKER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INDEX = re.compile(r"\[(\d+)\]")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def split_path(path: str) -> List[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``."""
    normalized = _INDEX.sub(r".\1", path.strip())
    return [part for part in normalized.split(".") if part]


def lookup(data: Any, path: str) -> Any:
    """Return the value at ``path`` or :data:`MISSING`."""
    parts = split_path(path)
    if not parts:
        return MISSING
    current = data
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if index < -len(current) or index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def get_value_by_path(data: Any, path: str, default: Any = None) -> Any:
    """Return the value at the dot ``path`` inside ``data`` or ``default``."""
    value = lookup(data, path)
    return default if value is MISSING else value


def to_text(value: Any) -> str:
    """Text form used when a value is interpolated into a longer string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _resolve_string(text: str, context: Any) -> Any:
    full = FULL_MARKER.match(text)
    if full:
        value = lookup(context, full.group(1))
        return text if value is MISSING else value

    def replace(match: re.Match) -> str:
        value = lookup(context, match.group(1))
        if value is MISSING:
            return match.group(0)
        return to_text(value)

    return MARKER.sub(replace, text)


def resolve(value: Any, context: Any) -> Any:
    """Recursively resolve markers in ``value``. Never mutates its inputs."""
    if isinstance(value, str):
        return _resolve_string(value, context)
    if isinstance(value, Mapping):
        return {key: resolve(item, context) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, context) for item in value]
    return value


def has_markers(value: Any) -> bool:
    """Return ``True`` when ``value`` contains any ``{{...}}`` marker."""
    return bool(find_unresolved(value))


def find_unresolved(value: Any) -> List[str]:
    """List the paths of every marker still present in ``value``."""
    found: List[str] = []
    _collect(value, found)
    return found


def _collect(value: Any, found: List[str]) -> None:
    if isinstance(value, str):
        found.extend(match.group(1) for match in MARKER.finditer(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect(item, found)
