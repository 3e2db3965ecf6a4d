"""Core utility functions shared across modules."""

from __future__ import annotations

from typing import Any, Mapping, Optional

_MISSING = object()


def _resolve_path(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return _MISSING
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return _MISSING
    return current


def first_present(
    data: Optional[Mapping[str, Any]], *paths: str, default: Any = None
) -> Any:
    """Return the value at the first dotted path that is present and not None.

    Paths are tried in the order given; an explicit ``None`` counts as absent,
    while falsy values such as ``0`` or ``""`` are returned as-is.

    Examples:
        >>> first_present({"args": {"pulse_ms": 900}}, "pulse_ms", "args.pulse_ms", default=2000)
        900
        >>> first_present({"pulse_ms": 0}, "pulse_ms", "args.pulse_ms", default=2000)
        0
        >>> first_present({}, "pulse_ms", default=2000)
        2000
    """
    if not data:
        return default

    for path in paths:
        value = _resolve_path(data, path)
        if value is not _MISSING and value is not None:
            return value
    return default
