"""Provide utility helpers for timestamps and bounded integers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clamp_int(value: Any, lower: int, upper: int, default: int = 0) -> int:
    """Coerce `value` to an int within `[lower, upper]`.

    Booleans, non-numeric strings and non-finite floats fall back to `default`.
    """
    if isinstance(value, bool) or value is None:
        number = default
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float):
        number = int(value) if value == value and value not in (float("inf"), float("-inf")) else default
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            number = default
    else:
        number = default
    return max(lower, min(upper, number))
