"""Scalar unit conversion between compatible unit families.

Two families are supported: byte sizes (decimal kb..eb and binary
kib..eib) and durations (ns..d). Unit names are case-insensitive.
Converting across families raises ValueError.
"""

from __future__ import annotations

_BYTE_FACTORS: dict[str, float] = {
    "b": 1,
    "byte": 1,
    "bytes": 1,
    "kb": 1000**1,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "pb": 1000**5,
    "eb": 1000**6,
    "kib": 1024**1,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
    "pib": 1024**5,
    "eib": 1024**6,
}

# Seconds per unit
_TIME_FACTORS: dict[str, float] = {
    "ns": 1e-9,
    "nanosecond": 1e-9,
    "nanoseconds": 1e-9,
    "us": 1e-6,
    "μs": 1e-6,
    "microsecond": 1e-6,
    "microseconds": 1e-6,
    "ms": 1e-3,
    "millisecond": 1e-3,
    "milliseconds": 1e-3,
    "s": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
}


def _normalize(unit: str) -> str:
    return unit.strip().lower()


def is_byte_unit(unit: str) -> bool:
    """Return True if *unit* belongs to the byte-size family."""
    return _normalize(unit) in _BYTE_FACTORS


def is_time_unit(unit: str) -> bool:
    """Return True if *unit* belongs to the duration family."""
    return _normalize(unit) in _TIME_FACTORS


def convert_unit(value: float, from_unit: str, to_unit: str) -> float:
    """Convert *value* from one unit to another within the same family.

    An empty unit on either side, or two units that compare equal ignoring
    case, returns the value unchanged.

    Args:
        value: Scalar to convert.
        from_unit: Source unit (e.g. 'KiB', 'ms').
        to_unit: Target unit (e.g. 'B', 's').

    Returns:
        Converted value (unrounded).

    Raises:
        ValueError: If the units belong to different or unknown families.
    """
    if not from_unit or not to_unit:
        return value
    src = _normalize(from_unit)
    dst = _normalize(to_unit)
    if src == dst:
        return value

    for factors in (_BYTE_FACTORS, _TIME_FACTORS):
        if src in factors and dst in factors:
            return value * factors[src] / factors[dst]

    raise ValueError(f"cannot convert between units: {from_unit} -> {to_unit}")


def round_value(value: float, precision: int = 2) -> float:
    """Round to *precision* decimal places."""
    return round(value, precision)


def format_unit_value(value: float, unit: str, precision: int = 2) -> str:
    """Render a value with its unit suffix, e.g. ``'12.5 GiB'``."""
    rendered = f"{round_value(value, precision):.{precision}f}"
    if "." in rendered:
        rendered = rendered.rstrip("0").rstrip(".")
    if not unit:
        return rendered
    if unit == "%":
        return f"{rendered}%"
    return f"{rendered} {unit}"
