"""Timestamp helpers.

All timestamps handled by the engine are UTC ISO-8601 strings with
millisecond precision and a trailing "Z", e.g. "2024-01-15T10:00:00.000Z".
"""

from datetime import datetime, timezone


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return to_utc_iso(datetime.now(timezone.utc))


def to_utc_iso(dt: datetime) -> str:
    """Convert datetime to a UTC ISO-8601 string.

    Args:
        dt: Datetime (timezone-aware or naive)

    Returns:
        ISO-8601 string in UTC with millisecond precision
    """
    if dt.tzinfo is None:
        # Assume UTC if naive
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_timestamp(value: object) -> str | None:
    """Coerce a loosely-typed timestamp payload value.

    Strings are kept as-is (blank strings become None), datetimes are
    converted to UTC ISO strings, everything else is treated as missing.
    """
    if isinstance(value, datetime):
        return to_utc_iso(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
