"""Time utilities with timezone-aware defaults."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC time with tzinfo."""

    return datetime.now(timezone.utc)


def to_storage(value: datetime | None) -> datetime | None:
    """Normalise to naive UTC, the form every DateTime column stores."""

    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_storage(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert provider epoch seconds to an aware UTC datetime."""

    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


__all__ = ["utc_now", "to_storage", "from_storage", "from_timestamp"]
