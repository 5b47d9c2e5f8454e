"""Timestamp normalisation for values read back from the database."""

from __future__ import annotations

from datetime import datetime, timezone


def ensure_aware(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands ``DateTime(timezone=True)`` columns back naive; those are
    stored as UTC, so they are tagged rather than converted.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["ensure_aware"]
