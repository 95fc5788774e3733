from __future__ import annotations

from datetime import datetime, timezone
import os
from typing import Optional


def utcnow() -> datetime:
    """Return aware UTC datetime.

    ``BITREDICT_FROZEN_NOW`` (ISO timestamp) pins the clock for replays.
    """
    frozen = os.getenv("BITREDICT_FROZEN_NOW")
    if frozen:
        try:
            return ensure_aware_utc(datetime.fromisoformat(frozen))
        except ValueError:
            return datetime.now(timezone.utc)
    return datetime.now(timezone.utc)


def ensure_aware_utc(value: datetime) -> datetime:
    """
    Ensure datetime is timezone-aware in UTC.

    - If naive, assume it is UTC and attach tzinfo.
    - If aware, convert to UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert datetime to aware UTC; pass None through."""
    if value is None:
        return None
    return ensure_aware_utc(value)


def from_epoch(seconds: int | None) -> Optional[datetime]:
    if seconds is None or int(seconds) <= 0:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def to_epoch(value: datetime) -> int:
    return int(ensure_aware_utc(value).timestamp())
