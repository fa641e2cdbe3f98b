"""UTC timestamp helpers shared by storage and sync code."""
from datetime import datetime, timezone
from typing import Optional

ISO_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as a fixed-width UTC string.

    The fixed width keeps lexicographic order equal to chronological order,
    which the DynamoDB ``next_run_at`` comparisons rely on.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)
