# clock.py
from datetime import datetime, timezone

from dateutil.parser import isoparse

from .errors import InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(value: datetime) -> datetime:
    """Instants are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_db(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value) -> datetime:
    """Parse an absolute instant. Wall-clock values without an offset are rejected."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = isoparse(str(value).strip())
        except (ValueError, OverflowError):
            raise InvalidInput("start_at must be a valid ISO datetime with an offset")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise InvalidInput("start_at must include a timezone offset")
    return parsed.astimezone(timezone.utc)
