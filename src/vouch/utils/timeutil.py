"""UTC time helpers; stored timestamps are fixed-width ISO strings so they sort lexically."""

from datetime import datetime, timezone
from typing import Optional

DB_TIME_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def to_unix(value: datetime) -> int:
    return int(ensure_utc(value).timestamp())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None
