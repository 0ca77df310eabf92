from datetime import datetime, timedelta, timezone
from typing import Optional


ONE_MILLISECOND = timedelta(milliseconds=1)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    # MongoDB keeps millisecond precision; truncate so stored and returned values agree
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_millis(value: datetime) -> int:
    return (as_utc(value) - EPOCH) // ONE_MILLISECOND


def from_millis(value: int) -> datetime:
    return EPOCH + value * ONE_MILLISECOND
