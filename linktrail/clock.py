"""UTC time helpers shared by the store, cache snapshots and analytics."""

import datetime

__all__ = ["utcnow", "as_utc", "day_bucket"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are taken to already be UTC; SQLite hands them back that way.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def day_bucket(value: datetime.datetime) -> str:
    return as_utc(value).date().isoformat()
