from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds (MongoDB's datetime precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Mongo hands back naive UTC datetimes; make them aware so they compare with utcnow()."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Naive UTC datetime for use inside raw query filters."""
    return ensure_utc(value).replace(tzinfo=None)
