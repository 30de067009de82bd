from datetime import date, datetime, timezone


def now() -> datetime:
    """Current application time, always timezone-aware UTC"""
    return datetime.now(timezone.utc)


def today() -> date:
    return now().date()


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for DateTime(timezone=True) columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
