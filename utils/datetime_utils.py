import pytz
from datetime import datetime, date, time, timedelta

utc = pytz.utc


def get_timezone(name):
    """Resolve a timezone name, raising pytz.UnknownTimeZoneError if invalid"""
    if isinstance(name, pytz.BaseTzInfo):
        return name
    return pytz.timezone(name or "UTC")


def ensure_timezone_aware(dt, target_timezone=utc):
    """Ensure datetime object is timezone-aware and in the target timezone"""
    if dt is None:
        return None

    if isinstance(dt, str):
        # If it's a string, parse it first
        dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))

    if dt.tzinfo is not None:
        return dt.astimezone(target_timezone)
    else:
        # Naive values come back from SQLite; they were written as UTC
        return utc.localize(dt).astimezone(target_timezone)


def now_utc():
    """Get current datetime in UTC"""
    return datetime.now(utc)


def local_date(dt, tz=utc):
    """Calendar date of a moment as seen in the given timezone"""
    return ensure_timezone_aware(dt, get_timezone(tz)).date()


def local_day_start(day: date, tz=utc) -> datetime:
    """UTC instant at which the given local calendar day begins"""
    tz = get_timezone(tz)
    return tz.localize(datetime.combine(day, time.min)).astimezone(utc)


def local_day_bounds(day: date, tz=utc):
    """Half-open [start, end) UTC range covering one local calendar day"""
    return local_day_start(day, tz), local_day_start(day + timedelta(days=1), tz)


def trailing_days(today: date, count: int):
    """The `count` calendar days ending with today, oldest first"""
    return [today - timedelta(days=offset) for offset in range(count - 1, -1, -1)]


def isoformat_utc(dt):
    """Serialize a stored timestamp as an ISO-8601 UTC string"""
    if dt is None:
        return None
    return ensure_timezone_aware(dt).isoformat()
