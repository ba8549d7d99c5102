"""Calendar bucketing for meter readings.

Pure functions only: every bucket is derived from the timestamp and the
reference timezone, nothing else. Naive datetimes are treated as UTC, which is
what SQLite hands back for timezone-aware columns.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from meterhub.core.config import settings

DAY_KEY_FORMAT = "%Y-%m-%d"
MONTH_KEY_FORMAT = "%Y-%m"


def reference_timezone(name: str | None = None) -> tzinfo:
    """Resolve the configured reference timezone (UTC by default)."""
    name = name or settings.timezone
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision and a Z suffix."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_local(value: datetime, tz: tzinfo | None = None) -> datetime:
    return ensure_utc(value).astimezone(tz or reference_timezone())


def day_key(value: datetime, tz: tzinfo | None = None) -> str:
    """Format a timestamp as its YYYY-MM-DD day bucket."""
    return to_local(value, tz).strftime(DAY_KEY_FORMAT)


def month_key(value: datetime, tz: tzinfo | None = None) -> str:
    """Format a timestamp as its YYYY-MM month bucket."""
    return to_local(value, tz).strftime(MONTH_KEY_FORMAT)


def hour_of(value: datetime, tz: tzinfo | None = None) -> int:
    """Hour of day (0..23) in the reference timezone."""
    return to_local(value, tz).hour


def start_of_day(value: datetime, tz: tzinfo | None = None) -> datetime:
    """Local midnight of the timestamp's day, returned in UTC."""
    local = to_local(value, tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def minutes_since_midnight(value: datetime, tz: tzinfo | None = None) -> int:
    local = to_local(value, tz)
    return local.hour * 60 + local.minute


def previous_day_key(value: datetime, tz: tzinfo | None = None) -> str:
    return day_key(to_local(value, tz) - timedelta(days=1), tz)


def previous_month_key(value: datetime, tz: tzinfo | None = None) -> str:
    local = to_local(value, tz)
    first_of_month = local.replace(day=1)
    return month_key(first_of_month - timedelta(days=1), tz)


def reading_timestamp(server_time: datetime, offset_seconds: float) -> datetime:
    """Absolute sample time: server receive time minus the device-reported offset."""
    return ensure_utc(server_time) - timedelta(seconds=offset_seconds)
