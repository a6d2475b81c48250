from datetime import datetime, timezone
import math
import os
import zoneinfo

def get_current_time():
    """
    Get current time in configured timezone.
    Falls back to UTC if TZ environment variable is not set.
    """
    tz_name = os.getenv('TZ', 'UTC')
    try:
        tz = zoneinfo.ZoneInfo(tz_name)
    except zoneinfo.ZoneInfoNotFoundError:
        tz = timezone.utc
    return datetime.now(tz)

def utcnow():
    """Timezone-aware current UTC time. Session timestamps are always UTC."""
    return datetime.now(timezone.utc)

def ensure_utc(value):
    """
    Interpret a datetime as UTC.
    Naive values are assumed to already be UTC (SQLite drops tzinfo on the way out).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def to_naive_utc(value):
    """
    Convert to a naive UTC datetime.
    This is used for SQLite compatibility which doesn't support timezone-aware datetimes.
    """
    return ensure_utc(value).replace(tzinfo=None)

def compute_duration_seconds(start_time, end_time):
    """
    Whole seconds between start and end, floored and clamped at zero.

    Clock skew between the machine that opened a session and the one closing it
    can produce a negative difference; that is reported as 0, never negative.
    """
    delta = (ensure_utc(end_time) - ensure_utc(start_time)).total_seconds()
    return max(0, math.floor(delta))

def sum_durations(durations):
    """Sum closed-session durations, skipping open sessions (None)."""
    return sum(d for d in durations if d is not None)

def format_hms(total_seconds):
    """Format seconds as zero-padded HH:MM:SS, dropping any fraction"""
    total_seconds = max(0, int(math.floor(total_seconds or 0)))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

def format_ms(total_seconds):
    """Format seconds as MM:SS; minutes keep growing past 59"""
    total_seconds = max(0, int(math.floor(total_seconds or 0)))
    minutes = total_seconds // 60
    seconds = total_seconds % 60
    return f"{minutes:02d}:{seconds:02d}"
