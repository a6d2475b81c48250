from datetime import datetime, timedelta, timezone

import pytest

from avanti.utils.datetime_utils import (
    compute_duration_seconds,
    ensure_utc,
    format_hms,
    format_ms,
    sum_durations,
    to_naive_utc,
)

T0 = datetime(2026, 10, 1, 9, 0, 0, tzinfo=timezone.utc)


def test_duration_is_floored():
    assert compute_duration_seconds(T0, T0 + timedelta(seconds=59, milliseconds=999)) == 59


def test_duration_never_negative():
    assert compute_duration_seconds(T0, T0 - timedelta(seconds=30)) == 0


def test_duration_mixes_naive_and_aware():
    naive_start = T0.replace(tzinfo=None)
    assert compute_duration_seconds(naive_start, T0 + timedelta(minutes=2)) == 120


def test_duration_across_timezones():
    plus_two = timezone(timedelta(hours=2))
    end = (T0 + timedelta(seconds=10)).astimezone(plus_two)
    assert compute_duration_seconds(T0, end) == 10


def test_sum_durations_skips_open_sessions():
    assert sum_durations([30, None, 12, None]) == 42
    assert sum_durations([]) == 0


@pytest.mark.parametrize("seconds, expected", [
    (0, "00:00:00"),
    (59.9, "00:00:59"),
    (3661, "01:01:01"),
    (100 * 3600, "100:00:00"),
    (-5, "00:00:00"),
    (None, "00:00:00"),
])
def test_format_hms(seconds, expected):
    assert format_hms(seconds) == expected


def test_format_ms_keeps_counting_minutes():
    assert format_ms(65) == "01:05"
    assert format_ms(3600) == "60:00"


def test_to_naive_utc_converts_offset():
    local = datetime(2026, 10, 1, 11, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(local) == datetime(2026, 10, 1, 9, 0, 0)
    assert ensure_utc(datetime(2026, 10, 1, 9, 0)) == T0
