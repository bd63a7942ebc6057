from __future__ import annotations

from datetime import datetime, timezone

from buildrelay.common.time_utils import (
    expiry_after,
    format_duration,
    format_iso8601,
    parse_iso8601,
    watchdog_duration,
)


def test_store_timestamps_are_utc_and_aware() -> None:
    parsed = parse_iso8601("2025-03-01T12:30:00.250Z")
    assert parsed == datetime(2025, 3, 1, 12, 30, 0, 250000, tzinfo=timezone.utc)
    assert parse_iso8601("2025-03-01T12:30:00").tzinfo is timezone.utc
    assert format_iso8601(parsed) == "2025-03-01T12:30:00Z"


def test_expiry_is_whole_days_after_now() -> None:
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert format_iso8601(expiry_after(7, now=now)) == "2025-03-08T00:00:00Z"


def test_durations() -> None:
    assert watchdog_duration(16200.9) == "16200s"
    assert watchdog_duration(-5) == "0s"
    assert format_duration(5400) == "90 minutes (1.50 hours)"
