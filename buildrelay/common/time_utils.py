from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_iso8601(dt_str: str) -> datetime:
    """Parse a store timestamp into an aware datetime.

    Accepts the results service form (``2024-01-01T00:00:00.1234567Z``) as well
    as ``isoformat()`` output. Naive values are taken to be UTC.
    """
    if dt_str.endswith("Z"):
        dt_str = dt_str[:-1] + "+00:00"
    dt = datetime.fromisoformat(dt_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_iso8601(dt: datetime) -> str:
    """UTC, whole seconds, ``Z`` suffix."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def expiry_after(days: int, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(days=days)


def watchdog_duration(seconds: float) -> str:
    # coreutils timeout syntax; fractions are dropped, never rounded up
    return f"{int(max(0.0, seconds))}s"


def format_duration(seconds: float) -> str:
    """Render a duration as minutes plus hours, e.g. '90 minutes (1.50 hours)'."""
    seconds = max(0.0, float(seconds))
    return f"{seconds / 60:.0f} minutes ({seconds / 3600:.2f} hours)"
