"""UTC time helpers.

All timestamps stored in creation meta are timezone-aware UTC ISO-8601 strings.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as ISO-8601 with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string, returning None for empty or malformed input.

    Naive values are assumed to be UTC. A trailing "Z" is accepted.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def elapsed_ms(started_at: str | None, ended_at: datetime) -> int | None:
    """Milliseconds between an ISO start timestamp and ``ended_at``.

    Returns None when the start is unknown or lies in the future.
    """
    start = parse_iso(started_at)
    if start is None or ended_at < start:
        return None
    return int((ended_at - start).total_seconds() * 1000)
