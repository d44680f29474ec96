"""ISO-8601 timestamp helpers shared by the stores and services."""

from __future__ import annotations

from datetime import UTC, datetime


def to_iso(value: datetime) -> str:
    """Format an aware datetime as UTC ISO 8601 with a Z suffix."""
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return to_iso(datetime.now(UTC))


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
