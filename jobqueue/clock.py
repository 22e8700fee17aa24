"""Time helpers. All stored timestamps are naive UTC."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching the stored column type."""
    return datetime.now(UTC).replace(tzinfo=None)
