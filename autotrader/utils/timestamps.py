# autotrader/utils/timestamps.py - Engine timestamp convention
"""Every timestamp inside the engine is a naive datetime in UTC.

Feeds may deliver tz-aware timestamps; they are converted once, when the
event bus stamps the event, so comparisons never mix the two kinds.
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current wall-clock time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_engine_time(timestamp: datetime) -> datetime:
    """Convert a tz-aware timestamp to naive UTC; naive ones are taken as UTC."""
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(timezone.utc).replace(tzinfo=None)
