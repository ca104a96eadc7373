"""
Time utilities.

All datetimes in the store are naive UTC, derived from block timestamps
wherever an event drives them.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current wall-clock time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Union[int, float]) -> datetime:
    """
    Convert a unix timestamp (e.g. a block timestamp) to naive UTC.

    Examples:
        >>> from_unix(1704067200)
        datetime.datetime(2024, 1, 1, 0, 0)
    """
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with an explicit UTC suffix, or None."""
    if dt is None:
        return None
    return dt.replace(microsecond=0).isoformat() + 'Z'
