"""
Datetime helpers shared by the provider clients and sync services.

All timestamps are stored as naive UTC. Stripe reports unix seconds and
PayPal reports ISO-8601 strings with a trailing "Z"; both are normalized
here so comparisons against database values never mix aware and naive
datetimes.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Any) -> Optional[datetime]:
    """Convert Stripe unix seconds to naive UTC; None for missing/invalid."""
    if ts is None or isinstance(ts, bool):
        return None
    if not isinstance(ts, (int, float)):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a PayPal ISO-8601 timestamp to naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
