"""Timestamp timeline helpers for Session Recorder.

Recording rows carry loosely formatted timestamps (ISO 8601 from the capture
provider, whatever the backend returned for synced rows). This module turns a
list of such rows into a timeline of whole-second offsets, which is what the
submission pipeline uses as the canonical session duration.

Example:
    >>> rows = [{"timestamp": "2025-01-01T10:00:00Z"},
    ...         {"timestamp": "2025-01-01T10:00:12Z"}]
    >>> latest_timeline_seconds(rows)
    12
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from dateutil import parser as dateutil_parser


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """Parse a timestamp string into epoch seconds.

    Naive timestamps are treated as UTC so ordering stays stable across
    machines.

    Args:
        value: Timestamp string, or None.

    Returns:
        Epoch seconds as float, or None if the value cannot be parsed.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = dateutil_parser.isoparse(value)
    except (ValueError, OverflowError):
        try:
            parsed = dateutil_parser.parse(value)
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.timestamp()
    except (OverflowError, OSError, ValueError):
        return None


def build_timeline(items: Sequence[Dict[str, Any]]) -> List[Tuple[Dict[str, Any], int]]:
    """Order items by timestamp and assign each a whole-second offset.

    Items with a parseable timestamp come first, in time order. Unparseable
    items follow in their original order. Offsets are measured from the
    earliest parsed timestamp and floored to whole seconds. An item without a
    parsed timestamp, or any item when nothing parsed, uses its position in
    the sorted list as its offset.

    Args:
        items: Rows with a "timestamp" key.

    Returns:
        List of (item, offset_seconds) tuples in timeline order.
    """
    indexed = [
        (item, index, parse_timestamp(item.get("timestamp")))
        for index, item in enumerate(items)
    ]
    # Stable sort: unparsed items keep their input order
    indexed.sort(key=lambda entry: (entry[2] is None, entry[2] or 0.0, entry[1]))

    first = next((entry[2] for entry in indexed if entry[2] is not None), None)

    timeline = []
    for position, (item, _, parsed) in enumerate(indexed):
        if first is not None and parsed is not None:
            offset = max(0, int((parsed - first) // 1))
        else:
            offset = position
        timeline.append((item, offset))
    return timeline


def latest_timeline_seconds(items: Sequence[Dict[str, Any]]) -> int:
    """Offset of the last item on the timeline, 0 for an empty list."""
    timeline = build_timeline(items)
    if not timeline:
        return 0
    return timeline[-1][1]


def utc_now_iso() -> str:
    """Current time as an ISO 8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
