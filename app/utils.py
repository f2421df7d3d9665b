"""
Utility functions shared by the forwarding code.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def format_duration(seconds: Optional[int]) -> str:
    """
    Render a call length in Chinese units.

    0 -> "0秒", 65 -> "1分5秒", 3605 -> "1小时0分5秒". Leading zero units
    are omitted, inner ones are kept.
    """
    seconds = int(seconds or 0)
    if seconds <= 0:
        return "0秒"

    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if hours:
        parts.append(f"{hours}小时")
    if hours or minutes:
        parts.append(f"{minutes}分")
    parts.append(f"{secs}秒")
    return "".join(parts)


def format_local_time(value: Optional[datetime]) -> str:
    """Format a timestamp in server-local time for display."""
    if value is None:
        value = datetime.now(timezone.utc)
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; they are stored as UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def split_list(value: Any) -> list[str]:
    """
    Normalize a comma separated string or a list into non-empty strings.

    "a, b,,c" -> ["a", "b", "c"]; None -> []
    """
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    else:
        items = value
    return [str(item).strip() for item in items if item is not None and str(item).strip()]
