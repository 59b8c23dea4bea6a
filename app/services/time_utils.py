"""
UTC helpers. SQLite hands back naive datetimes even for timezone=True columns.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_remote_timestamp(raw: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (with 'Z' or offset) or epoch milliseconds from a platform payload."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, (int, float)):
        seconds = raw / 1000.0 if raw > 10_000_000_000 else float(raw)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None
