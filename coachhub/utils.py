"""Small helpers shared by the service modules."""

from datetime import datetime, timezone

import bleach


def sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(value):
    """Parse an ISO-8601 string into an aware UTC datetime.

    Returns None when the value is empty or unparseable.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)
