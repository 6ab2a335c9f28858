# Utility functions for the scheduling engine
# ID generation, instant normalization, RFC3339 handling

import uuid
from datetime import datetime, timezone

from dateutil import parser as date_parser


# ============================================================================
# ID GENERATION
# ============================================================================


def generate_id() -> str:
    """Generate an entity identifier (UUID v4, hex string form)."""
    return str(uuid.uuid4())


# ============================================================================
# INSTANTS
# ============================================================================


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to an absolute UTC instant.

    Naive datetimes are interpreted as UTC, which is also how SQLite hands
    back stored timestamps.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    """Current instant in UTC."""
    return datetime.now(timezone.utc)


def from_timestamp_ms(value: int) -> datetime:
    """Convert milliseconds since the epoch to a UTC instant."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_timestamp_ms(dt: datetime) -> int:
    """Convert an instant to milliseconds since the epoch."""
    return int(ensure_utc(dt).timestamp() * 1000)


# ============================================================================
# RFC3339 DATETIME HANDLING
# ============================================================================


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC3339 datetime string into a UTC instant.

    Supports:
    - Full datetime: 2024-01-15T10:30:00Z
    - With offset: 2024-01-15T10:30:00-05:00
    - With microseconds: 2024-01-15T10:30:00.123456Z
    """
    return ensure_utc(date_parser.isoparse(value))


def format_rfc3339(dt: datetime) -> str:
    """Format an instant as an RFC3339 string in UTC with a Z suffix."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")

