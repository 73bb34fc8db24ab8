"""UTC timezone enforcement.

Sets TZ=UTC for the process and provides the naive-UTC clock used for every
stored timestamp (columns are ``timestamp without time zone``).
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_millis(value: datetime) -> int:
    """Milliseconds since epoch for a naive-UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)
