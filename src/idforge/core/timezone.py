"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the single clock used for
record timestamps, so created_at/updated_at compare consistently across processes.
"""

import os
from datetime import datetime, timezone

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (columns are TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
