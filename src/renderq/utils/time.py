"""Time helpers shared across renderq.

Wall-clock timestamps are timezone-aware UTC; durations use the monotonic
clock so that system clock changes never shorten a timeout.
"""

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def epoch_ms() -> int:
    """Milliseconds since the epoch, used for persisted timestamps."""
    return int(time.time() * 1000)
