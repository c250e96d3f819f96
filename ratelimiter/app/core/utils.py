"""Time helpers shared by the limiter services."""

import math
import time
from datetime import datetime, timezone
from typing import Optional

MS_PER_HOUR = 3600000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def hour_bucket(timestamp_ms: Optional[int] = None) -> int:
    """Hour index used to bucket usage statistics.

    Examples:
        >>> hour_bucket(7200000)
        2
    """
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    return timestamp_ms // MS_PER_HOUR


def seconds_ceil(duration_ms: int) -> int:
    """Round a millisecond duration up to whole seconds.

    Examples:
        >>> seconds_ceil(1500)
        2
    """
    return math.ceil(duration_ms / 1000)


def ms_to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
