"""Window alignment service.

Every orb record is keyed by (topic, window_end, window_minutes). Flooring
window_end to a 5-minute grid means repeated invocations inside one slot
resolve to the same key, so upserts on that key are naturally idempotent.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

GRID_MINUTES = 5
MIN_WINDOW_MINUTES = 5
MAX_WINDOW_MINUTES = 24 * 60
DEFAULT_WINDOW_MINUTES = 60


@dataclass(frozen=True)
class Window:
    end: datetime
    minutes: int


def aligned_window_end(now: Optional[datetime] = None) -> datetime:
    """Floor ``now`` (UTC) to the 5-minute grid."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    step = GRID_MINUTES * 60
    aligned = math.floor(now.timestamp() / step) * step
    return datetime.fromtimestamp(aligned, tz=timezone.utc)


def clamp_window_minutes(value: Any, default: int = DEFAULT_WINDOW_MINUTES) -> int:
    """Clamp a requested window length to [5, 1440] minutes.

    Never raises: missing, non-numeric, non-finite or non-positive input
    falls back to the default.
    """
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(n) or n <= 0:
        return default
    if n < MIN_WINDOW_MINUTES:
        return MIN_WINDOW_MINUTES
    if n > MAX_WINDOW_MINUTES:
        return MAX_WINDOW_MINUTES
    return int(round(n))


def align_window(
    now: Optional[datetime] = None,
    minutes: Any = None,
    default_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> Window:
    return Window(
        end=aligned_window_end(now),
        minutes=clamp_window_minutes(minutes, default=default_minutes),
    )
