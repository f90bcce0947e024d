"""Velocity calculation service.

Velocity is the relative change in volume between a window and the most
recent prior window for the same topic and window length:

  raw       -- (current - previous) / previous, the gating signal
  per_hour  -- raw normalized to a 60-minute elapsed interval
  snapshot  -- per_hour clamped to +/- cap, only ever shown in the UI

Division by zero and non-finite values always degrade to 0.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

DEFAULT_UI_CAP = 5.0


@dataclass(frozen=True)
class Velocity:
    raw: float
    per_hour: float
    snapshot: float
    elapsed_minutes: float


def _finite(x: float) -> float:
    return x if math.isfinite(x) else 0.0


def clamp(n: float, low: float, high: float) -> float:
    return max(low, min(high, n))


def minutes_between(previous: Optional[datetime], current: datetime) -> float:
    """Minutes from ``previous`` to ``current``; 0 when there is no previous."""
    if previous is None:
        return 0.0
    return _finite((current - previous).total_seconds() / 60.0)


def compute_velocity(
    volume: float,
    prev_volume: Optional[float],
    prev_window_end: Optional[datetime],
    window_end: datetime,
    cap: float = DEFAULT_UI_CAP,
) -> Velocity:
    volume = _finite(float(volume or 0))
    prev = _finite(float(prev_volume or 0))

    raw = (volume - prev) / prev if prev > 0 else 0.0
    raw = _finite(raw)

    elapsed = minutes_between(prev_window_end, window_end)
    per_hour = _finite(raw * (60.0 / elapsed)) if elapsed > 0 else 0.0

    cap = abs(cap)
    return Velocity(
        raw=raw,
        per_hour=per_hour,
        snapshot=clamp(per_hour, -cap, cap),
        elapsed_minutes=elapsed,
    )
