"""Label gate evaluation.

Decides whether a topic should attempt a new label this run. Two paths:

  bootstrap     -- no promoted label yet: cadence elapsed and volume above
                   a low floor. Not gated on change, so a quiet topic still
                   gets its first label.
  regeneration  -- a promoted label exists: cadence elapsed AND a material
                   change in volume AND a minimum volume.

The cadence clock is time since the last label *attempt*, not the last
promotion.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class GateThresholds:
    change_velocity: float = 0.35
    change_jump: float = 0.25
    change_jump_min_volume: int = 30
    min_volume: int = 12
    bootstrap_min_volume: int = 10

    @classmethod
    def from_settings(cls, settings) -> "GateThresholds":
        return cls(
            change_velocity=settings.change_velocity_threshold,
            change_jump=settings.change_jump_threshold,
            change_jump_min_volume=settings.change_jump_min_volume,
            min_volume=settings.min_volume,
            bootstrap_min_volume=settings.bootstrap_min_volume,
        )


@dataclass(frozen=True)
class GateDecision:
    time_gate_ok: bool
    change_gate_ok: bool
    min_vol_ok: bool
    first_label_ok: bool
    regen_ok: bool

    @property
    def attempt(self) -> bool:
        return self.first_label_ok or self.regen_ok

    def as_dict(self) -> dict:
        return asdict(self)


def time_gate(now: datetime, last_attempt_at: Optional[datetime], cadence_minutes: int) -> bool:
    """True when no label was ever attempted or the cadence has elapsed."""
    if last_attempt_at is None:
        return True
    return (now - last_attempt_at).total_seconds() >= cadence_minutes * 60


def change_gate(
    volume: int,
    prev_volume: int,
    raw_velocity: float,
    thresholds: GateThresholds,
) -> bool:
    # Uses raw velocity; the per-hour value depends on run spacing
    if abs(raw_velocity) >= thresholds.change_velocity:
        return True
    if volume >= thresholds.change_jump_min_volume and prev_volume > 0:
        return abs(volume - prev_volume) / prev_volume >= thresholds.change_jump
    return False


def evaluate_gates(
    now: datetime,
    last_attempt_at: Optional[datetime],
    cadence_minutes: int,
    volume: int,
    prev_volume: int,
    raw_velocity: float,
    has_promoted: bool,
    thresholds: GateThresholds = GateThresholds(),
) -> GateDecision:
    time_ok = time_gate(now, last_attempt_at, cadence_minutes)
    change_ok = change_gate(volume, prev_volume, raw_velocity, thresholds)
    min_vol_ok = volume >= thresholds.min_volume

    return GateDecision(
        time_gate_ok=time_ok,
        change_gate_ok=change_ok,
        min_vol_ok=min_vol_ok,
        first_label_ok=not has_promoted and time_ok and volume >= thresholds.bootstrap_min_volume,
        regen_ok=has_promoted and time_ok and change_ok and min_vol_ok,
    )
