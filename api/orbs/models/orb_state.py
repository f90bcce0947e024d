"""Orb signal state model.

One row per (topic, window_end, window_minutes). Upserted by the orbs
worker on every run so repeated runs inside one 5-minute slot converge
on the same row.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OrbState(Base):
    __tablename__ = "orb_state"
    __table_args__ = (
        UniqueConstraint(
            "topic_id", "window_end", "window_minutes",
            name="uq_orb_state_topic_window",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    topic_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("topics.id"), nullable=False
    )
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    volume: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    diversity: Mapped[float] = mapped_column(Float, nullable=False, server_default="0.0")
    top_sources: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    top_items: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Raw percent change vs the previous window, and the per-hour rate
    velocity: Mapped[float] = mapped_column(Float, nullable=False, server_default="0.0")
    velocity_per_hour: Mapped[float] = mapped_column(
        Float, nullable=False, server_default="0.0"
    )

    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orb_runs.id"), nullable=True
    )
