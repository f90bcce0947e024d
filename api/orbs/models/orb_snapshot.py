"""Orb snapshot model.

Exactly one row per topic: what the UI renders. Only written at the end
of a successful topic run.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OrbSnapshot(Base):
    __tablename__ = "orb_snapshots"

    topic_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("topics.id"), primary_key=True
    )
    keywords: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)), nullable=False, server_default="{}"
    )
    sentiment_label: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    resting_color: Mapped[str] = mapped_column(String(16), nullable=False)
    display_color: Mapped[str] = mapped_column(String(16), nullable=False)

    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    volume: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    # Capped per-hour velocity, never the raw value
    velocity: Mapped[float] = mapped_column(Float, nullable=False, server_default="0.0")
    diversity: Mapped[float] = mapped_column(Float, nullable=False, server_default="0.0")
    top_sources: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    top_items: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")

    state_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    output_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    label_status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="stale"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
