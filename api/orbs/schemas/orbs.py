"""Pydantic schemas for the orbs pipeline.

Collaborator payloads (state calc, label candidates) are validated here so
that malformed rows fail loudly at the store boundary instead of leaking
undefined fields into the pipeline.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StateCalc(BaseModel):
    """One row of ``fn_orb_state_calc``."""

    volume: int = Field(ge=0)
    diversity: float = 0.0
    top_sources: list[Any] = Field(default_factory=list)
    top_items: list[Any] = Field(default_factory=list)
    input_hash: str = Field(min_length=1)

    # A window with no items aggregates to NULL
    @field_validator("volume", "diversity", mode="before")
    @classmethod
    def _null_number(cls, v):
        return 0 if v is None else v

    @field_validator("top_sources", "top_items", mode="before")
    @classmethod
    def _null_list(cls, v):
        return [] if v is None else v


class LabelCandidateItem(BaseModel):
    id: str
    title: str
    feed_id: Optional[str] = None
    published_at: str


class LabelCandidates(BaseModel):
    """One row of ``fn_orb_label_candidates``."""

    items: list[LabelCandidateItem] = Field(default_factory=list)
    label_input_hash: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def _null_items(cls, v):
        return [] if v is None else v


class RecomputeRequest(BaseModel):
    # Non-numeric or out-of-range values are clamped, not rejected
    window_minutes: Optional[Any] = None


class TopicResult(BaseModel):
    """Per-topic outcome of one recompute invocation."""

    topic_id: uuid.UUID
    ok: bool

    window_end: Optional[datetime] = None
    window_minutes: Optional[int] = None
    wants_sentiment: Optional[bool] = None

    volume: Optional[int] = None
    diversity: Optional[float] = None

    velocity: Optional[float] = None  # raw percent delta
    velocity_per_hour: Optional[float] = None
    velocity_snapshot: Optional[float] = None  # capped, what the UI sees
    elapsed_minutes: Optional[float] = None
    prev_window_end: Optional[datetime] = None
    prev_volume: Optional[int] = None

    cadence_minutes: Optional[int] = None
    last_label_attempt_at: Optional[datetime] = None
    time_gate_ok: Optional[bool] = None
    change_gate_ok: Optional[bool] = None
    min_vol_ok: Optional[bool] = None
    first_label_ok: Optional[bool] = None
    regen_ok: Optional[bool] = None

    did_label: Optional[bool] = None
    label_status: Optional[str] = None
    label_attempted: Optional[bool] = None
    cand_count: Optional[int] = None
    cand_error: Optional[str] = None
    generation_error: Optional[str] = None
    generation_retry_attempted: Optional[bool] = None
    generation_retry_succeeded: Optional[bool] = None
    label_insert_error: Optional[str] = None

    stage: Optional[str] = None
    error: Optional[str] = None


class RecomputeResponse(BaseModel):
    ok: bool = True
    window_end: datetime
    window_minutes: int
    topics: int
    results: list[TopicResult]


class OrbSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    topic_id: uuid.UUID
    slug: str
    name: str
    keywords: list[str]
    sentiment_label: Optional[str] = None
    resting_color: str
    display_color: str
    velocity: float
    volume: int
    diversity: float
    top_sources: list[Any] = Field(default_factory=list)
    top_items: list[Any] = Field(default_factory=list)
    label_status: str
    window_end: datetime
    window_minutes: int
    updated_at: datetime
