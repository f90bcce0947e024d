"""Orbs tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates topics, orb_runs, orb_state, orb_labels and orb_snapshots.
The aggregate and candidate functions (fn_orb_state_calc,
fn_orb_label_candidates, fn_item_categories_backfill_recent) live with the
ingestion schema and are not managed here.

Written manually (not via autogenerate) consistent with project migration policy.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

from alembic import op

revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    op.create_table(
        "topics",
        _id_column(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("orb_color", sa.String(16), nullable=True),
        sa.Column("cadence_minutes", sa.Integer(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("uses_sentiment_color", sa.Boolean(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "orb_runs",
        _id_column(),
        sa.Column("topic_id", UUID(as_uuid=True), sa.ForeignKey("topics.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="started"),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_minutes", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(50), nullable=True),
        sa.Column("token_estimate", sa.Integer(), nullable=True),
        sa.Column("output_hash", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_orb_runs_topic_started", "orb_runs", ["topic_id", "started_at"])

    op.create_table(
        "orb_state",
        _id_column(),
        sa.Column("topic_id", UUID(as_uuid=True), sa.ForeignKey("topics.id"), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_minutes", sa.Integer(), nullable=False),
        sa.Column("volume", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("diversity", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("top_sources", JSONB(), nullable=False, server_default="[]"),
        sa.Column("top_items", JSONB(), nullable=False, server_default="[]"),
        sa.Column("input_hash", sa.String(64), nullable=False),
        sa.Column("velocity", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("velocity_per_hour", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("orb_runs.id"), nullable=True),
        sa.UniqueConstraint(
            "topic_id", "window_end", "window_minutes",
            name="uq_orb_state_topic_window",
        ),
    )

    op.create_table(
        "orb_labels",
        _id_column(),
        sa.Column("topic_id", UUID(as_uuid=True), sa.ForeignKey("topics.id"), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_minutes", sa.Integer(), nullable=False),
        sa.Column("words", ARRAY(sa.String(64)), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("sentiment_label", sa.String(10), nullable=True),
        sa.Column("input_hash", sa.String(64), nullable=True),
        sa.Column("output_hash", sa.String(64), nullable=True),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("prompt_version", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="candidate"),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("orb_runs.id"), nullable=True),
    )
    op.create_index("ix_orb_labels_topic_generated", "orb_labels", ["topic_id", "generated_at"])
    op.create_index("ix_orb_labels_topic_status", "orb_labels", ["topic_id", "status"])

    op.create_table(
        "orb_snapshots",
        sa.Column("topic_id", UUID(as_uuid=True), sa.ForeignKey("topics.id"), primary_key=True),
        sa.Column("keywords", ARRAY(sa.String(64)), nullable=False, server_default="{}"),
        sa.Column("sentiment_label", sa.String(10), nullable=True),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("resting_color", sa.String(16), nullable=False),
        sa.Column("display_color", sa.String(16), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_minutes", sa.Integer(), nullable=False),
        sa.Column("volume", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("velocity", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("diversity", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("top_sources", JSONB(), nullable=False, server_default="[]"),
        sa.Column("top_items", JSONB(), nullable=False, server_default="[]"),
        sa.Column("state_hash", sa.String(64), nullable=True),
        sa.Column("output_hash", sa.String(64), nullable=True),
        sa.Column("label_status", sa.String(20), nullable=False, server_default="stale"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("orb_snapshots")
    op.drop_index("ix_orb_labels_topic_status", table_name="orb_labels")
    op.drop_index("ix_orb_labels_topic_generated", table_name="orb_labels")
    op.drop_table("orb_labels")
    op.drop_table("orb_state")
    op.drop_index("ix_orb_runs_topic_started", table_name="orb_runs")
    op.drop_table("orb_runs")
    op.drop_table("topics")
