"""Persistence layer for the orbs pipeline.

OrbStore owns every read and write the worker performs. Each call opens
its own session and commits before returning, so a failure mid-topic
never leaves a half-written transaction behind and nothing is held
across topic boundaries.

Database functions consumed (defined outside this service):
  fn_item_categories_backfill_recent(p_hours)
  fn_orb_state_calc(p_topic_id, p_window_end, p_window_minutes)
  fn_orb_label_candidates(p_topic_id, p_window_end, p_window_minutes,
                          p_max_items, p_max_per_feed)
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orbs.models.orb_label import LabelStatus, OrbLabel
from orbs.models.orb_run import OrbRun, RunStatus
from orbs.models.orb_snapshot import OrbSnapshot
from orbs.models.orb_state import OrbState
from orbs.models.topic import Topic
from orbs.schemas.orbs import LabelCandidates, StateCalc
from orbs.services.window import Window

log = structlog.get_logger(__name__)


class StoreError(Exception):
    """Raised when a store read or write fails."""
    pass


class MalformedPayloadError(StoreError):
    """Raised when a database function returns a row of the wrong shape."""
    pass


@dataclass(frozen=True)
class PreviousState:
    volume: int
    window_end: datetime


class OrbStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, op: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StoreError(f"{op} failed: {exc}") from exc
            except OSError as exc:
                # asyncpg surfaces refused or dropped connections unwrapped
                raise StoreError(f"{op} failed: {exc}") from exc

    # -- batch ---------------------------------------------------------------

    async def backfill_categories(self, hours: int) -> None:
        async with self._session("fn_item_categories_backfill_recent") as session:
            await session.execute(
                text("SELECT fn_item_categories_backfill_recent(:p_hours)"),
                {"p_hours": hours},
            )
            await session.commit()

    async def list_enabled_topics(self) -> list[Topic]:
        async with self._session("topics load") as session:
            result = await session.execute(
                select(Topic)
                .where(Topic.is_enabled.is_(True))
                .order_by(Topic.sort_order.asc(), Topic.slug.asc())
            )
            return list(result.scalars().all())

    # -- runs ----------------------------------------------------------------

    async def start_run(
        self,
        topic_id: uuid.UUID,
        window: Window,
        model: str,
        prompt_version: str,
    ) -> uuid.UUID:
        async with self._session("run insert") as session:
            run = OrbRun(
                topic_id=topic_id,
                status=RunStatus.started.value,
                window_end=window.end,
                window_minutes=window.minutes,
                model=model,
                prompt_version=prompt_version,
                started_at=datetime.now(timezone.utc),
            )
            session.add(run)
            await session.commit()
            return run.id

    async def finish_run(
        self,
        run_id: uuid.UUID,
        output_hash: Optional[str],
        token_estimate: Optional[int],
    ) -> None:
        async with self._session("orb_runs update") as session:
            await session.execute(
                update(OrbRun)
                .where(OrbRun.id == run_id)
                .values(
                    status=RunStatus.ok.value,
                    output_hash=output_hash,
                    token_estimate=token_estimate,
                    finished_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def fail_run(self, run_id: uuid.UUID, message: str) -> None:
        async with self._session("orb_runs error update") as session:
            await session.execute(
                update(OrbRun)
                .where(OrbRun.id == run_id)
                .values(
                    status=RunStatus.error.value,
                    error_message=message,
                    finished_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    # -- signal state --------------------------------------------------------

    async def calc_state(self, topic_id: uuid.UUID, window: Window) -> StateCalc:
        """Aggregate volume/diversity/top lists for the window.

        A missing row is a hard failure for the topic.
        """
        async with self._session("state calc") as session:
            result = await session.execute(
                text(
                    "SELECT * FROM fn_orb_state_calc("
                    ":p_topic_id, :p_window_end, :p_window_minutes)"
                ),
                {
                    "p_topic_id": topic_id,
                    "p_window_end": window.end,
                    "p_window_minutes": window.minutes,
                },
            )
            row = result.mappings().first()

        if row is None:
            raise StoreError("state calc failed: no row returned")
        try:
            return StateCalc.model_validate(dict(row))
        except ValidationError as exc:
            raise MalformedPayloadError(f"state calc returned malformed row: {exc}") from exc

    async def previous_state(self, topic_id: uuid.UUID, window: Window) -> Optional[PreviousState]:
        """Most recent orb_state row strictly before this window_end."""
        async with self._session("prev state lookup") as session:
            result = await session.execute(
                select(OrbState.volume, OrbState.window_end)
                .where(
                    OrbState.topic_id == topic_id,
                    OrbState.window_minutes == window.minutes,
                    OrbState.window_end < window.end,
                )
                .order_by(OrbState.window_end.desc())
                .limit(1)
            )
            row = result.first()
        if row is None:
            return None
        return PreviousState(volume=row.volume or 0, window_end=row.window_end)

    async def upsert_state(self, values: dict[str, Any]) -> None:
        stmt = pg_insert(OrbState).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_orb_state_topic_window",
            set_={
                k: stmt.excluded[k]
                for k in values
                if k not in ("topic_id", "window_end", "window_minutes")
            },
        )
        async with self._session("orb_state upsert") as session:
            await session.execute(stmt)
            await session.commit()

    # -- labels --------------------------------------------------------------

    async def last_label_attempt_at(self, topic_id: uuid.UUID) -> Optional[datetime]:
        async with self._session("last label attempt lookup") as session:
            result = await session.execute(
                select(OrbLabel.generated_at)
                .where(OrbLabel.topic_id == topic_id)
                .order_by(OrbLabel.generated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def latest_promoted_label(self, topic_id: uuid.UUID) -> Optional[OrbLabel]:
        async with self._session("promoted label lookup") as session:
            result = await session.execute(
                select(OrbLabel)
                .where(
                    OrbLabel.topic_id == topic_id,
                    OrbLabel.status == LabelStatus.promoted.value,
                )
                .order_by(OrbLabel.generated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def label_candidates(
        self,
        topic_id: uuid.UUID,
        window: Window,
        max_items: int,
        max_per_source: int,
    ) -> Optional[LabelCandidates]:
        async with self._session("label candidates") as session:
            result = await session.execute(
                text(
                    "SELECT * FROM fn_orb_label_candidates("
                    ":p_topic_id, :p_window_end, :p_window_minutes, "
                    ":p_max_items, :p_max_per_feed)"
                ),
                {
                    "p_topic_id": topic_id,
                    "p_window_end": window.end,
                    "p_window_minutes": window.minutes,
                    "p_max_items": max_items,
                    "p_max_per_feed": max_per_source,
                },
            )
            row = result.mappings().first()

        if row is None:
            return None
        try:
            return LabelCandidates.model_validate(dict(row))
        except ValidationError as exc:
            raise MalformedPayloadError(f"label candidates returned malformed row: {exc}") from exc

    async def insert_label(self, values: dict[str, Any]) -> OrbLabel:
        async with self._session("orb_labels insert") as session:
            label = OrbLabel(status=LabelStatus.candidate.value, **values)
            session.add(label)
            await session.commit()
            await session.refresh(label)
            return label

    async def latest_labels(self, topic_id: uuid.UUID, limit: int = 2) -> list[OrbLabel]:
        async with self._session("latest labels lookup") as session:
            result = await session.execute(
                select(OrbLabel)
                .where(OrbLabel.topic_id == topic_id)
                .order_by(OrbLabel.generated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def promote_label(
        self,
        topic_id: uuid.UUID,
        label_id: uuid.UUID,
        superseded_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Promote ``label_id`` and demote every other promoted label to stale.

        The promote is conditional on the label still being a candidate;
        returns False (and writes nothing) when a concurrent run got there
        first.
        """
        async with self._session("promote") as session:
            promoted = await session.execute(
                update(OrbLabel)
                .where(
                    OrbLabel.id == label_id,
                    OrbLabel.status == LabelStatus.candidate.value,
                )
                .values(status=LabelStatus.promoted.value)
            )
            if promoted.rowcount != 1:
                await session.rollback()
                return False

            await session.execute(
                update(OrbLabel)
                .where(
                    OrbLabel.topic_id == topic_id,
                    OrbLabel.id != label_id,
                    OrbLabel.status == LabelStatus.promoted.value,
                )
                .values(status=LabelStatus.stale.value)
            )
            if superseded_id is not None:
                await session.execute(
                    update(OrbLabel)
                    .where(
                        OrbLabel.id == superseded_id,
                        OrbLabel.status == LabelStatus.candidate.value,
                    )
                    .values(status=LabelStatus.stale.value)
                )
            await session.commit()
            return True

    # -- snapshots -----------------------------------------------------------

    async def load_snapshot(self, topic_id: uuid.UUID) -> Optional[OrbSnapshot]:
        async with self._session("snapshot load") as session:
            result = await session.execute(
                select(OrbSnapshot).where(OrbSnapshot.topic_id == topic_id)
            )
            return result.scalar_one_or_none()

    async def upsert_snapshot(self, values: dict[str, Any]) -> None:
        stmt = pg_insert(OrbSnapshot).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[OrbSnapshot.topic_id],
            set_={k: stmt.excluded[k] for k in values if k != "topic_id"},
        )
        async with self._session("snapshot upsert") as session:
            await session.execute(stmt)
            await session.commit()
