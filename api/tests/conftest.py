"""Shared test doubles for the orbs pipeline.

FakeStore keeps every table in memory and implements the same coroutine
interface as OrbStore, so the worker and promotion state machine can be
exercised end to end without PostgreSQL.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest

from orbs.config import Settings
from orbs.models.orb_label import LabelStatus, OrbLabel
from orbs.models.topic import Topic
from orbs.schemas.orbs import LabelCandidateItem, LabelCandidates, StateCalc
from orbs.services.generation import GenerationError, GenerationResult
from orbs.services.labeling import LabelGenerator
from orbs.services.store import PreviousState, StoreError
from orbs.worker.orbs_worker import OrbsWorker


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeStore:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.topics: list[Topic] = []
        self.state_calc: dict[uuid.UUID, object] = {}
        self.candidates: dict[uuid.UUID, object] = {}
        self.states: dict[tuple, dict] = {}
        self.labels: list[OrbLabel] = []
        self.snapshots: dict[uuid.UUID, dict] = {}
        self.runs: dict[uuid.UUID, dict] = {}
        self.backfill_error: Optional[Exception] = None
        self.topics_error: Optional[Exception] = None
        self.backfill_calls: list[int] = []
        self._seq = 0

    # -- batch
    async def backfill_categories(self, hours: int) -> None:
        self.backfill_calls.append(hours)
        if self.backfill_error:
            raise self.backfill_error

    async def list_enabled_topics(self) -> list[Topic]:
        if self.topics_error:
            raise self.topics_error
        enabled = [t for t in self.topics if t.is_enabled]
        return sorted(enabled, key=lambda t: (t.sort_order, t.slug))

    # -- runs
    async def start_run(self, topic_id, window, model, prompt_version) -> uuid.UUID:
        run_id = uuid.uuid4()
        self.runs[run_id] = {
            "topic_id": topic_id,
            "status": "started",
            "window_end": window.end,
            "window_minutes": window.minutes,
            "model": model,
            "prompt_version": prompt_version,
        }
        return run_id

    async def finish_run(self, run_id, output_hash, token_estimate) -> None:
        self.runs[run_id].update(status="ok", output_hash=output_hash, token_estimate=token_estimate)

    async def fail_run(self, run_id, message) -> None:
        self.runs[run_id].update(status="error", error_message=message)

    # -- state
    async def calc_state(self, topic_id, window) -> StateCalc:
        calc = self.state_calc.get(topic_id)
        if isinstance(calc, Exception):
            raise calc
        if calc is None:
            raise StoreError("state calc failed: no row returned")
        return calc

    async def previous_state(self, topic_id, window) -> Optional[PreviousState]:
        prior = [
            s for (tid, end, minutes), s in self.states.items()
            if tid == topic_id and minutes == window.minutes and end < window.end
        ]
        if not prior:
            return None
        latest = max(prior, key=lambda s: s["window_end"])
        return PreviousState(volume=latest["volume"], window_end=latest["window_end"])

    async def upsert_state(self, values: dict) -> None:
        key = (values["topic_id"], values["window_end"], values["window_minutes"])
        self.states[key] = dict(values)

    # -- labels
    def _ordered_labels(self, topic_id) -> list[OrbLabel]:
        rows = [label for label in self.labels if label.topic_id == topic_id]
        return sorted(rows, key=lambda r: (r.generated_at, r.seq), reverse=True)

    async def last_label_attempt_at(self, topic_id) -> Optional[datetime]:
        rows = self._ordered_labels(topic_id)
        return rows[0].generated_at if rows else None

    async def latest_promoted_label(self, topic_id) -> Optional[OrbLabel]:
        rows = [r for r in self._ordered_labels(topic_id) if r.status == LabelStatus.promoted.value]
        return rows[0] if rows else None

    async def label_candidates(self, topic_id, window, max_items, max_per_source):
        cand = self.candidates.get(topic_id)
        if isinstance(cand, Exception):
            raise cand
        if cand is None:
            return None
        return LabelCandidates(items=cand.items[:max_items], label_input_hash=cand.label_input_hash)

    async def insert_label(self, values: dict) -> OrbLabel:
        self._seq += 1
        label = OrbLabel(
            id=uuid.uuid4(),
            status=LabelStatus.candidate.value,
            generated_at=self.clock(),
            **values,
        )
        label.seq = self._seq
        self.labels.append(label)
        return label

    async def latest_labels(self, topic_id, limit: int = 2) -> list[OrbLabel]:
        return self._ordered_labels(topic_id)[:limit]

    async def promote_label(self, topic_id, label_id, superseded_id=None) -> bool:
        target = next(r for r in self.labels if r.id == label_id)
        if target.status != LabelStatus.candidate.value:
            return False
        target.status = LabelStatus.promoted.value
        for row in self.labels:
            if row.topic_id == topic_id and row.id != label_id and row.status == LabelStatus.promoted.value:
                row.status = LabelStatus.stale.value
            if row.id == superseded_id and row.status == LabelStatus.candidate.value:
                row.status = LabelStatus.stale.value
        return True

    # -- snapshots
    async def load_snapshot(self, topic_id):
        snap = self.snapshots.get(topic_id)
        return SimpleNamespace(**copy.deepcopy(snap)) if snap else None

    async def upsert_snapshot(self, values: dict) -> None:
        self.snapshots[values["topic_id"]] = copy.deepcopy(values)

    # -- helpers
    def add_label(self, topic_id, words, status, output_hash=None, sentiment_label=None) -> OrbLabel:
        self._seq += 1
        label = OrbLabel(
            id=uuid.uuid4(),
            topic_id=topic_id,
            window_end=self.clock(),
            window_minutes=60,
            words=words,
            sentiment_label=sentiment_label,
            output_hash=output_hash,
            status=status,
            generated_at=self.clock(),
        )
        label.seq = self._seq
        self.labels.append(label)
        return label

    def labels_for(self, topic_id) -> list[OrbLabel]:
        return list(reversed(self._ordered_labels(topic_id)))


class FakeGeneration:
    """Replays scripted replies; an Exception entry is raised instead."""

    model = "test-model"

    def __init__(self, replies=None) -> None:
        self.replies = list(replies or [])
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system: str, user: str) -> GenerationResult:
        self.calls.append((system, user))
        if not self.replies:
            raise GenerationError("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return GenerationResult(text=reply, total_tokens=42)


async def _no_sleep(_seconds: float) -> None:
    return None


def make_topic(slug: str, sort_order: int = 0, **kwargs) -> Topic:
    defaults = dict(
        id=uuid.uuid4(),
        name=slug.replace("-", " ").title(),
        slug=slug,
        orb_color="#336699",
        cadence_minutes=30,
        is_enabled=True,
        uses_sentiment_color=False,
        sort_order=sort_order,
    )
    defaults.update(kwargs)
    return Topic(**defaults)


def make_items(count: int) -> list[LabelCandidateItem]:
    return [
        LabelCandidateItem(
            id=str(i),
            title=f"Headline   number {i}",
            feed_id=f"feed-{i % 4}",
            published_at="2026-10-19T09:00:00Z",
        )
        for i in range(count)
    ]


def make_calc(volume: int, input_hash: str = "state-hash") -> StateCalc:
    return StateCalc(
        volume=volume,
        diversity=0.5,
        top_sources=[{"feed_id": "feed-1", "count": volume}],
        top_items=[{"id": "1", "title": "Headline"}],
        input_hash=input_hash,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 9, 2, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def generation():
    return FakeGeneration()


@pytest.fixture
def worker(store, generation, clock):
    labeler = LabelGenerator(generation, retry_delay=0.6, sleep=_no_sleep)
    return OrbsWorker(store=store, labeler=labeler, config=Settings(), clock=clock)
