"""Orbs worker: recompute topic signals and labels.

One invocation:
1. Backfill item categories for the recent lookback (batch-fatal on failure)
2. Load enabled topics in sort order (batch-fatal on failure)
3. Per topic, strictly sequentially:
   a. open an orb_runs row
   b. aggregate volume/diversity/top lists for the aligned window
   c. compute velocity against the previous orb_state row, upsert orb_state
   d. evaluate label gates; maybe generate a label and run promotion
   e. upsert the orb snapshot the UI renders
   f. close the run as ok

Any exception inside a topic is caught at the topic boundary: the run is
closed as error and the loop moves on. The snapshot is written last, so a
failed topic keeps its previous snapshot untouched.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from orbs.config import Settings, settings as default_settings
from orbs.metrics import label_attempts_total, topic_run_duration, topic_runs_total
from orbs.models.orb_label import LabelStatus
from orbs.models.topic import Topic
from orbs.schemas.orbs import RecomputeResponse, TopicResult
from orbs.services.gates import GateThresholds, evaluate_gates
from orbs.services.labeling import LabelGenerator
from orbs.services.promotion import PromotionStateMachine
from orbs.services.store import OrbStore, StoreError
from orbs.services.velocity import compute_velocity
from orbs.services.window import Window, align_window

log = structlog.get_logger(__name__)

SENTIMENT_COLORS: dict[str, str] = {
    "red": "#E24D4D",
    "amber": "#F2B233",
    "green": "#3CCB7F",
}


class BatchAbortedError(Exception):
    """Raised when the invocation fails before any topic is processed."""

    def __init__(self, error: str, details: str = "") -> None:
        super().__init__(f"{error}: {details}" if details else error)
        self.error = error
        self.details = details


@dataclass
class LabelOutcome:
    attempted: bool = False
    did_label: bool = False
    status: Optional[LabelStatus] = None
    words: Optional[list[str]] = None
    sentiment_label: Optional[str] = None
    output_hash: Optional[str] = None
    token_estimate: Optional[int] = None
    cand_count: Optional[int] = None
    cand_error: Optional[str] = None
    generation_error: Optional[str] = None
    retry_attempted: bool = False
    retry_succeeded: bool = False
    label_insert_error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def display_color_for(wants_sentiment: bool, sentiment: Optional[str], resting: str) -> str:
    if wants_sentiment and sentiment:
        return SENTIMENT_COLORS.get(sentiment.lower(), resting)
    return resting


class OrbsWorker:
    def __init__(
        self,
        store: OrbStore,
        labeler: LabelGenerator,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.labeler = labeler
        self.config = config
        self.promotion = PromotionStateMachine(store)
        self.thresholds = GateThresholds.from_settings(config)
        self._clock = clock

    async def run(self, window_minutes=None) -> RecomputeResponse:
        """Execute one recompute across all enabled topics.

        Raises:
            BatchAbortedError: backfill or topic listing failed
        """
        window = align_window(
            self._clock(), window_minutes, default_minutes=self.config.default_window_minutes
        )

        try:
            await self.store.backfill_categories(self.config.backfill_hours)
        except StoreError as exc:
            log.error("orbs_backfill_failed", error=str(exc))
            raise BatchAbortedError("fn_item_categories_backfill_recent failed", str(exc)) from exc

        try:
            topics = await self.store.list_enabled_topics()
        except StoreError as exc:
            log.error("orbs_topics_load_failed", error=str(exc))
            raise BatchAbortedError("topics load failed", str(exc)) from exc

        results = []
        for topic in topics:
            results.append(await self._run_topic(topic, window))

        failed = [str(r.topic_id) for r in results if not r.ok]
        if failed:
            log.warning("orbs_recompute_partial", window_end=window.end.isoformat(),
                        topics=len(topics), failed_topics=failed)
        else:
            log.info("orbs_recompute_completed", window_end=window.end.isoformat(),
                     window_minutes=window.minutes, topics=len(topics))

        return RecomputeResponse(
            ok=True,
            window_end=window.end,
            window_minutes=window.minutes,
            topics=len(topics),
            results=results,
        )

    async def _run_topic(self, topic: Topic, window: Window) -> TopicResult:
        started = time.perf_counter()
        try:
            try:
                run_id = await self.store.start_run(
                    topic.id, window, self.labeler.model, self.config.orbs_prompt_version
                )
            except Exception as exc:
                log.error("orb_run_insert_failed", topic=topic.slug, error=str(exc))
                topic_runs_total.labels(status="error").inc()
                return TopicResult(topic_id=topic.id, ok=False, stage="run_insert", error=str(exc))

            try:
                result = await self._process_topic(topic, window, run_id)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                log.error("orb_topic_failed", topic=topic.slug, run_id=str(run_id),
                          error=message, exc_info=True)
                try:
                    await self.store.fail_run(run_id, message)
                except Exception:
                    log.error("orb_run_error_update_failed", run_id=str(run_id), exc_info=True)
                topic_runs_total.labels(status="error").inc()
                return TopicResult(topic_id=topic.id, ok=False, error=message)

            topic_runs_total.labels(status="ok").inc()
            return result
        finally:
            topic_run_duration.observe(time.perf_counter() - started)

    async def _process_topic(self, topic: Topic, window: Window, run_id: uuid.UUID) -> TopicResult:
        cfg = self.config
        wants_sentiment = topic.wants_sentiment

        state = await self.store.calc_state(topic.id, window)

        prev = await self.store.previous_state(topic.id, window)
        prev_volume = prev.volume if prev else 0
        prev_window_end = prev.window_end if prev else None
        velocity = compute_velocity(
            state.volume, prev_volume, prev_window_end, window.end, cap=cfg.velocity_ui_cap
        )

        await self.store.upsert_state({
            "topic_id": topic.id,
            "window_end": window.end,
            "window_minutes": window.minutes,
            "volume": state.volume,
            "velocity": velocity.raw,
            "velocity_per_hour": velocity.per_hour,
            "diversity": state.diversity,
            "top_sources": state.top_sources,
            "top_items": state.top_items,
            "input_hash": state.input_hash,
            "computed_at": _utcnow(),
            "run_id": run_id,
        })

        snapshot = await self.store.load_snapshot(topic.id)
        last_attempt_at = await self.store.last_label_attempt_at(topic.id)
        cadence = topic.cadence_minutes if topic.cadence_minutes is not None else cfg.default_cadence_minutes
        promoted_existing = await self.store.latest_promoted_label(topic.id)
        has_promoted = promoted_existing is not None

        gates = evaluate_gates(
            now=self._clock(),
            last_attempt_at=last_attempt_at,
            cadence_minutes=cadence,
            volume=state.volume,
            prev_volume=prev_volume,
            raw_velocity=velocity.raw,
            has_promoted=has_promoted,
            thresholds=self.thresholds,
        )

        outcome = LabelOutcome()
        if gates.attempt:
            outcome = await self._label_topic(topic, window, run_id, has_promoted, wants_sentiment)

        # Keywords come only from a promoted label; fall back to what the
        # snapshot already shows when no promoted label exists yet. Sentiment
        # is only ever taken from a promoted label.
        label_status = outcome.status.value if outcome.did_label and outcome.status else LabelStatus.stale.value
        words = None
        sentiment = None
        output_hash = snapshot.output_hash if snapshot else None

        if outcome.status == LabelStatus.promoted:
            words = outcome.words
            sentiment = outcome.sentiment_label
            output_hash = outcome.output_hash
        elif promoted_existing is not None and promoted_existing.words and len(promoted_existing.words) == 3:
            words = list(promoted_existing.words)
            sentiment = promoted_existing.sentiment_label
            output_hash = promoted_existing.output_hash or output_hash
            label_status = LabelStatus.promoted.value
        elif snapshot is not None:
            words = list(snapshot.keywords or [])

        resting_color = topic.orb_color or cfg.default_orb_color
        display_color = display_color_for(wants_sentiment, sentiment, resting_color)

        await self.store.upsert_snapshot({
            "topic_id": topic.id,
            "keywords": words or [],
            "sentiment_label": sentiment,
            "sentiment_score": None,
            "summary": None,
            "output_hash": output_hash,
            "updated_at": _utcnow(),
            "window_end": window.end,
            "window_minutes": window.minutes,
            "volume": state.volume,
            "velocity": velocity.snapshot,
            "diversity": state.diversity,
            "top_sources": state.top_sources,
            "top_items": state.top_items,
            "state_hash": state.input_hash,
            "resting_color": resting_color,
            "display_color": display_color,
            "label_status": label_status,
        })

        await self.store.finish_run(run_id, output_hash, outcome.token_estimate)

        log.info(
            "orb_topic_completed",
            topic=topic.slug,
            volume=state.volume,
            velocity=velocity.raw,
            label_attempted=outcome.attempted,
            label_status=label_status,
        )

        return TopicResult(
            topic_id=topic.id,
            ok=True,
            window_end=window.end,
            window_minutes=window.minutes,
            wants_sentiment=wants_sentiment,
            volume=state.volume,
            diversity=state.diversity,
            velocity=velocity.raw,
            velocity_per_hour=velocity.per_hour,
            velocity_snapshot=velocity.snapshot,
            elapsed_minutes=velocity.elapsed_minutes,
            prev_window_end=prev_window_end,
            prev_volume=prev_volume,
            cadence_minutes=cadence,
            last_label_attempt_at=last_attempt_at,
            **gates.as_dict(),
            did_label=outcome.did_label,
            label_status=label_status,
            label_attempted=outcome.attempted,
            cand_count=outcome.cand_count,
            cand_error=outcome.cand_error,
            generation_error=outcome.generation_error,
            generation_retry_attempted=outcome.retry_attempted,
            generation_retry_succeeded=outcome.retry_succeeded,
            label_insert_error=outcome.label_insert_error,
        )

    async def _label_topic(
        self,
        topic: Topic,
        window: Window,
        run_id: uuid.UUID,
        has_promoted: bool,
        wants_sentiment: bool,
    ) -> LabelOutcome:
        """Fetch candidates, generate, insert and promote.

        Candidate, generation and insert failures are soft and land on the
        outcome; promotion write failures propagate.
        """
        cfg = self.config
        outcome = LabelOutcome(attempted=True)

        try:
            candidates = await self.store.label_candidates(
                topic.id,
                window,
                max_items=cfg.candidate_max_items,
                max_per_source=(
                    cfg.candidate_max_per_source_regen if has_promoted
                    else cfg.candidate_max_per_source_bootstrap
                ),
            )
        except StoreError as exc:
            outcome.cand_error = str(exc)
            label_attempts_total.labels(outcome="candidates_error").inc()
            log.warning("label_candidates_failed", topic=topic.slug, error=str(exc))
            return outcome

        if candidates is None:
            outcome.cand_error = "no candidate row returned"
            label_attempts_total.labels(outcome="candidates_error").inc()
            return outcome

        items = candidates.items
        outcome.cand_count = len(items)
        min_items = cfg.min_candidates_regen if has_promoted else cfg.min_candidates_bootstrap
        if len(items) < min_items:
            label_attempts_total.labels(outcome="insufficient_candidates").inc()
            log.info("label_skipped_insufficient_candidates", topic=topic.slug,
                     count=len(items), required=min_items)
            return outcome

        attempt = await self.labeler.generate(topic.name, topic.slug, items, wants_sentiment)
        outcome.generation_error = attempt.error
        outcome.retry_attempted = attempt.retry_attempted
        outcome.retry_succeeded = attempt.retry_succeeded
        if attempt.label is None:
            label_attempts_total.labels(outcome="generation_failed").inc()
            return outcome

        label = attempt.label
        outcome.token_estimate = label.token_estimate

        try:
            row = await self.store.insert_label({
                "topic_id": topic.id,
                "window_end": window.end,
                "window_minutes": window.minutes,
                "words": label.words,
                "summary": None,
                "sentiment_label": label.sentiment_label,
                "input_hash": candidates.label_input_hash,
                "output_hash": label.output_hash,
                "model": self.labeler.model,
                "prompt_version": cfg.orbs_prompt_version,
                "run_id": run_id,
            })
        except StoreError as exc:
            outcome.label_insert_error = str(exc)
            label_attempts_total.labels(outcome="insert_failed").inc()
            log.warning("label_insert_failed", topic=topic.slug, error=str(exc))
            return outcome

        outcome.did_label = True
        label_attempts_total.labels(outcome="generated").inc()

        outcome.status = await self.promotion.resolve(topic.id, row.id, has_promoted)
        if outcome.status == LabelStatus.promoted:
            outcome.words = label.words
            outcome.sentiment_label = label.sentiment_label
            outcome.output_hash = label.output_hash
        return outcome


async def orbs_worker_loop(worker: OrbsWorker, interval_seconds: int) -> None:
    """Background loop that recomputes orbs on a fixed interval."""
    log.info("orbs_worker_started", interval_seconds=interval_seconds)
    while True:
        try:
            await worker.run()
        except BatchAbortedError as exc:
            log.error("orbs_recompute_aborted", error=exc.error, details=exc.details)
        except Exception:
            log.error("orbs_worker_error", exc_info=True)
        await asyncio.sleep(interval_seconds)
