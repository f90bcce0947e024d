"""End-to-end tests for the orbs worker against the in-memory store."""

import copy

import pytest

from orbs.models.orb_label import LabelStatus
from orbs.schemas.orbs import LabelCandidates, StateCalc
from orbs.services.labeling import hash_words
from orbs.services.store import StoreError
from orbs.worker.orbs_worker import BatchAbortedError, SENTIMENT_COLORS

from conftest import make_calc, make_items, make_topic


def _seed_snapshot(store, topic, keywords):
    store.snapshots[topic.id] = {
        "topic_id": topic.id,
        "keywords": keywords,
        "sentiment_label": None,
        "output_hash": hash_words(keywords),
        "volume": 3,
        "velocity": 0.1,
        "label_status": "promoted",
        "display_color": topic.orb_color,
    }


@pytest.mark.asyncio
async def test_first_run_bootstraps_label_into_snapshot(worker, store, generation):
    topic = make_topic("markets")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(20)
    store.candidates[topic.id] = LabelCandidates(items=make_items(8), label_input_hash="cand-hash")
    generation.replies = ["Markets, Rally, Globally"]

    response = await worker.run()

    assert response.ok is True
    assert response.topics == 1
    assert response.window_minutes == 60
    assert response.window_end.minute % 5 == 0
    result = response.results[0]
    assert result.ok is True
    assert result.first_label_ok is True
    assert result.did_label is True
    assert result.label_status == "promoted"

    assert len(store.states) == 1
    state = next(iter(store.states.values()))
    assert state["volume"] == 20
    assert state["velocity"] == 0

    labels = store.labels_for(topic.id)
    assert len(labels) == 1
    assert labels[0].status == LabelStatus.promoted.value
    assert labels[0].words == ["MARKETS", "RALLY", "GLOBALLY"]
    assert labels[0].input_hash == "cand-hash"

    snap = store.snapshots[topic.id]
    assert snap["keywords"] == labels[0].words
    assert snap["output_hash"] == labels[0].output_hash
    assert snap["label_status"] == "promoted"
    assert snap["state_hash"] == "state-hash"

    run = next(iter(store.runs.values()))
    assert run["status"] == "ok"
    assert run["token_estimate"] == 42
    assert run["output_hash"] == labels[0].output_hash


@pytest.mark.asyncio
async def test_one_failing_topic_does_not_affect_the_batch(worker, store, generation):
    topics = [make_topic(f"topic-{i}", sort_order=i) for i in range(5)]
    store.topics = list(reversed(topics))
    for t in topics:
        store.state_calc[t.id] = make_calc(5)
        _seed_snapshot(store, t, ["OLD", "WORDS", t.slug.upper()])
    broken = topics[2]
    store.state_calc[broken.id] = StoreError("state calc failed: connection reset")
    before = copy.deepcopy(store.snapshots[broken.id])

    response = await worker.run()

    assert response.topics == 5
    assert len(response.results) == 5
    assert [r.topic_id for r in response.results] == [t.id for t in topics]
    assert [r.ok for r in response.results] == [True, True, False, True, True]
    failed = response.results[2]
    assert "connection reset" in failed.error

    assert store.snapshots[broken.id] == before
    broken_runs = [r for r in store.runs.values() if r["topic_id"] == broken.id]
    assert broken_runs[0]["status"] == "error"
    assert "connection reset" in broken_runs[0]["error_message"]
    assert not any(k[0] == broken.id for k in store.states)

    for t in topics:
        if t is not broken:
            assert store.snapshots[t.id]["volume"] == 5


@pytest.mark.asyncio
async def test_label_stabilizes_over_consecutive_runs(worker, store, generation, clock):
    topic = make_topic("energy")
    store.topics = [topic]
    store.candidates[topic.id] = LabelCandidates(items=make_items(10), label_input_hash="c")

    # Run 1: bootstrap
    store.state_calc[topic.id] = make_calc(20)
    generation.replies = ["Oil, Gas, Prices"]
    await worker.run()
    assert store.snapshots[topic.id]["keywords"] == ["OIL", "GAS", "PRICES"]

    # Run 2: volume doubles, new wording stays a candidate
    clock.advance(minutes=31)
    store.state_calc[topic.id] = make_calc(40)
    generation.replies = ["Opec, Output, Cuts"]
    response = await worker.run()
    result = response.results[0]
    assert result.regen_ok is True
    assert result.velocity == pytest.approx(1.0)
    assert result.label_status == "promoted"
    assert store.snapshots[topic.id]["keywords"] == ["OIL", "GAS", "PRICES"]
    assert store.labels_for(topic.id)[-1].status == LabelStatus.candidate.value

    # Run 3: same wording again, promoted
    clock.advance(minutes=31)
    store.state_calc[topic.id] = make_calc(80)
    generation.replies = ["OPEC, output, cuts"]
    await worker.run()

    labels = store.labels_for(topic.id)
    assert [r.status for r in labels] == ["stale", "stale", "promoted"]
    assert store.snapshots[topic.id]["keywords"] == ["OPEC", "OUTPUT", "CUTS"]


@pytest.mark.asyncio
async def test_quiet_topic_keeps_existing_label(worker, store, generation, clock):
    topic = make_topic("science")
    store.topics = [topic]
    store.candidates[topic.id] = LabelCandidates(items=make_items(10), label_input_hash="c")
    store.state_calc[topic.id] = make_calc(20)
    generation.replies = ["Mars, Rover, Landing"]
    await worker.run()

    clock.advance(minutes=31)
    response = await worker.run()

    result = response.results[0]
    assert result.change_gate_ok is False
    assert result.label_attempted is False
    assert result.label_status == "promoted"
    assert len(store.labels_for(topic.id)) == 1
    assert store.snapshots[topic.id]["keywords"] == ["MARS", "ROVER", "LANDING"]
    assert generation.calls and len(generation.calls) == 1


@pytest.mark.asyncio
async def test_insufficient_candidates_is_a_silent_no_op(worker, store, generation):
    topic = make_topic("sports")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(15)
    store.candidates[topic.id] = LabelCandidates(items=make_items(5), label_input_hash="c")

    response = await worker.run()

    result = response.results[0]
    assert result.ok is True
    assert result.label_attempted is True
    assert result.cand_count == 5
    assert result.did_label is False
    assert result.label_status == "stale"
    assert generation.calls == []
    assert store.labels == []
    assert store.snapshots[topic.id]["keywords"] == []


@pytest.mark.asyncio
async def test_candidate_fetch_error_is_soft(worker, store):
    topic = make_topic("tech")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(15)
    store.candidates[topic.id] = StoreError("label candidates failed: timeout")

    response = await worker.run()

    result = response.results[0]
    assert result.ok is True
    assert "timeout" in result.cand_error
    assert topic.id in store.snapshots


@pytest.mark.asyncio
async def test_generation_failure_after_retry_is_soft(worker, store, generation):
    from orbs.services.generation import GenerationError

    topic = make_topic("world")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(15)
    store.candidates[topic.id] = LabelCandidates(items=make_items(8), label_input_hash="c")
    generation.replies = [GenerationError("502"), GenerationError("503")]

    response = await worker.run()

    result = response.results[0]
    assert result.ok is True
    assert result.generation_retry_attempted is True
    assert result.generation_retry_succeeded is False
    assert result.generation_error == "502; retry_failed: 503"
    assert store.labels == []
    assert next(iter(store.runs.values()))["status"] == "ok"


@pytest.mark.asyncio
async def test_sentiment_topic_uses_sentiment_color(worker, store, generation):
    topic = make_topic("news-sentiment", uses_sentiment_color=None)
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(15)
    store.candidates[topic.id] = LabelCandidates(items=make_items(8), label_input_hash="c")
    generation.replies = ["Markets, Slide, Fears\nSENTIMENT: red"]

    response = await worker.run()

    assert response.results[0].wants_sentiment is True
    snap = store.snapshots[topic.id]
    assert snap["sentiment_label"] == "red"
    assert snap["display_color"] == SENTIMENT_COLORS["red"]
    assert snap["resting_color"] == topic.orb_color


@pytest.mark.asyncio
async def test_snapshot_velocity_is_capped(worker, store, generation, clock):
    topic = make_topic("crypto", cadence_minutes=600)
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(2)
    await worker.run()

    clock.advance(minutes=5)
    store.state_calc[topic.id] = make_calc(200)
    response = await worker.run()

    result = response.results[0]
    assert result.velocity == pytest.approx(99.0)
    assert result.velocity_snapshot == 5
    assert store.snapshots[topic.id]["velocity"] == 5


@pytest.mark.asyncio
async def test_repeat_run_in_same_slot_upserts_same_state(worker, store):
    topic = make_topic("local")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(3)

    await worker.run()
    store.state_calc[topic.id] = make_calc(4)
    await worker.run()

    assert len(store.states) == 1
    assert next(iter(store.states.values()))["volume"] == 4


@pytest.mark.asyncio
async def test_window_override_is_clamped(worker, store):
    store.topics = []
    response = await worker.run(window_minutes=100_000)
    assert response.window_minutes == 1440
    assert store.backfill_calls == [2]


@pytest.mark.asyncio
async def test_backfill_failure_aborts_batch(worker, store):
    topic = make_topic("markets")
    store.topics = [topic]
    store.backfill_error = StoreError("fn_item_categories_backfill_recent failed: boom")

    with pytest.raises(BatchAbortedError) as excinfo:
        await worker.run()

    assert excinfo.value.error == "fn_item_categories_backfill_recent failed"
    assert store.runs == {}


@pytest.mark.asyncio
async def test_topic_listing_failure_aborts_batch(worker, store):
    store.topics_error = StoreError("topics load failed: boom")

    with pytest.raises(BatchAbortedError):
        await worker.run()


@pytest.mark.asyncio
async def test_unbacked_sentiment_is_not_carried_forward(worker, store):
    topic = make_topic("news-sentiment")
    store.topics = [topic]
    store.state_calc[topic.id] = make_calc(5)
    _seed_snapshot(store, topic, ["OLD", "WORDS", "HERE"])
    store.snapshots[topic.id]["sentiment_label"] = "red"

    await worker.run()

    snap = store.snapshots[topic.id]
    assert snap["keywords"] == ["OLD", "WORDS", "HERE"]
    assert snap["sentiment_label"] is None
    assert snap["display_color"] == topic.orb_color


@pytest.mark.asyncio
async def test_empty_window_aggregate_still_writes_snapshot(worker, store):
    topic = make_topic("quiet")
    store.topics = [topic]
    store.state_calc[topic.id] = StateCalc.model_validate(
        {"volume": 0, "diversity": None, "top_sources": None, "top_items": None, "input_hash": "h"}
    )

    response = await worker.run()

    assert response.results[0].ok is True
    snap = store.snapshots[topic.id]
    assert snap["volume"] == 0
    assert snap["top_items"] == []
    assert snap["diversity"] == 0.0
