from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

from fitrep_core.config import HISTORY_KEY, QUEUE_KEY, SESSION_KEY
from fitrep_core.durability import (
    COMPACT_WARNING,
    WritePipeline,
    check_for_previous_session,
    load_saved_snapshot,
)
from fitrep_core.session import EvaluationSession
from fitrep_core.store import MemoryStore
from fitrep_core.types import EvaluationMeta
from tests.conftest import FlakyStore


def _session(catalog, name: str = "Sgt Doe") -> EvaluationSession:
    sess = EvaluationSession.start(EvaluationMeta(marine_name=name), False, catalog)
    sess.decide("meets")
    sess.finalize_current("B", "solid")
    sess.set_narrative(generated_section_i="draft text", directed_comments_data={"dc": "draft"})
    return sess


class _Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_quota_on_full_write_falls_back_to_compact(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "quota_full"
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot)

    ok = asyncio.run(pipeline.perform_save_with_retry())

    assert ok is True
    assert pipeline.status.status == "saved"
    assert COMPACT_WARNING in pipeline.status.warnings
    saved = json.loads(store.read(SESSION_KEY))
    assert saved["compact"] is True
    assert saved["directedCommentsData"] == {} and saved["generatedSectionI"] == ""
    assert len(saved["ledger"]) == 1, "ledger survives the compact fallback"
    assert pipeline.history() == [], "compact saves are not added to history"


def test_exhausted_retries_queue_one_compact_snapshot(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sleeps = _Sleeps()
    pipeline = WritePipeline(store, _session(small_catalog).build_snapshot, sleep=sleeps)

    ok = asyncio.run(pipeline.perform_save_with_retry(attempts=3, base_delay=0.4))

    assert ok is False
    assert pipeline.status.status == "error"
    assert sleeps.delays == [0.4, 0.8], "exponential backoff between attempts only"
    queue = pipeline.load_queue()
    assert len(queue) == 1, "exactly one queued entry per exhausted save"
    assert queue[0]["snapshot"]["compact"] is True
    assert store.read(SESSION_KEY) is None


def test_single_save_enqueues_on_failure(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    pipeline = WritePipeline(store, _session(small_catalog).build_snapshot)
    assert pipeline.save() is False
    assert len(pipeline.queue) == 1


def test_unchanged_state_skips_write_and_history(small_catalog):
    store = FlakyStore()
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot)

    assert pipeline.save()
    writes = len(store.written)
    assert pipeline.save()
    assert asyncio.run(pipeline.perform_save_with_retry())
    assert len(store.written) == writes, "no-op saves never touch storage"
    assert len(pipeline.history()) == 1

    sess.update_meta(marine_rank="SSgt")
    assert pipeline.save()
    assert len(pipeline.history()) == 2


def test_history_is_a_bounded_ring_newest_first(small_catalog):
    store = MemoryStore()
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot, history_capacity=3)
    for n in range(5):
        sess.update_meta(marine_name=f"Marine {n}")
        assert pipeline.save()

    history = pipeline.history()
    assert [h["marineName"] for h in history] == ["Marine 4", "Marine 3", "Marine 2"]
    entry = history[0]
    assert entry["traitCount"] == 1 and entry["step"] == "evaluation"
    assert entry["data"]["metadata"]["marineName"] == "Marine 4"
    assert json.loads(store.read(HISTORY_KEY)) == history


def test_queue_flushes_in_fifo_order(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog, "First")
    pipeline = WritePipeline(store, sess.build_snapshot)
    pipeline.save()
    sess.update_meta(marine_name="Second")
    pipeline.save()
    assert len(pipeline.queue) == 2

    store.failing.clear()
    result = asyncio.run(pipeline.flush_queue())

    assert result == {"flushed": 2, "dropped": 0, "remaining": 0}
    names = [w["metadata"]["marineName"] for w in store.writes_to(SESSION_KEY)]
    assert names == ["First", "Second"]
    assert pipeline.load_queue() == []


def test_failed_flush_entries_stay_queued_in_order(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog, "First")
    pipeline = WritePipeline(store, sess.build_snapshot)
    for name in ("Second", "Third"):
        pipeline.save()
        sess.update_meta(marine_name=name)
    pipeline.save()

    store.failing.clear()
    store.fail_when = lambda key, value: (
        "other" if key == SESSION_KEY and json.loads(value)["metadata"]["marineName"] != "Second" else None
    )
    result = asyncio.run(pipeline.flush_queue())

    assert result["flushed"] == 1 and result["remaining"] == 2
    remaining = [e["snapshot"]["metadata"]["marineName"] for e in pipeline.load_queue()]
    assert remaining == ["First", "Third"]


def test_flush_drops_entries_older_than_committed_save(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog, "Queued")
    pipeline = WritePipeline(store, sess.build_snapshot)
    pipeline.save()

    store.failing.clear()
    sess.update_meta(marine_name="Committed")
    assert pipeline.save()
    result = asyncio.run(pipeline.flush_queue())

    assert result == {"flushed": 0, "dropped": 1, "remaining": 0}
    assert load_saved_snapshot(store).metadata.marine_name == "Committed"


def test_concurrent_flushes_write_each_entry_once(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot)
    pipeline.save()
    store.failing.clear()

    async def _both():
        return await asyncio.gather(pipeline.flush_queue(), pipeline.flush_queue())

    results = asyncio.run(_both())
    assert sum(r["flushed"] for r in results) == 1
    assert len(store.writes_to(SESSION_KEY)) == 1


def test_queue_kept_in_memory_when_it_cannot_be_persisted(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    store.failing[QUEUE_KEY] = "other"
    pipeline = WritePipeline(store, _session(small_catalog).build_snapshot)
    assert pipeline.save() is False
    assert len(pipeline.queue) == 1
    assert pipeline.load_queue() == []


def test_queue_reloaded_by_new_pipeline(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog)
    WritePipeline(store, sess.build_snapshot).save()
    store.failing.clear()
    fresh = WritePipeline(store, sess.build_snapshot)
    assert len(fresh.queue) == 1
    assert asyncio.run(fresh.flush_queue())["flushed"] == 1


def test_fresh_pipeline_does_not_flush_stale_entries_over_newer_save(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = EvaluationSession.start(EvaluationMeta(marine_name="Sgt Doe"), False, small_catalog)
    WritePipeline(store, sess.build_snapshot).save()

    store.failing.clear()
    sess.decide("meets")
    sess.finalize_current("B", "first")
    sess.decide("meets")
    sess.finalize_current("B", "second")
    assert WritePipeline(store, sess.build_snapshot).save()

    fresh = WritePipeline(store, sess.build_snapshot)
    result = asyncio.run(fresh.flush_queue())

    assert result == {"flushed": 0, "dropped": 1, "remaining": 0}
    saved = load_saved_snapshot(store)
    assert len(saved.ledger) == 2
    assert saved.pointer.index == 2


def test_repeated_failures_without_changes_keep_one_queue_entry(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot, sleep=_Sleeps())

    for _ in range(5):
        assert asyncio.run(pipeline.perform_save_with_retry()) is False
    assert len(pipeline.load_queue()) == 1

    sess.update_meta(marine_rank="Cpl")
    assert asyncio.run(pipeline.perform_save_with_retry()) is False
    queue = pipeline.load_queue()
    assert len(queue) == 2
    assert queue[-1]["snapshot"]["metadata"]["marineRank"] == "Cpl"


def test_history_id_follows_injected_clock(small_catalog):
    fixed = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    store = MemoryStore()
    pipeline = WritePipeline(store, _session(small_catalog).build_snapshot, clock=lambda: fixed)
    assert pipeline.save()
    assert pipeline.history()[0]["id"] == int(fixed.timestamp() * 1000)


def test_clear_all_removes_every_key(small_catalog):
    store = FlakyStore()
    store.failing[SESSION_KEY] = "other"
    sess = _session(small_catalog)
    pipeline = WritePipeline(store, sess.build_snapshot)
    pipeline.save()
    store.failing.clear()
    assert pipeline.save()
    assert store.keys()
    pipeline.clear_all()
    assert store.keys() == []
    assert pipeline.queue == []


def test_recovery_offered_only_for_recent_valid_snapshots(small_catalog):
    store = MemoryStore()
    sess = _session(small_catalog)
    assert WritePipeline(store, sess.build_snapshot).save()
    now = datetime.now(timezone.utc)

    snap = check_for_previous_session(store, now)
    assert snap is not None and snap.metadata.marine_name == "Sgt Doe"
    restored = EvaluationSession.from_snapshot(snap, small_catalog)
    assert restored.state.pointer.index == 1
    assert restored.ledger == sess.ledger

    assert check_for_previous_session(store, now + timedelta(hours=25)) is None

    payload = json.loads(store.read(SESSION_KEY))
    payload.pop("metadata")
    store.write(SESSION_KEY, json.dumps(payload))
    assert check_for_previous_session(store, now) is None

    store.write(SESSION_KEY, "{not json")
    assert load_saved_snapshot(store) is None
    assert check_for_previous_session(MemoryStore(), now) is None
