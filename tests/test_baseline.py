"""Tests for segment baseline tracking across resets."""

import hashlib
import json
from decimal import Decimal

import pytest

from ccmetrics.events import EndReason
from ccmetrics.metrics import BaselineTracker, SessionMetricsSnapshot, checkpoint_key
from ccmetrics.store import MemoryStore

KEY = checkpoint_key("/work/project")


def snapshot(cost="1.00", inp=100, out=50, duration=60000, session_id="seg", pct=12.5):
    return SessionMetricsSnapshot(
        session_id=session_id,
        model="Opus 4",
        cost_usd=Decimal(cost),
        duration_ms=duration,
        input_tokens=inp,
        output_tokens=out,
        context_used_percent=pct,
    )


def save_checkpoint(store, cost="1.00", inp=100, out=50, duration=60000):
    store.put(
        KEY,
        json.dumps(
            {
                "cost_usd": cost,
                "duration_ms": duration,
                "input_tokens": inp,
                "output_tokens": out,
                "saved_at": 1,
            }
        ).encode(),
    )


def test_checkpoint_key_is_md5_prefix():
    digest = hashlib.md5(b"/work/project").hexdigest()[:8]
    assert KEY == f"_clear_baseline_{digest}"
    assert checkpoint_key("/work/other") != KEY


class TestComputeDelta:
    """Tests for BaselineTracker.compute_delta."""

    def test_no_checkpoint_plain_end(self):
        store = MemoryStore()
        cumulative = snapshot()

        delta, returned = BaselineTracker(store).compute_delta(
            cumulative, KEY, EndReason.OTHER
        )

        assert delta == cumulative
        assert returned == cumulative
        assert store.get(KEY) is None

    def test_reset_saves_cumulative(self):
        store = MemoryStore()

        BaselineTracker(store).compute_delta(snapshot(), KEY, EndReason.CLEAR)

        saved = json.loads(store.get(KEY))
        assert Decimal(saved["cost_usd"]) == Decimal("1.00")
        assert saved["input_tokens"] == 100
        assert saved["output_tokens"] == 50
        assert saved["duration_ms"] == 60000
        assert saved["saved_at"] > 0

    def test_subtracts_checkpoint(self):
        store = MemoryStore()
        save_checkpoint(store)

        delta, _ = BaselineTracker(store).compute_delta(
            snapshot(cost="1.80", inp=150, out=90, duration=90000), KEY, EndReason.OTHER
        )

        assert delta.cost_usd == Decimal("0.80")
        assert delta.input_tokens == 50
        assert delta.output_tokens == 40
        assert delta.duration_ms == 30000

    def test_model_and_percent_pass_through(self):
        store = MemoryStore()
        save_checkpoint(store)

        delta, _ = BaselineTracker(store).compute_delta(
            snapshot(cost="2.00", inp=200, out=60, pct=77.0), KEY, EndReason.OTHER
        )

        assert delta.model == "Opus 4"
        assert delta.context_used_percent == 77.0

    def test_plain_end_deletes_checkpoint(self):
        store = MemoryStore()
        save_checkpoint(store)

        BaselineTracker(store).compute_delta(
            snapshot(cost="2.00", inp=200, out=60), KEY, EndReason.LOGOUT
        )

        assert store.get(KEY) is None

    def test_reset_overwrites_checkpoint(self):
        store = MemoryStore()
        save_checkpoint(store)

        delta, _ = BaselineTracker(store).compute_delta(
            snapshot(cost="2.00", inp=200, out=60), KEY, EndReason.CLEAR
        )

        assert delta.input_tokens == 100
        saved = json.loads(store.get(KEY))
        assert saved["input_tokens"] == 200
        assert Decimal(saved["cost_usd"]) == Decimal("2.00")

    def test_stale_checkpoint_discarded(self):
        store = MemoryStore()
        save_checkpoint(store, cost="5.00")
        cumulative = snapshot(cost="1.00", inp=100, out=50)

        delta, _ = BaselineTracker(store).compute_delta(cumulative, KEY, EndReason.OTHER)

        assert delta == cumulative
        assert store.get(KEY) is None

    @pytest.mark.parametrize(
        "field,value",
        [("inp", 101), ("out", 51), ("duration", 60001)],
    )
    def test_any_field_exceeding_is_stale(self, field, value):
        store = MemoryStore()
        kwargs = {"cost": "0.50", "inp": 10, "out": 10, "duration": 10}
        kwargs[field] = value
        save_checkpoint(store, **kwargs)
        cumulative = snapshot()

        delta, _ = BaselineTracker(store).compute_delta(cumulative, KEY, EndReason.OTHER)

        assert delta == cumulative
        assert store.get(KEY) is None

    def test_stale_checkpoint_on_reset_saves_fresh_one(self):
        store = MemoryStore()
        save_checkpoint(store, cost="5.00")

        BaselineTracker(store).compute_delta(snapshot(), KEY, EndReason.CLEAR)

        saved = json.loads(store.get(KEY))
        assert Decimal(saved["cost_usd"]) == Decimal("1.00")

    def test_corrupt_checkpoint_treated_as_absent(self):
        store = MemoryStore()
        store.put(KEY, b"not json")
        cumulative = snapshot()

        delta, _ = BaselineTracker(store).compute_delta(cumulative, KEY, EndReason.OTHER)

        assert delta == cumulative
        assert store.get(KEY) is None

    def test_incomplete_checkpoint_treated_as_absent(self):
        store = MemoryStore()
        store.put(KEY, json.dumps({"cost_usd": "0.1"}).encode())
        cumulative = snapshot()

        delta, _ = BaselineTracker(store).compute_delta(cumulative, KEY, EndReason.OTHER)

        assert delta == cumulative

    @pytest.mark.parametrize(
        "field,value",
        [
            ("cost_usd", float("nan")),
            ("cost_usd", float("inf")),
            ("duration_ms", float("inf")),
            ("input_tokens", float("nan")),
            ("output_tokens", 1e400),
        ],
    )
    def test_non_finite_checkpoint_treated_as_absent(self, field, value):
        store = MemoryStore()
        data = {
            "cost_usd": "0.10",
            "duration_ms": 1000,
            "input_tokens": 10,
            "output_tokens": 5,
            "saved_at": 1,
        }
        data[field] = value
        store.put(KEY, json.dumps(data).encode())
        cumulative = snapshot()

        delta, _ = BaselineTracker(store).compute_delta(cumulative, KEY, EndReason.OTHER)

        assert delta == cumulative
        assert store.get(KEY) is None


def test_reset_chain_yields_segment_deltas():
    """Segment A ends with a reset, segment B ends normally in the same workspace."""
    store = MemoryStore()
    tracker = BaselineTracker(store)

    delta_a, _ = tracker.compute_delta(
        snapshot(cost="1.00", inp=100, out=50, session_id="A"), KEY, EndReason.CLEAR
    )
    assert (delta_a.cost_usd, delta_a.input_tokens, delta_a.output_tokens) == (
        Decimal("1.00"),
        100,
        50,
    )
    assert store.get(KEY) is not None

    delta_b, _ = tracker.compute_delta(
        snapshot(cost="1.80", inp=150, out=90, session_id="B"), KEY, EndReason.OTHER
    )
    assert (delta_b.cost_usd, delta_b.input_tokens, delta_b.output_tokens) == (
        Decimal("0.80"),
        50,
        40,
    )
    assert store.get(KEY) is None
