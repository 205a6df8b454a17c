import threading
import time

import pytest
from conftest import FakeAdapter, make_config

from invariants.engine import InvariantEngine, call_with_timeout
from invariants.errors import CycleCancelled, ProtocolCallReverted, SandboxUnavailable, StateUnavailable
from invariants.models import (
    CHECK_NAMES,
    NO_ARBITRAGE,
    ROUND_TRIP,
    SHARE_PRICE_MONOTONIC,
    STATUS_DISABLED,
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_INCONCLUSIVE,
    STATUS_PASSED,
    TOTAL_ASSETS_MATCH,
    CheckSettings,
)
from invariants.store import SnapshotStore


def test_first_cycle_reports_all_checks_in_order(engine, store):
    adapter = FakeAdapter(make_config())

    report = engine.evaluate(adapter)

    assert [r.check_name for r in report.results] == list(CHECK_NAMES)
    assert report.result(TOTAL_ASSETS_MATCH).status == STATUS_PASSED
    assert report.result(SHARE_PRICE_MONOTONIC).status == STATUS_INCONCLUSIVE
    assert report.result(ROUND_TRIP).status == STATUS_PASSED
    assert report.result(NO_ARBITRAGE).status == STATUS_PASSED
    assert report.level == "ok"
    assert store.get("vault-a") == report.snapshot


def test_price_sequence_flat_then_rising_passes(engine):
    adapter = FakeAdapter(make_config(), prices=[100, 100, 101])

    reports = [engine.evaluate(adapter) for _ in range(3)]

    assert reports[0].result(SHARE_PRICE_MONOTONIC).status == STATUS_INCONCLUSIVE
    assert reports[1].result(SHARE_PRICE_MONOTONIC).passed
    assert reports[2].result(SHARE_PRICE_MONOTONIC).passed


def test_price_decrease_reported(engine):
    adapter = FakeAdapter(make_config(), prices=[100, 99])

    engine.evaluate(adapter)
    report = engine.evaluate(adapter)

    result = report.result(SHARE_PRICE_MONOTONIC)
    assert result.status == STATUS_FAILED
    assert result.detail.startswith("ValueExtraction")
    assert report.level == "hard"
    assert report.has_violations()


def test_default_probes_are_one_whole_unit(engine):
    adapter = FakeAdapter(make_config(asset_decimals=6))

    engine.evaluate(adapter)

    assert adapter.last_probe == 1_000_000
    assert adapter.last_arbitrage_probe == 1_000_000


def test_configured_probes_are_used(engine):
    adapter = FakeAdapter(make_config(round_trip_probe=42, arbitrage_probe=7))

    engine.evaluate(adapter)

    assert adapter.last_probe == 42
    assert adapter.last_arbitrage_probe == 7


def test_settings_override_per_call(engine):
    adapter = FakeAdapter(make_config(), round_trip=(5_000_000, 4_995_100))

    report = engine.evaluate(adapter, settings=CheckSettings(round_trip_tolerance_bps=5))

    assert report.result(ROUND_TRIP).status == STATUS_FAILED


def test_snapshot_failure_aborts_without_commit(engine, store):
    adapter = FakeAdapter(make_config(), errors={"fetch_snapshot": StateUnavailable("rpc down")})

    with pytest.raises(StateUnavailable):
        engine.evaluate(adapter)

    assert store.get("vault-a") is None


def test_check_error_does_not_block_siblings(engine, store):
    adapter = FakeAdapter(make_config(), errors={"simulate_round_trip": SandboxUnavailable("no fork")})

    report = engine.evaluate(adapter)

    round_trip = report.result(ROUND_TRIP)
    assert round_trip.status == STATUS_ERROR
    assert round_trip.detail.startswith("SandboxUnavailable")
    assert report.result(TOTAL_ASSETS_MATCH).passed
    assert report.result(NO_ARBITRAGE).passed
    assert report.level == "soft"
    assert store.get("vault-a") is not None


def test_reverted_call_is_alertable(engine):
    adapter = FakeAdapter(make_config(), errors={"convert_to_shares": ProtocolCallReverted("paused")})

    report = engine.evaluate(adapter)

    result = report.result(NO_ARBITRAGE)
    assert result.status == STATUS_ERROR
    assert result.detail.startswith("ProtocolCallReverted")
    assert result.alertable
    assert report.level == "hard"


def test_unexpected_check_exception_is_an_error_result(engine, store):
    adapter = FakeAdapter(make_config(), errors={"convert_to_shares": ZeroDivisionError("division by zero")})

    report = engine.evaluate(adapter)

    result = report.result(NO_ARBITRAGE)
    assert result.status == STATUS_ERROR
    assert result.detail.startswith("ZeroDivisionError")
    assert not result.alertable
    assert report.result(TOTAL_ASSETS_MATCH).passed
    assert report.result(ROUND_TRIP).passed
    assert store.get("vault-a") is not None


def test_per_call_settings_fall_back_to_configured_probes(engine):
    adapter = FakeAdapter(make_config(round_trip_probe=42))

    engine.evaluate(adapter, settings=CheckSettings(arbitrage_probe=7))

    assert adapter.last_probe == 42
    assert adapter.last_arbitrage_probe == 7


def test_disabled_check_is_not_run(engine):
    adapter = FakeAdapter(make_config(enabled={ROUND_TRIP: False, SHARE_PRICE_MONOTONIC: False}))

    report = engine.evaluate(adapter)

    assert report.result(ROUND_TRIP).status == STATUS_DISABLED
    assert report.result(SHARE_PRICE_MONOTONIC).status == STATUS_DISABLED
    assert "simulate_round_trip" not in adapter.calls
    assert report.level == "ok"


def test_cancelled_cycle_does_not_commit(engine, store):
    adapter = FakeAdapter(make_config())
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(CycleCancelled):
        engine.evaluate(adapter, cancel_event=cancel)

    assert store.get("vault-a") is None


class BlockingAdapter(FakeAdapter):
    def __init__(self, config, block_on, release):
        super().__init__(config)
        self.block_on = block_on
        self.release = release

    def fetch_snapshot(self):
        if self.block_on == "fetch_snapshot":
            self.release.wait(5)
        return super().fetch_snapshot()

    def simulate_round_trip(self, amount):
        if self.block_on == "simulate_round_trip":
            self.release.wait(5)
        return super().simulate_round_trip(amount)


def test_slow_simulation_times_out_as_sandbox_unavailable(engine):
    release = threading.Event()
    adapter = BlockingAdapter(make_config(call_timeout=0.2), "simulate_round_trip", release)
    try:
        report = engine.evaluate(adapter)
    finally:
        release.set()

    result = report.result(ROUND_TRIP)
    assert result.status == STATUS_ERROR
    assert result.detail.startswith("SandboxUnavailable")
    assert "timed out" in result.detail


def test_slow_snapshot_times_out_without_commit(engine, store):
    release = threading.Event()
    adapter = BlockingAdapter(make_config(call_timeout=0.2), "fetch_snapshot", release)
    try:
        with pytest.raises(StateUnavailable):
            engine.evaluate(adapter)
    finally:
        release.set()

    assert store.get("vault-a") is None


def test_call_with_timeout_passes_result_through():
    assert call_with_timeout(lambda x: x * 2, 1.0, StateUnavailable, "double", 21) == 42
    assert call_with_timeout(lambda: "no deadline", None, StateUnavailable, "plain") == "no deadline"


class TrackingAdapter(FakeAdapter):
    """Records fetch order and how many cycles overlap for this vault."""

    def __init__(self, config):
        super().__init__(config)
        self.active = 0
        self.max_active = 0
        self.fetch_order = []

    def fetch_snapshot(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.02)
        snapshot = super().fetch_snapshot()
        with self._lock:
            self.fetch_order.append(snapshot.block_ref)
        return snapshot

    def convert_to_assets(self, shares):
        time.sleep(0.02)
        result = super().convert_to_assets(shares)
        with self._lock:
            self.active -= 1
        return result


def test_same_vault_cycles_are_serialized(store):
    engine = InvariantEngine(store)
    adapter = TrackingAdapter(make_config())
    threads = [threading.Thread(target=engine.evaluate, args=(adapter,)) for _ in range(4)]

    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert adapter.max_active == 1
    assert len(adapter.fetch_order) == 4
    assert store.get("vault-a").block_ref == adapter.fetch_order[-1]


def test_different_vaults_run_in_parallel(store):
    engine = InvariantEngine(store)
    barrier = threading.Barrier(2, timeout=5)

    class BarrierAdapter(FakeAdapter):
        def fetch_snapshot(self):
            barrier.wait()
            return super().fetch_snapshot()

    adapters = [BarrierAdapter(make_config("vault-a")), BarrierAdapter(make_config("vault-b"))]
    reports = {}
    errors = []

    def run(adapter):
        try:
            reports[adapter.vault_id] = engine.evaluate(adapter)
        except Exception as exc:  # noqa: BLE001 - surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(a,)) for a in adapters]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert set(reports) == {"vault-a", "vault-b"}
    assert store.get("vault-a").vault_id == "vault-a"
    assert store.get("vault-b").vault_id == "vault-b"


def test_store_is_keyed_per_vault():
    store = SnapshotStore()
    engine = InvariantEngine(store)

    engine.evaluate(FakeAdapter(make_config("vault-a"), prices=[100]))
    report_b = engine.evaluate(FakeAdapter(make_config("vault-b"), prices=[50]))

    assert report_b.result(SHARE_PRICE_MONOTONIC).status == STATUS_INCONCLUSIVE
    assert store.vault_ids() == ["vault-a", "vault-b"]
