from conftest import T0, FakeAdapter, make_config, make_snapshot

from invariants import checks
from invariants.models import STATUS_FAILED, STATUS_INCONCLUSIVE, STATUS_PASSED, CheckSettings


def test_total_assets_within_default_tolerance():
    total = 1_000_000_000
    adapter = FakeAdapter(make_config(), total_assets=total, expected_total_assets=total * 995 // 1000)
    snapshot = adapter.fetch_snapshot()

    result = checks.total_assets_match_expected(adapter, snapshot, CheckSettings(), T0)

    assert result.status == STATUS_PASSED
    assert result.actual_value == total
    assert result.expected_value == 995_000_000


def test_total_assets_divergence_at_tight_tolerance():
    total = 1_000_000_000
    adapter = FakeAdapter(make_config(), total_assets=total, expected_total_assets=total * 995 // 1000)
    snapshot = adapter.fetch_snapshot()

    result = checks.total_assets_match_expected(adapter, snapshot, CheckSettings(total_assets_tolerance_bps=10), T0)

    assert result.status == STATUS_FAILED
    assert result.detail.startswith("AccountingDivergence")


def test_share_price_first_cycle_is_inconclusive():
    result = checks.share_price_never_decreases(make_snapshot(price=100), None, T0)

    assert result.status == STATUS_INCONCLUSIVE
    assert not result.passed
    assert not result.alertable
    assert "ValueExtraction" not in result.detail


def test_share_price_decrease_is_value_extraction():
    result = checks.share_price_never_decreases(make_snapshot(price=99, block_ref=2), make_snapshot(price=100), T0)

    assert result.status == STATUS_FAILED
    assert result.detail.startswith("ValueExtraction")
    assert result.alertable


def test_share_price_flat_or_rising_passes():
    flat = checks.share_price_never_decreases(make_snapshot(price=100), make_snapshot(price=100), T0)
    rising = checks.share_price_never_decreases(make_snapshot(price=101), make_snapshot(price=100), T0)

    assert flat.passed
    assert rising.passed


def test_share_price_any_drop_counts():
    prior = make_snapshot(price=10**27 + 1, scale=10**27)
    current = make_snapshot(price=10**27, scale=10**27)

    assert checks.share_price_never_decreases(current, prior, T0).status == STATUS_FAILED


def test_share_price_compares_across_scales():
    prior = make_snapshot(price=100, scale=100)
    current = make_snapshot(price=1_000_000, scale=1_000_000)

    assert checks.share_price_never_decreases(current, prior, T0).passed


def test_round_trip_small_loss_passes_default():
    adapter = FakeAdapter(make_config(), round_trip=(5_000_000, 4_995_100))

    result = checks.deposit_withdraw_round_trip(adapter, "vault-a", 1_000_000, CheckSettings(), T0)

    assert result.passed
    assert adapter.last_probe == 1_000_000


def test_round_trip_loss_beyond_configured_tolerance():
    adapter = FakeAdapter(make_config(), round_trip=(5_000_000, 4_995_100))

    result = checks.deposit_withdraw_round_trip(adapter, "vault-a", 1_000_000, CheckSettings(round_trip_tolerance_bps=5), T0)

    assert result.status == STATUS_FAILED
    assert result.detail.startswith("RoundTripLoss")
    assert result.actual_value == 4_995_100
    assert result.expected_value == 5_000_000


def test_arbitrage_rounding_loss_within_one_bp():
    adapter = FakeAdapter(make_config(asset_decimals=18), assets_back=999_900_000_000_000_000)

    result = checks.no_arbitrage(adapter, "vault-a", 10**18, CheckSettings(), T0)

    assert result.passed


def test_arbitrage_gap_at_tighter_tolerance():
    adapter = FakeAdapter(make_config(asset_decimals=18), assets_back=999_900_000_000_000_000)

    result = checks.no_arbitrage(adapter, "vault-a", 10**18, CheckSettings(arbitrage_tolerance_bps="0.1"), T0)

    assert result.status == STATUS_FAILED
    assert result.detail.startswith("ArbitrageGap")


def test_arbitrage_gain_is_also_a_gap():
    adapter = FakeAdapter(make_config(), assets_back=1_010_000)

    result = checks.no_arbitrage(adapter, "vault-a", 1_000_000, CheckSettings(), T0)

    assert result.status == STATUS_FAILED
    assert "above" in result.detail
