"""
The four protocol-agnostic invariants.

Each check takes an adapter, the fresh snapshot and the vault's settings
and returns one InvariantResult. Adapter errors propagate; the engine turns
them into error results so one check never blocks its siblings.
"""

from datetime import datetime
from typing import Optional

from .errors import ACCOUNTING_DIVERGENCE, ARBITRAGE_GAP, INCONCLUSIVE, ROUND_TRIP_LOSS, VALUE_EXTRACTION
from .models import (
    NO_ARBITRAGE,
    ROUND_TRIP,
    SHARE_PRICE_MONOTONIC,
    STATUS_FAILED,
    STATUS_INCONCLUSIVE,
    STATUS_PASSED,
    TOTAL_ASSETS_MATCH,
    CheckSettings,
    InvariantResult,
    StateSnapshot,
)
from .tolerance import Number, approx_equal, relative_error_bps


def _compare(
    check_name: str,
    failure_kind: str,
    vault_id: str,
    actual: int,
    expected: int,
    tolerance_bps: Number,
    evaluated_at: datetime,
    label: str,
) -> InvariantResult:
    if approx_equal(actual, expected, tolerance_bps):
        return InvariantResult(
            check_name=check_name,
            status=STATUS_PASSED,
            vault_id=vault_id,
            evaluated_at=evaluated_at,
            actual_value=actual,
            expected_value=expected,
            tolerance_bps=tolerance_bps,
        )
    observed = float(relative_error_bps(actual, expected))
    direction = "below" if actual < expected else "above"
    return InvariantResult(
        check_name=check_name,
        status=STATUS_FAILED,
        vault_id=vault_id,
        evaluated_at=evaluated_at,
        actual_value=actual,
        expected_value=expected,
        tolerance_bps=tolerance_bps,
        detail=(
            f"{failure_kind}: {label} {actual} is {observed:.4f} bps {direction} {expected} "
            f"(tolerance {tolerance_bps} bps)"
        ),
    )


def total_assets_match_expected(adapter, snapshot: StateSnapshot, settings: CheckSettings, now: datetime) -> InvariantResult:
    """Reported totalAssets must match what the protocol's own accounting implies."""
    expected = adapter.compute_expected_total_assets(snapshot)
    return _compare(
        TOTAL_ASSETS_MATCH,
        ACCOUNTING_DIVERGENCE,
        snapshot.vault_id,
        snapshot.total_assets,
        expected,
        settings.total_assets_tolerance_bps,
        now,
        "totalAssets",
    )


def share_price_never_decreases(snapshot: StateSnapshot, prior: Optional[StateSnapshot], now: datetime) -> InvariantResult:
    """
    Strict non-decrease against the previous cycle. Any drop is value lost
    by holders, so there is no tolerance. Without history the check is
    inconclusive, never a violation.
    """
    if prior is None:
        return InvariantResult(
            check_name=SHARE_PRICE_MONOTONIC,
            status=STATUS_INCONCLUSIVE,
            vault_id=snapshot.vault_id,
            evaluated_at=now,
            actual_value=snapshot.share_price_basis,
            detail=f"{INCONCLUSIVE}: no prior snapshot for this vault",
        )

    # Cross-multiply so a changed price scale still compares exactly.
    current = snapshot.share_price_basis * prior.price_scale
    previous = prior.share_price_basis * snapshot.price_scale
    if current >= previous:
        return InvariantResult(
            check_name=SHARE_PRICE_MONOTONIC,
            status=STATUS_PASSED,
            vault_id=snapshot.vault_id,
            evaluated_at=now,
            actual_value=snapshot.share_price_basis,
            expected_value=prior.share_price_basis,
            tolerance_bps=0,
        )
    return InvariantResult(
        check_name=SHARE_PRICE_MONOTONIC,
        status=STATUS_FAILED,
        vault_id=snapshot.vault_id,
        evaluated_at=now,
        actual_value=snapshot.share_price_basis,
        expected_value=prior.share_price_basis,
        tolerance_bps=0,
        detail=(
            f"{VALUE_EXTRACTION}: share price basis fell from {prior.share_price_basis} "
            f"at {prior.block_ref} to {snapshot.share_price_basis} at {snapshot.block_ref}"
        ),
    )


def deposit_withdraw_round_trip(adapter, vault_id: str, probe: int, settings: CheckSettings, now: datetime) -> InvariantResult:
    initial, final = adapter.simulate_round_trip(probe)
    return _compare(
        ROUND_TRIP,
        ROUND_TRIP_LOSS,
        vault_id,
        final,
        initial,
        settings.round_trip_tolerance_bps,
        now,
        f"balance after round trip of {probe}",
    )


def no_arbitrage(adapter, vault_id: str, probe: int, settings: CheckSettings, now: datetime) -> InvariantResult:
    shares = adapter.convert_to_shares(probe)
    assets = adapter.convert_to_assets(shares)
    return _compare(
        NO_ARBITRAGE,
        ARBITRAGE_GAP,
        vault_id,
        assets,
        probe,
        settings.arbitrage_tolerance_bps,
        now,
        f"assets back from {shares} shares",
    )
