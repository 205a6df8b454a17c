import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple

import pytest

from adapters.vault.abstract import BaseVaultAdapter
from invariants.engine import InvariantEngine
from invariants.models import CheckSettings, StateSnapshot, VaultAdapterConfig
from invariants.store import SnapshotStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_snapshot(vault_id: str = "vault-a", price: int = 100, block_ref=1, total_assets: int = 1_000_000, scale: int = 100) -> StateSnapshot:
    return StateSnapshot(
        vault_id=vault_id,
        block_ref=block_ref,
        total_assets=total_assets,
        total_supply=total_assets,
        underlying_balance=total_assets // 10,
        share_price_basis=price,
        price_scale=scale,
        captured_at=T0,
    )


def make_config(vault_id: str = "vault-a", asset_decimals: int = 6, **checks) -> VaultAdapterConfig:
    return VaultAdapterConfig(
        vault_id=vault_id,
        protocol_kind="fake",
        asset_decimals=asset_decimals,
        checks=CheckSettings(**checks),
    )


class FakeAdapter(BaseVaultAdapter):
    """
    Synthetic adapter: a 1:1 vault whose answers are set per test.

    ``prices`` is consumed one entry per fetch (the last one repeats).
    ``errors`` maps a capability name to the exception it should raise.
    """

    name = "fake"

    def __init__(
        self,
        config: VaultAdapterConfig,
        prices: Sequence[int] = (100,),
        total_assets: int = 1_000_000,
        expected_total_assets: Optional[int] = None,
        round_trip: Tuple[int, int] = (5_000_000, 5_000_000),
        assets_back: Optional[int] = None,
        errors: Optional[Dict[str, Exception]] = None,
    ) -> None:
        super().__init__(config)
        self.prices = list(prices)
        self.total_assets = total_assets
        self.expected_total_assets = expected_total_assets
        self.round_trip = round_trip
        self.assets_back = assets_back
        self.errors = errors or {}
        self.fetch_count = 0
        self.calls = []
        self._lock = threading.Lock()

    def _maybe_raise(self, capability: str) -> None:
        self.calls.append(capability)
        if capability in self.errors:
            raise self.errors[capability]

    def fetch_snapshot(self) -> StateSnapshot:
        self._maybe_raise("fetch_snapshot")
        with self._lock:
            price = self.prices[min(self.fetch_count, len(self.prices) - 1)]
            self.fetch_count += 1
            block = self.fetch_count
        return make_snapshot(self.vault_id, price=price, block_ref=block, total_assets=self.total_assets)

    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        self._maybe_raise("compute_expected_total_assets")
        if self.expected_total_assets is None:
            return snapshot.total_assets
        return self.expected_total_assets

    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        self._maybe_raise("simulate_round_trip")
        self.last_probe = amount
        return self.round_trip

    def convert_to_shares(self, assets: int) -> int:
        self._maybe_raise("convert_to_shares")
        self.last_arbitrage_probe = assets
        return assets

    def convert_to_assets(self, shares: int) -> int:
        self._maybe_raise("convert_to_assets")
        if self.assets_back is None:
            return shares
        return self.assets_back


@pytest.fixture
def store() -> SnapshotStore:
    return SnapshotStore()


@pytest.fixture
def engine(store) -> InvariantEngine:
    return InvariantEngine(store)
