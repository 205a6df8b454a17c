from typing import Callable, Dict, Protocol, Tuple, TypeVar, runtime_checkable

from invariants.errors import CapabilityNotImplemented
from invariants.models import (
    NO_ARBITRAGE,
    ROUND_TRIP,
    SHARE_PRICE_MONOTONIC,
    TOTAL_ASSETS_MATCH,
    StateSnapshot,
    VaultAdapterConfig,
)

F = TypeVar("F", bound=Callable)

# Capabilities each check needs beyond fetch_snapshot, which every cycle needs.
REQUIRED_CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    TOTAL_ASSETS_MATCH: ("compute_expected_total_assets",),
    SHARE_PRICE_MONOTONIC: (),
    ROUND_TRIP: ("simulate_round_trip",),
    NO_ARBITRAGE: ("convert_to_shares", "convert_to_assets"),
}
BASE_CAPABILITIES: Tuple[str, ...] = ("fetch_snapshot",)


@runtime_checkable
class VaultStateAdapter(Protocol):
    """
    Adapter interface for one monitored vault.

    Reads go to live state; simulate_round_trip must only ever touch an
    isolated sandbox that is discarded when the call returns.
    """

    name: str
    config: VaultAdapterConfig

    def fetch_snapshot(self) -> StateSnapshot:
        ...

    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        ...

    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        ...

    def convert_to_shares(self, assets: int) -> int:
        ...

    def convert_to_assets(self, shares: int) -> int:
        ...


def unimplemented(func: F) -> F:
    """Mark a capability stub so registration can reject it up front."""
    func.__unimplemented__ = True  # type: ignore[attr-defined]
    return func


def is_implemented(adapter: object, capability: str) -> bool:
    method = getattr(adapter, capability, None)
    if not callable(method):
        return False
    return not getattr(method, "__unimplemented__", False)


class BaseVaultAdapter:
    """
    Shared plumbing for concrete adapters. Capabilities a protocol family
    does not support stay as stubs and raise instead of returning a default.
    """

    name = "base"

    def __init__(self, config: VaultAdapterConfig) -> None:
        self.config = config

    @property
    def vault_id(self) -> str:
        return self.config.vault_id

    def _missing(self, capability: str) -> CapabilityNotImplemented:
        return CapabilityNotImplemented(f"{self.name} adapter does not implement {capability}")

    @unimplemented
    def fetch_snapshot(self) -> StateSnapshot:
        raise self._missing("fetch_snapshot")

    @unimplemented
    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        raise self._missing("compute_expected_total_assets")

    @unimplemented
    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        raise self._missing("simulate_round_trip")

    @unimplemented
    def convert_to_shares(self, assets: int) -> int:
        raise self._missing("convert_to_shares")

    @unimplemented
    def convert_to_assets(self, shares: int) -> int:
        raise self._missing("convert_to_assets")
