from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import ConfigError
from .tolerance import Number, as_fraction

TOTAL_ASSETS_MATCH = "total_assets_match_expected"
SHARE_PRICE_MONOTONIC = "share_price_never_decreases"
ROUND_TRIP = "deposit_withdraw_round_trip"
NO_ARBITRAGE = "no_arbitrage"

# Report order is fixed regardless of the order the checks run in.
CHECK_NAMES: Tuple[str, ...] = (TOTAL_ASSETS_MATCH, SHARE_PRICE_MONOTONIC, ROUND_TRIP, NO_ARBITRAGE)

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_INCONCLUSIVE = "inconclusive"
STATUS_ERROR = "error"
STATUS_DISABLED = "disabled"

RAY = 10**27


@dataclass(frozen=True)
class StateSnapshot:
    """
    Point-in-time view of one vault's accounting.

    share_price_basis is a fixed-point value; price_scale is the
    protocol-declared unit (RAY for Aave's normalized income,
    10**asset_decimals for an ERC-4626 share price).
    """

    vault_id: str
    block_ref: Union[int, str]
    total_assets: int
    total_supply: int
    underlying_balance: int
    share_price_basis: int
    price_scale: int
    captured_at: datetime

    def __post_init__(self) -> None:
        for name in ("total_assets", "total_supply", "underlying_balance", "share_price_basis"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.price_scale <= 0:
            raise ValueError(f"price_scale must be positive, got {self.price_scale}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "block_ref": self.block_ref,
            "total_assets": self.total_assets,
            "total_supply": self.total_supply,
            "underlying_balance": self.underlying_balance,
            "share_price_basis": self.share_price_basis,
            "price_scale": self.price_scale,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StateSnapshot":
        return cls(
            vault_id=raw["vault_id"],
            block_ref=raw["block_ref"],
            total_assets=int(raw["total_assets"]),
            total_supply=int(raw["total_supply"]),
            underlying_balance=int(raw["underlying_balance"]),
            share_price_basis=int(raw["share_price_basis"]),
            price_scale=int(raw["price_scale"]),
            captured_at=datetime.fromisoformat(raw["captured_at"]),
        )


@dataclass(frozen=True)
class CheckSettings:
    """Per-vault policy for the four checks. None probes mean one whole asset unit."""

    round_trip_probe: Optional[int] = None
    arbitrage_probe: Optional[int] = None
    total_assets_tolerance_bps: Number = 100
    round_trip_tolerance_bps: Number = 100
    arbitrage_tolerance_bps: Number = 1
    enabled: Mapping[str, bool] = field(default_factory=dict)
    call_timeout: Optional[float] = 30.0

    def __post_init__(self) -> None:
        for name in ("total_assets_tolerance_bps", "round_trip_tolerance_bps", "arbitrage_tolerance_bps"):
            if as_fraction(getattr(self, name)) < 0:
                raise ConfigError(f"{name} must be non-negative")
        for name in ("round_trip_probe", "arbitrage_probe"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive")
        unknown = set(self.enabled) - set(CHECK_NAMES)
        if unknown:
            raise ConfigError(f"Unknown checks in enabled flags: {sorted(unknown)}. Available: {list(CHECK_NAMES)}")
        object.__setattr__(self, "enabled", MappingProxyType(dict(self.enabled)))

    def is_enabled(self, check_name: str) -> bool:
        return self.enabled.get(check_name, True)


@dataclass(frozen=True)
class VaultAdapterConfig:
    """Static configuration for a single monitored vault."""

    vault_id: str
    protocol_kind: str
    addresses: Mapping[str, str] = field(default_factory=dict)
    asset_decimals: int = 18
    share_decimals: Optional[int] = None
    rpc_url: str = "http://127.0.0.1:8545"
    fork_rpc_url: Optional[str] = None
    probe_account: Optional[str] = None
    display_name: Optional[str] = None
    request_timeout: float = 15.0
    checks: CheckSettings = field(default_factory=CheckSettings)

    def __post_init__(self) -> None:
        if not self.vault_id:
            raise ConfigError("vault_id is required")
        if self.asset_decimals < 0:
            raise ConfigError("asset_decimals must be non-negative")
        object.__setattr__(self, "addresses", MappingProxyType(dict(self.addresses)))

    @property
    def one_unit(self) -> int:
        return 10**self.asset_decimals

    @property
    def round_trip_probe(self) -> int:
        return self.checks.round_trip_probe or self.one_unit

    @property
    def arbitrage_probe(self) -> int:
        return self.checks.arbitrage_probe or self.one_unit

    def address(self, name: str) -> str:
        try:
            return self.addresses[name]
        except KeyError:
            raise ConfigError(f"Vault '{self.vault_id}' is missing the '{name}' address") from None


@dataclass(frozen=True)
class InvariantResult:
    check_name: str
    status: str
    vault_id: str
    evaluated_at: datetime
    actual_value: Optional[int] = None
    expected_value: Optional[int] = None
    tolerance_bps: Optional[Number] = None
    detail: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == STATUS_PASSED

    @property
    def alertable(self) -> bool:
        """Violations and reverted protocol calls page someone; the rest does not."""
        if self.status == STATUS_FAILED:
            return True
        return self.status == STATUS_ERROR and bool(self.detail) and self.detail.startswith("ProtocolCallReverted")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.check_name,
            "status": self.status,
            "passed": self.passed,
            "vault_id": self.vault_id,
            "evaluated_at": self.evaluated_at.isoformat(),
            "actual": None if self.actual_value is None else str(self.actual_value),
            "expected": None if self.expected_value is None else str(self.expected_value),
            "tolerance_bps": None if self.tolerance_bps is None else str(self.tolerance_bps),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class EvaluationReport:
    vault_id: str
    snapshot: StateSnapshot
    results: Tuple[InvariantResult, ...]
    started_at: datetime
    finished_at: datetime

    def result(self, check_name: str) -> InvariantResult:
        for result in self.results:
            if result.check_name == check_name:
                return result
        raise KeyError(check_name)

    def has_violations(self) -> bool:
        return any(r.status == STATUS_FAILED for r in self.results)

    @property
    def level(self) -> str:
        """hard / soft / ok, same scale the risk rules use."""
        if any(r.alertable for r in self.results):
            return "hard"
        if any(r.status == STATUS_ERROR for r in self.results):
            return "soft"
        return "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "level": self.level,
            "block_ref": self.snapshot.block_ref,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
            "snapshot": self.snapshot.to_dict(),
        }
