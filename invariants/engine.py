import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from . import checks
from .errors import (
    DISABLED,
    TRANSIENT_KINDS,
    CycleCancelled,
    SandboxUnavailable,
    StateUnavailable,
    VaultMonitorError,
)
from .models import (
    CHECK_NAMES,
    NO_ARBITRAGE,
    ROUND_TRIP,
    SHARE_PRICE_MONOTONIC,
    STATUS_DISABLED,
    STATUS_ERROR,
    STATUS_FAILED,
    TOTAL_ASSETS_MATCH,
    CheckSettings,
    EvaluationReport,
    InvariantResult,
    StateSnapshot,
)
from .store import SnapshotStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def call_with_timeout(
    fn: Callable[..., Any],
    timeout: Optional[float],
    error_cls: Type[VaultMonitorError],
    what: str,
    *args: Any,
) -> Any:
    """
    Run ``fn`` with a deadline. A call that overruns surfaces as ``error_cls``;
    the worker thread is abandoned rather than joined.
    """
    if timeout is None:
        return fn(*args)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="adapter-call")
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise error_cls(f"{what} timed out after {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)


class BoundedAdapter:
    """Adapter proxy that puts the vault's call_timeout on every capability."""

    def __init__(self, adapter, timeout: Optional[float]) -> None:
        self.adapter = adapter
        self.timeout = timeout

    def fetch_snapshot(self) -> StateSnapshot:
        return call_with_timeout(self.adapter.fetch_snapshot, self.timeout, StateUnavailable, "fetch_snapshot")

    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        return call_with_timeout(
            self.adapter.compute_expected_total_assets,
            self.timeout,
            StateUnavailable,
            "compute_expected_total_assets",
            snapshot,
        )

    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        return call_with_timeout(
            self.adapter.simulate_round_trip, self.timeout, SandboxUnavailable, "simulate_round_trip", amount
        )

    def convert_to_shares(self, assets: int) -> int:
        return call_with_timeout(self.adapter.convert_to_shares, self.timeout, StateUnavailable, "convert_to_shares", assets)

    def convert_to_assets(self, shares: int) -> int:
        return call_with_timeout(self.adapter.convert_to_assets, self.timeout, StateUnavailable, "convert_to_assets", shares)


class InvariantEngine:
    """
    Runs one evaluation cycle per call:

      fetch snapshot -> checks 1, 3, 4 -> check 2 against stored history
      -> commit the fresh snapshot -> return the full report

    Cycles for the same vault are serialized on a per-vault lock held for
    the whole cycle; different vaults share nothing and run in parallel.
    History is committed only after every check has finished, so an aborted
    or cancelled cycle leaves the store untouched.
    """

    def __init__(self, store: SnapshotStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def vault_lock(self, vault_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(vault_id)
            if lock is None:
                lock = self._locks[vault_id] = threading.Lock()
            return lock

    def evaluate(
        self,
        adapter,
        settings: Optional[CheckSettings] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EvaluationReport:
        config = adapter.config
        vault_id = config.vault_id
        settings = settings or config.checks
        bounded = BoundedAdapter(adapter, settings.call_timeout)
        round_trip_probe = settings.round_trip_probe or config.round_trip_probe
        arbitrage_probe = settings.arbitrage_probe or config.arbitrage_probe

        with self.vault_lock(vault_id):
            started_at = self.clock()
            logger.info("Evaluation cycle started for %s", vault_id)
            try:
                snapshot = bounded.fetch_snapshot()
            except VaultMonitorError as exc:
                logger.error("Cycle for %s aborted, snapshot unavailable: %s", vault_id, exc)
                raise
            if snapshot.vault_id != vault_id:
                raise StateUnavailable(f"Adapter for '{vault_id}' returned a snapshot of '{snapshot.vault_id}'")

            results: Dict[str, InvariantResult] = {}
            results[TOTAL_ASSETS_MATCH] = self._run(
                TOTAL_ASSETS_MATCH,
                vault_id,
                settings,
                lambda now: checks.total_assets_match_expected(bounded, snapshot, settings, now),
            )
            self._check_cancelled(cancel_event, vault_id)
            results[ROUND_TRIP] = self._run(
                ROUND_TRIP,
                vault_id,
                settings,
                lambda now: checks.deposit_withdraw_round_trip(bounded, vault_id, round_trip_probe, settings, now),
            )
            self._check_cancelled(cancel_event, vault_id)
            results[NO_ARBITRAGE] = self._run(
                NO_ARBITRAGE,
                vault_id,
                settings,
                lambda now: checks.no_arbitrage(bounded, vault_id, arbitrage_probe, settings, now),
            )
            prior = self.store.get(vault_id)
            results[SHARE_PRICE_MONOTONIC] = self._run(
                SHARE_PRICE_MONOTONIC,
                vault_id,
                settings,
                lambda now: checks.share_price_never_decreases(snapshot, prior, now),
            )

            self._check_cancelled(cancel_event, vault_id)
            self.store.put(vault_id, snapshot)
            report = EvaluationReport(
                vault_id=vault_id,
                snapshot=snapshot,
                results=tuple(results[name] for name in CHECK_NAMES),
                started_at=started_at,
                finished_at=self.clock(),
            )

        logger.info(
            "Evaluation cycle finished for %s at %s: level=%s %s",
            vault_id,
            snapshot.block_ref,
            report.level,
            ", ".join(f"{r.check_name}={r.status}" for r in report.results),
        )
        return report

    def _run(
        self,
        check_name: str,
        vault_id: str,
        settings: CheckSettings,
        check: Callable[[datetime], InvariantResult],
    ) -> InvariantResult:
        now = self.clock()
        if not settings.is_enabled(check_name):
            return InvariantResult(
                check_name=check_name,
                status=STATUS_DISABLED,
                vault_id=vault_id,
                evaluated_at=now,
                detail=f"{DISABLED}: check disabled for this vault",
            )
        try:
            result = check(now)
        except VaultMonitorError as exc:
            log = logger.warning if exc.kind in TRANSIENT_KINDS else logger.error
            log("%s on %s could not be evaluated: %s", check_name, vault_id, exc)
            return self._error_result(check_name, vault_id, now, f"{exc.kind}: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s on %s raised unexpectedly", check_name, vault_id)
            return self._error_result(check_name, vault_id, now, f"{type(exc).__name__}: {exc}")
        if result.status == STATUS_FAILED:
            logger.warning("Invariant violated on %s: %s", vault_id, result.detail)
        return result

    @staticmethod
    def _error_result(check_name: str, vault_id: str, now: datetime, detail: str) -> InvariantResult:
        return InvariantResult(
            check_name=check_name,
            status=STATUS_ERROR,
            vault_id=vault_id,
            evaluated_at=now,
            detail=detail,
        )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], vault_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Cycle for %s cancelled before commit", vault_id)
            raise CycleCancelled(f"Cycle for '{vault_id}' cancelled; history not updated")
