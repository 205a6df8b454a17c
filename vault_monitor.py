import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import requests

from adapters.vault.factory import build_adapter
from invariants.engine import InvariantEngine
from invariants.errors import TRANSIENT_KINDS, ConfigError, VaultMonitorError
from invariants.models import CheckSettings, VaultAdapterConfig
from invariants.registry import AdapterRegistry
from invariants.reporter import LoggingReporter, ResultReporter, summarize
from invariants.store import JsonFileSnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/vaults.json"

_CHECK_FIELDS = (
    "round_trip_probe",
    "arbitrage_probe",
    "total_assets_tolerance_bps",
    "round_trip_tolerance_bps",
    "arbitrage_tolerance_bps",
    "call_timeout",
)


def config_from_dict(vault_id: str, raw: Mapping[str, Any]) -> VaultAdapterConfig:
    """
    Build a vault config from one registry entry. URLs may reference
    environment variables (``"${MAINNET_RPC_URL}"``).
    """
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Vault '{vault_id}' entry must be an object")
    protocol = raw.get("protocol") or raw.get("protocol_kind")
    if not protocol:
        raise ConfigError(f"Vault '{vault_id}' has no protocol")

    checks_raw = raw.get("checks") or {}
    check_kwargs = {name: checks_raw[name] for name in _CHECK_FIELDS if name in checks_raw}
    if "enabled" in checks_raw:
        check_kwargs["enabled"] = {name: bool(flag) for name, flag in checks_raw["enabled"].items()}

    fork_rpc_url = raw.get("fork_rpc_url")
    try:
        return VaultAdapterConfig(
            vault_id=vault_id,
            protocol_kind=protocol,
            addresses=dict(raw.get("addresses") or {}),
            asset_decimals=int(raw.get("asset_decimals", 18)),
            share_decimals=raw.get("share_decimals"),
            rpc_url=os.path.expandvars(raw.get("rpc_url", "http://127.0.0.1:8545")),
            fork_rpc_url=os.path.expandvars(fork_rpc_url) if fork_rpc_url else None,
            probe_account=raw.get("probe_account"),
            display_name=raw.get("display_name") or raw.get("name"),
            request_timeout=float(raw.get("request_timeout", 15.0)),
            checks=CheckSettings(**check_kwargs),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config for vault '{vault_id}': {exc}") from exc


def load_vault_configs(path: Optional[Union[str, Path]] = None) -> Dict[str, VaultAdapterConfig]:
    """
    Load the vault registry from JSON. A missing file means no vaults; a
    malformed one is an error. Path defaults to VAULT_CONFIG_PATH.
    """
    path = Path(path or os.getenv("VAULT_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    if not path.exists():
        logger.warning("Vault registry %s not found; monitoring nothing", path)
        return {}
    try:
        raw = json.loads(path.read_text())
    except ValueError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be an object at root")
    return {vault_id: config_from_dict(vault_id, entry) for vault_id, entry in raw.items()}


class VaultMonitor:
    """
    Drives evaluation cycles for every registered vault.

    - One adapter per vault, validated at registration.
    - run_cycle() returns a unified record whether the cycle completed or
      aborted, so a scheduler can log/forward it without special cases.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        store: Optional[SnapshotStore] = None,
        reporters: Optional[Iterable[ResultReporter]] = None,
    ) -> None:
        self.session = session or requests.Session()
        self.store = store if store is not None else SnapshotStore()
        self.engine = InvariantEngine(self.store)
        self.registry = AdapterRegistry()
        self.reporters: List[ResultReporter] = list(reporters) if reporters is not None else [LoggingReporter()]

    @classmethod
    def from_env(cls, config_path: Optional[str] = None) -> "VaultMonitor":
        store_path = os.getenv("SNAPSHOT_STORE_PATH")
        store = JsonFileSnapshotStore(store_path) if store_path else SnapshotStore()
        monitor = cls(store=store)
        for config in load_vault_configs(config_path).values():
            monitor.add_vault(config)
        return monitor

    def add_vault(self, config: VaultAdapterConfig, adapter=None):
        adapter = adapter or build_adapter(config, session=self.session)
        return self.registry.register(adapter)

    def vault_ids(self) -> List[str]:
        return self.registry.vault_ids()

    # --- cycles ---
    def run_cycle(self, vault_id: str, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Shape:
          {
            "timestamp": 1700000000,
            "vault": {"id": ..., "protocol": ..., "name": ...},
            "ok": bool,
            "report": {...} | None,
            "summary": {...} | None,
            "error": {"kind": ..., "message": ..., "retryable": bool} | None
          }
        """
        adapter = self.registry.get(vault_id)
        config = adapter.config
        record: Dict[str, Any] = {
            "timestamp": int(time.time()),
            "vault": {
                "id": vault_id,
                "protocol": config.protocol_kind,
                "name": config.display_name or vault_id,
                "adapter": getattr(adapter, "name", "unknown"),
            },
            "ok": False,
            "report": None,
            "summary": None,
            "error": None,
        }

        try:
            report = self.engine.evaluate(adapter, cancel_event=cancel_event)
        except VaultMonitorError as exc:
            record["error"] = {"kind": exc.kind, "message": str(exc), "retryable": exc.kind in TRANSIENT_KINDS}
            return record
        except Exception as exc:  # noqa: BLE001
            logger.exception("Cycle for %s failed unexpectedly", vault_id)
            record["error"] = {"kind": type(exc).__name__, "message": str(exc), "retryable": False}
            return record

        record["ok"] = True
        record["report"] = report.to_dict()
        record["summary"] = summarize(report)
        for reporter in self.reporters:
            reporter.publish(report)
        return record

    def run_all(self, max_workers: int = 8) -> List[Dict[str, Any]]:
        """One cycle per registered vault, fanned out across threads."""
        vault_ids = self.vault_ids()
        if not vault_ids:
            return []
        with ThreadPoolExecutor(max_workers=min(max_workers, len(vault_ids)), thread_name_prefix="vault-cycle") as pool:
            return list(pool.map(self.run_cycle, vault_ids))

    def history(self, vault_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self.store.get(vault_id)
        return snapshot.to_dict() if snapshot else None


# Example usage (kept minimal; do not run network calls on import)
if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    monitor = VaultMonitor.from_env()
    for record in monitor.run_all():
        print(json.dumps(record, indent=2, default=str))
