import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from invariants.errors import SandboxUnavailable

logger = logging.getLogger(__name__)

# One simulation at a time per fork node: evm_snapshot/evm_revert are node-global.
_fork_locks: Dict[str, threading.Lock] = {}
_fork_locks_guard = threading.Lock()

DEFAULT_GAS_FUNDING = 10 * 10**18


def _lock_for(url: str) -> threading.Lock:
    with _fork_locks_guard:
        lock = _fork_locks.get(url)
        if lock is None:
            lock = _fork_locks[url] = threading.Lock()
        return lock


class ForkSandbox:
    """
    Copy-on-write view of chain state backed by a fork node (anvil / hardhat).

    Entering takes an ``evm_snapshot``; leaving always reverts to it, so
    whatever the simulation mutated is gone before anyone else can use the
    node. The fork endpoint is never the live endpoint the snapshot reads go to.

        with ForkSandbox(cfg.fork_rpc_url, session=session) as sandbox:
            sandbox.impersonate(account)
            ...
    """

    def __init__(
        self,
        fork_rpc_url: Optional[str],
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        if not fork_rpc_url:
            raise SandboxUnavailable("No fork endpoint configured for round-trip simulation.")
        self.fork_rpc_url = fork_rpc_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._snapshot_id: Optional[str] = None
        self._lock = _lock_for(fork_rpc_url)
        self._impersonated: List[str] = []
        self._prefix: Optional[str] = None

    # --- RPC helpers ---
    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = self.session.post(self.fork_rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise SandboxUnavailable(f"Fork RPC {method} failed: {exc}") from exc
        if "error" in data:
            raise SandboxUnavailable(f"Fork RPC error on {method}: {data['error']}")
        return data.get("result")

    def __enter__(self) -> "ForkSandbox":
        if not self._lock.acquire(timeout=self.timeout):
            raise SandboxUnavailable(f"Fork node {self.fork_rpc_url} busy for more than {self.timeout}s")
        try:
            self._snapshot_id = self._rpc("evm_snapshot", [])
        except SandboxUnavailable:
            self._lock.release()
            raise
        logger.debug("Sandbox %s opened at snapshot %s", self.fork_rpc_url, self._snapshot_id)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        cleanup_error: Optional[SandboxUnavailable] = None
        try:
            for account in self._impersonated:
                try:
                    self._rpc(f"{self._node_prefix()}_stopImpersonatingAccount", [account])
                except SandboxUnavailable as err:
                    logger.warning("Sandbox %s could not stop impersonating %s: %s", self.fork_rpc_url, account, err)
                    cleanup_error = cleanup_error or err
            reverted = self._rpc("evm_revert", [self._snapshot_id])
            if reverted is False:
                raise SandboxUnavailable(f"Fork node refused to revert snapshot {self._snapshot_id}")
            logger.debug("Sandbox %s reverted to %s", self.fork_rpc_url, self._snapshot_id)
        finally:
            self._impersonated = []
            self._snapshot_id = None
            self._lock.release()
        if cleanup_error is not None:
            raise cleanup_error

    def _node_prefix(self) -> str:
        """Namespace of the node's test methods: ``anvil_*`` or ``hardhat_*``."""
        if self._prefix is None:
            version = self._rpc("web3_clientVersion", []) or ""
            self._prefix = "hardhat" if "hardhat" in str(version).lower() else "anvil"
        return self._prefix

    # --- account setup ---
    def impersonate(self, account: str) -> None:
        self._rpc(f"{self._node_prefix()}_impersonateAccount", [account])
        self._impersonated.append(account)

    def fund_gas(self, account: str, wei: int = DEFAULT_GAS_FUNDING) -> None:
        self._rpc(f"{self._node_prefix()}_setBalance", [account, hex(wei)])
