import logging
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from web3 import Web3

from adapters.chain import checksum, make_web3
from adapters.vault.abstract import BaseVaultAdapter
from invariants.errors import ProtocolCallReverted, SandboxUnavailable
from invariants.models import VaultAdapterConfig

logger = logging.getLogger(__name__)


class EvmVaultAdapter(BaseVaultAdapter):
    """
    Common wiring for EVM protocol families: a live web3 client for reads
    and a lazily built fork client for sandboxed simulations.
    """

    chain = "evm"

    def __init__(
        self,
        config: VaultAdapterConfig,
        session: Optional[requests.Session] = None,
        w3: Optional[Web3] = None,
        fork_w3: Optional[Web3] = None,
    ) -> None:
        super().__init__(config)
        self.session = session or requests.Session()
        self.w3 = w3 or make_web3(config.rpc_url, session=self.session, timeout=config.request_timeout)
        self._fork_w3 = fork_w3
        self._state_block: Optional[int] = None

    def fork_web3(self) -> Web3:
        if self._fork_w3 is None:
            if not self.config.fork_rpc_url:
                raise SandboxUnavailable(f"Vault '{self.vault_id}' has no fork_rpc_url configured.")
            self._fork_w3 = make_web3(self.config.fork_rpc_url, session=self.session, timeout=self.config.request_timeout)
        return self._fork_w3

    def probe_account(self) -> str:
        if not self.config.probe_account:
            raise SandboxUnavailable(f"Vault '{self.vault_id}' has no probe_account for round-trip simulation.")
        return checksum(self.config.probe_account)

    def latest_block(self) -> int:
        return self.w3.eth.block_number

    def pin_block(self) -> int:
        """Latest block, remembered as the state the cycle's conversions read."""
        self._state_block = self.latest_block()
        return self._state_block

    def state_block(self) -> Any:
        return self._state_block if self._state_block is not None else "latest"

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)

    def transact(self, w3: Web3, call: Any, sender: str, what: str) -> Any:
        """Send a state-changing call from an impersonated account on the fork."""
        tx_hash = call.transact({"from": sender})
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.request_timeout)
        if receipt["status"] != 1:
            raise ProtocolCallReverted(f"{what} reverted in sandbox for vault {self.vault_id}")
        logger.debug("%s: %s mined in block %s", self.vault_id, what, receipt["blockNumber"])
        return receipt
