import logging
from typing import Tuple

from adapters.chain import ERC20_ABI, ERC4626_ABI, checksum, translate_errors
from adapters.sandbox import ForkSandbox
from adapters.vault.evm.base import EvmVaultAdapter
from invariants.errors import SandboxUnavailable
from invariants.models import StateSnapshot

logger = logging.getLogger(__name__)


class Erc4626Adapter(EvmVaultAdapter):
    """
    Generic ERC-4626 vault.

    Share price basis is ``convertToAssets(one share)`` in asset units, so
    the expected total assets are ``totalSupply * basis / one share``.
    """

    name = "erc4626"
    _decimals = None

    def _vault(self, w3=None):
        w3 = w3 or self.w3
        return w3.eth.contract(address=checksum(self.config.address("vault")), abi=ERC4626_ABI)

    def _share_decimals(self) -> int:
        if self.config.share_decimals is not None:
            return self.config.share_decimals
        if self._decimals is None:
            self._decimals = self._vault().functions.decimals().call()
        return self._decimals

    def fetch_snapshot(self) -> StateSnapshot:
        with translate_errors(f"{self.vault_id} snapshot"):
            block = self.pin_block()
            vault = self._vault()
            one_share = 10 ** self._share_decimals()
            total_assets = vault.functions.totalAssets().call(block_identifier=block)
            total_supply = vault.functions.totalSupply().call(block_identifier=block)
            asset_address = vault.functions.asset().call(block_identifier=block)
            asset = self.w3.eth.contract(address=checksum(asset_address), abi=ERC20_ABI)
            idle = asset.functions.balanceOf(vault.address).call(block_identifier=block)
            price = vault.functions.convertToAssets(one_share).call(block_identifier=block)

        logger.debug(
            "%s @%s totalAssets=%s totalSupply=%s idle=%s price=%s",
            self.vault_id,
            block,
            total_assets,
            total_supply,
            idle,
            price,
        )
        return StateSnapshot(
            vault_id=self.vault_id,
            block_ref=block,
            total_assets=total_assets,
            total_supply=total_supply,
            underlying_balance=idle,
            share_price_basis=price,
            price_scale=self.config.one_unit,
            captured_at=self.now(),
        )

    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        with translate_errors(f"{self.vault_id} decimals"):
            share_decimals = self._share_decimals()
        return snapshot.total_supply * snapshot.share_price_basis // 10**share_decimals

    def convert_to_shares(self, assets: int) -> int:
        with translate_errors(f"{self.vault_id} convertToShares"):
            return self._vault().functions.convertToShares(assets).call(block_identifier=self.state_block())

    def convert_to_assets(self, shares: int) -> int:
        with translate_errors(f"{self.vault_id} convertToAssets"):
            return self._vault().functions.convertToAssets(shares).call(block_identifier=self.state_block())

    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        account = self.probe_account()
        with ForkSandbox(self.config.fork_rpc_url, session=self.session, timeout=self.config.request_timeout) as sandbox:
            sandbox.impersonate(account)
            sandbox.fund_gas(account)
            with translate_errors(f"{self.vault_id} round trip", unavailable=SandboxUnavailable):
                w3 = self.fork_web3()
                vault = self._vault(w3)
                asset = w3.eth.contract(address=checksum(vault.functions.asset().call()), abi=ERC20_ABI)

                initial = asset.functions.balanceOf(account).call()
                shares_before = vault.functions.balanceOf(account).call()
                self.transact(w3, asset.functions.approve(vault.address, amount), account, "approve")
                self.transact(w3, vault.functions.deposit(amount, account), account, "deposit")
                minted = vault.functions.balanceOf(account).call() - shares_before
                self.transact(w3, vault.functions.redeem(minted, account, account), account, "redeem")
                final = asset.functions.balanceOf(account).call()

        logger.debug("%s round trip of %s: %s -> %s", self.vault_id, amount, initial, final)
        return initial, final
