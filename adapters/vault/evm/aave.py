import logging
from typing import Tuple

from adapters.chain import AAVE_POOL_ABI, ATOKEN_ABI, ERC20_ABI, UINT256_MAX, checksum, translate_errors
from adapters.sandbox import ForkSandbox
from adapters.vault.evm.base import EvmVaultAdapter
from invariants.errors import SandboxUnavailable, StateUnavailable
from invariants.models import RAY, StateSnapshot

logger = logging.getLogger(__name__)

HALF_RAY = RAY // 2


def ray_mul(a: int, b: int) -> int:
    """a * b / RAY, rounded half up (WadRayMath.rayMul)."""
    return (a * b + HALF_RAY) // RAY


def ray_div(a: int, b: int) -> int:
    """a * RAY / b, rounded half up (WadRayMath.rayDiv)."""
    if b == 0:
        raise StateUnavailable("Reserve normalized income is zero; reserve not initialized")
    return (a * RAY + b // 2) // b


class AaveRebasingAdapter(EvmVaultAdapter):
    """
    Aave-style rebasing deposit token (aToken).

    Shares are the scaled balances, the price basis is the reserve's
    normalized income in ray, and the token's totalSupply is the rebased
    asset figure that should equal ``rayMul(scaledTotalSupply, index)``.

    Required addresses: ``pool`` and ``a_token``; ``asset`` is read from the
    aToken when absent.
    """

    name = "aave"

    def _pool(self, w3=None):
        w3 = w3 or self.w3
        return w3.eth.contract(address=checksum(self.config.address("pool")), abi=AAVE_POOL_ABI)

    def _a_token(self, w3=None):
        w3 = w3 or self.w3
        return w3.eth.contract(address=checksum(self.config.address("a_token")), abi=ATOKEN_ABI)

    def _asset_address(self, w3=None) -> str:
        if "asset" in self.config.addresses:
            return checksum(self.config.addresses["asset"])
        return checksum(self._a_token(w3).functions.UNDERLYING_ASSET_ADDRESS().call())

    def _normalized_income(self) -> int:
        return self._pool().functions.getReserveNormalizedIncome(self._asset_address()).call(
            block_identifier=self.state_block()
        )

    def fetch_snapshot(self) -> StateSnapshot:
        with translate_errors(f"{self.vault_id} snapshot"):
            block = self.pin_block()
            a_token = self._a_token()
            asset_address = self._asset_address()
            asset = self.w3.eth.contract(address=asset_address, abi=ERC20_ABI)
            total_assets = a_token.functions.totalSupply().call(block_identifier=block)
            scaled_supply = a_token.functions.scaledTotalSupply().call(block_identifier=block)
            underlying = asset.functions.balanceOf(a_token.address).call(block_identifier=block)
            index = self._pool().functions.getReserveNormalizedIncome(asset_address).call(block_identifier=block)

        logger.debug(
            "%s @%s aToken supply=%s scaled=%s underlying=%s index=%s",
            self.vault_id,
            block,
            total_assets,
            scaled_supply,
            underlying,
            index,
        )
        return StateSnapshot(
            vault_id=self.vault_id,
            block_ref=block,
            total_assets=total_assets,
            total_supply=scaled_supply,
            underlying_balance=underlying,
            share_price_basis=index,
            price_scale=RAY,
            captured_at=self.now(),
        )

    def compute_expected_total_assets(self, snapshot: StateSnapshot) -> int:
        return ray_mul(snapshot.total_supply, snapshot.share_price_basis)

    def convert_to_shares(self, assets: int) -> int:
        with translate_errors(f"{self.vault_id} normalized income"):
            index = self._normalized_income()
        return ray_div(assets, index)

    def convert_to_assets(self, shares: int) -> int:
        with translate_errors(f"{self.vault_id} normalized income"):
            index = self._normalized_income()
        return ray_mul(shares, index)

    def simulate_round_trip(self, amount: int) -> Tuple[int, int]:
        account = self.probe_account()
        with ForkSandbox(self.config.fork_rpc_url, session=self.session, timeout=self.config.request_timeout) as sandbox:
            sandbox.impersonate(account)
            sandbox.fund_gas(account)
            with translate_errors(f"{self.vault_id} round trip", unavailable=SandboxUnavailable):
                w3 = self.fork_web3()
                pool = self._pool(w3)
                a_token = self._a_token(w3)
                asset_address = self._asset_address(w3)
                asset = w3.eth.contract(address=asset_address, abi=ERC20_ABI)

                initial = asset.functions.balanceOf(account).call()
                position_before = a_token.functions.balanceOf(account).call()
                self.transact(w3, asset.functions.approve(pool.address, amount), account, "approve")
                self.transact(w3, pool.functions.supply(asset_address, amount, account, 0), account, "supply")
                position = a_token.functions.balanceOf(account).call() - position_before
                # Pool caps a max-uint withdraw at the full balance, so only withdraw
                # the max when the account held nothing before the probe.
                withdraw_amount = UINT256_MAX if position_before == 0 else position
                self.transact(w3, pool.functions.withdraw(asset_address, withdraw_amount, account), account, "withdraw")
                final = asset.functions.balanceOf(account).call()

        logger.debug("%s round trip of %s: %s -> %s", self.vault_id, amount, initial, final)
        return initial, final
