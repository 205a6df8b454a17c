"""
Shared EVM plumbing for the vault adapters: web3 client construction,
minimal read ABIs and translation of web3/requests failures into the
monitor's error taxonomy.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Type

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from invariants.errors import ProtocolCallReverted, StateUnavailable, VaultMonitorError

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1


def _fn(name: str, inputs: List[Dict[str, str]], outputs: List[Dict[str, str]], mutability: str = "view") -> Dict[str, Any]:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs,
        "stateMutability": mutability,
        "type": "function",
    }


_UINT = [{"name": "", "type": "uint256"}]

ERC20_ABI = [
    _fn("balanceOf", [{"name": "account", "type": "address"}], _UINT),
    _fn("totalSupply", [], _UINT),
    _fn("decimals", [], [{"name": "", "type": "uint8"}]),
    _fn(
        "approve",
        [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        [{"name": "", "type": "bool"}],
        "nonpayable",
    ),
]

ERC4626_ABI = ERC20_ABI + [
    _fn("asset", [], [{"name": "", "type": "address"}]),
    _fn("totalAssets", [], _UINT),
    _fn("convertToShares", [{"name": "assets", "type": "uint256"}], _UINT),
    _fn("convertToAssets", [{"name": "shares", "type": "uint256"}], _UINT),
    _fn(
        "deposit",
        [{"name": "assets", "type": "uint256"}, {"name": "receiver", "type": "address"}],
        _UINT,
        "nonpayable",
    ),
    _fn(
        "redeem",
        [
            {"name": "shares", "type": "uint256"},
            {"name": "receiver", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        _UINT,
        "nonpayable",
    ),
]

ATOKEN_ABI = ERC20_ABI + [
    _fn("scaledTotalSupply", [], _UINT),
    _fn("UNDERLYING_ASSET_ADDRESS", [], [{"name": "", "type": "address"}]),
]

AAVE_POOL_ABI = [
    _fn("getReserveNormalizedIncome", [{"name": "asset", "type": "address"}], _UINT),
    _fn(
        "supply",
        [
            {"name": "asset", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "onBehalfOf", "type": "address"},
            {"name": "referralCode", "type": "uint16"},
        ],
        [],
        "nonpayable",
    ),
    _fn(
        "withdraw",
        [
            {"name": "asset", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
        ],
        _UINT,
        "nonpayable",
    ),
]


def make_web3(rpc_url: str, session: Optional[requests.Session] = None, timeout: float = 15.0) -> Web3:
    provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}, session=session)
    return Web3(provider)


@contextmanager
def translate_errors(
    what: str,
    unavailable: Type[VaultMonitorError] = StateUnavailable,
) -> Iterator[None]:
    """
    Map a failed chain interaction onto the error taxonomy.

    Reverts become ProtocolCallReverted; anything transport-shaped becomes
    ``unavailable`` (StateUnavailable for reads, SandboxUnavailable inside
    simulations).
    """
    try:
        yield
    except VaultMonitorError:
        raise
    except ContractLogicError as exc:
        logger.error("%s reverted: %s", what, exc)
        raise ProtocolCallReverted(f"{what} reverted: {exc}") from exc
    except (requests.RequestException, Web3Exception, OSError, ValueError) as exc:
        # web3 v6 reports JSON-RPC error responses as a plain ValueError
        logger.debug("%s failed: %s", what, exc)
        raise unavailable(f"{what} failed: {exc}") from exc


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address)
