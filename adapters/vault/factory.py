from typing import Callable, Dict, Optional

import requests

from adapters.vault.abstract import VaultStateAdapter
from adapters.vault.evm.aave import AaveRebasingAdapter
from adapters.vault.evm.erc4626 import Erc4626Adapter
from invariants.errors import ConfigError
from invariants.models import VaultAdapterConfig

AdapterBuilder = Callable[..., VaultStateAdapter]

# Protocol registry; extend this dict when adding new protocol families.
ADAPTERS: Dict[str, AdapterBuilder] = {
    "erc4626": Erc4626Adapter,
    "aave": AaveRebasingAdapter,
}

ALIASES = {
    "erc-4626": "erc4626",
    "4626": "erc4626",
    "aave_v3": "aave",
    "aave-v3": "aave",
    "atoken": "aave",
}


def normalize_kind(protocol_kind: str) -> str:
    kind = (protocol_kind or "").strip().lower()
    return ALIASES.get(kind, kind)


def build_adapter(config: VaultAdapterConfig, session: Optional[requests.Session] = None) -> VaultStateAdapter:
    """
    Dispatch to the protocol-specific adapter for ``config.protocol_kind``.
    """
    kind = normalize_kind(config.protocol_kind)
    builder = ADAPTERS.get(kind)
    if builder is None:
        raise ConfigError(f"Unknown protocol kind '{config.protocol_kind}'. Available: {list(ADAPTERS)}")
    return builder(config, session=session)
