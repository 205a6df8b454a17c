import logging
import threading
from typing import Dict, List, Optional

from adapters.vault.abstract import BASE_CAPABILITIES, REQUIRED_CAPABILITIES, is_implemented
from .errors import CapabilityNotImplemented, ConfigError
from .models import CHECK_NAMES, CheckSettings

logger = logging.getLogger(__name__)


def missing_capabilities(adapter: object, checks: CheckSettings) -> List[str]:
    """Capabilities the enabled checks need but the adapter does not provide."""
    needed = list(BASE_CAPABILITIES)
    for check_name in CHECK_NAMES:
        if checks.is_enabled(check_name):
            needed.extend(REQUIRED_CAPABILITIES[check_name])
    return [cap for cap in needed if not is_implemented(adapter, cap)]


class AdapterRegistry:
    """
    One adapter per monitored vault. Registration is where a half-built
    adapter gets rejected, before any cycle can run against it.
    """

    def __init__(self) -> None:
        self._adapters: Dict[str, object] = {}
        self._lock = threading.Lock()

    def register(self, adapter, checks: Optional[CheckSettings] = None):
        config = adapter.config
        checks = checks or config.checks
        missing = missing_capabilities(adapter, checks)
        if missing:
            raise CapabilityNotImplemented(
                f"Adapter '{getattr(adapter, 'name', type(adapter).__name__)}' for vault '{config.vault_id}' "
                f"does not implement {missing} required by its enabled checks."
            )
        with self._lock:
            if config.vault_id in self._adapters:
                raise ConfigError(f"Vault '{config.vault_id}' is already registered.")
            self._adapters[config.vault_id] = adapter
        logger.info("Registered %s adapter for vault %s", getattr(adapter, "name", "unknown"), config.vault_id)
        return adapter

    def get(self, vault_id: str):
        with self._lock:
            adapter = self._adapters.get(vault_id)
        if adapter is None:
            raise ConfigError(f"Unknown vault '{vault_id}'. Available: {self.vault_ids()}")
        return adapter

    def vault_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._adapters)

    def __contains__(self, vault_id: str) -> bool:
        with self._lock:
            return vault_id in self._adapters

    def __len__(self) -> int:
        with self._lock:
            return len(self._adapters)
