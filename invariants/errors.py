"""
Error taxonomy shared by the engine and the protocol adapters.

Every error carries a ``kind`` string; the engine copies it into the
``detail`` of the InvariantResult it produces for a failed check.
"""


class VaultMonitorError(Exception):
    kind = "VaultMonitorError"


class StateUnavailable(VaultMonitorError):
    """The data source could not be read (RPC down, timeout, bad response)."""

    kind = "StateUnavailable"


class SandboxUnavailable(VaultMonitorError):
    """No isolated execution context could be created for a simulation."""

    kind = "SandboxUnavailable"


class ProtocolCallReverted(VaultMonitorError):
    """The protocol itself rejected a call. Reported, never retried."""

    kind = "ProtocolCallReverted"


class CapabilityNotImplemented(VaultMonitorError):
    kind = "NotImplemented"


class ConfigError(VaultMonitorError):
    kind = "ConfigError"


class CycleCancelled(VaultMonitorError):
    kind = "CycleCancelled"


# Failure kinds for genuine invariant violations.
ACCOUNTING_DIVERGENCE = "AccountingDivergence"
VALUE_EXTRACTION = "ValueExtraction"
ROUND_TRIP_LOSS = "RoundTripLoss"
ARBITRAGE_GAP = "ArbitrageGap"
INCONCLUSIVE = "Inconclusive"
DISABLED = "Disabled"

# Infrastructure kinds: the cycle may be retried by the scheduler.
TRANSIENT_KINDS = (StateUnavailable.kind, SandboxUnavailable.kind)
