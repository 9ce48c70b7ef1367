"""
Error taxonomy for the price-floor defense service.

Registry operations raise these; the executor and the control facade
convert them into structured results so nothing crosses the public
boundary as an unhandled fault.
"""

from __future__ import annotations

from enum import Enum


class FloorGuardError(Exception):
    """Base class for all floorguard errors."""


class ConfigurationError(FloorGuardError):
    """Missing credential, balance manager, coin type, or executor disabled."""


class ThresholdError(FloorGuardError):
    """Computed buyback cost is below the effective minimum."""


class NotRegisteredError(FloorGuardError):
    """Pool referenced by a trigger or query is absent from the registry."""

    def __init__(self, pool_id: str) -> None:
        super().__init__(f"Pool not registered: {pool_id}")
        self.pool_id = pool_id


class VaultConflictError(FloorGuardError):
    """A vault is already bound to a different pool."""

    def __init__(self, vault_id: str, existing_pool_id: str) -> None:
        super().__init__(
            f"Vault {vault_id} is already bound to pool {existing_pool_id}"
        )
        self.vault_id = vault_id
        self.existing_pool_id = existing_pool_id


class ExecutionError(FloorGuardError):
    """Submitted transaction failed at the platform level."""

    def __init__(self, message: str, digest: str | None = None) -> None:
        super().__init__(message)
        self.digest = digest


class RejectReason(str, Enum):
    """Structured failure reasons returned by execute_buyback."""
    DISABLED = "disabled"
    NO_KEYPAIR = "no keypair"
    NOT_REGISTERED = "not registered"
    IN_FLIGHT = "in flight"
    BELOW_MINIMUM = "below minimum"
    NO_BALANCE_MANAGER = "no balance manager"
    COIN_TYPE_UNKNOWN = "coin type unknown"
    TRANSACTION_FAILED = "transaction failed"

    def __str__(self) -> str:
        return self.value

    @property
    def error_class(self) -> type:
        """Taxonomy class a rejection or failure belongs to."""
        return _REASON_CLASSES[self]


_REASON_CLASSES = {
    RejectReason.DISABLED: ConfigurationError,
    RejectReason.NO_KEYPAIR: ConfigurationError,
    RejectReason.NO_BALANCE_MANAGER: ConfigurationError,
    RejectReason.COIN_TYPE_UNKNOWN: ConfigurationError,
    RejectReason.NOT_REGISTERED: NotRegisteredError,
    RejectReason.BELOW_MINIMUM: ThresholdError,
    RejectReason.IN_FLIGHT: FloorGuardError,
    RejectReason.TRANSACTION_FAILED: ExecutionError,
}
