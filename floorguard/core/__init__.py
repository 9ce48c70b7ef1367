"""
Core utilities package.

This package contains the error taxonomy, fixed-point scaling helpers,
and common utilities shared by the defense components.
"""

from floorguard.core.errors import (
    ConfigurationError,
    ExecutionError,
    FloorGuardError,
    NotRegisteredError,
    RejectReason,
    ThresholdError,
    VaultConflictError,
)
from floorguard.core.utils import (
    BASE_SCALE,
    PRICE_SCALE,
    RAW_PRICE_SCALE,
    BoundedSet,
    from_fixed_price,
    normalize_object_id,
    now_ms,
    raw_to_fixed_price,
    to_fixed_price,
)

__all__ = [
    "ConfigurationError",
    "ExecutionError",
    "FloorGuardError",
    "NotRegisteredError",
    "RejectReason",
    "ThresholdError",
    "VaultConflictError",
    "BASE_SCALE",
    "PRICE_SCALE",
    "RAW_PRICE_SCALE",
    "BoundedSet",
    "from_fixed_price",
    "normalize_object_id",
    "now_ms",
    "raw_to_fixed_price",
    "to_fixed_price",
]
