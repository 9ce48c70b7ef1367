"""
State management package.

This package contains the pool registry and the buyback audit log.
"""

from floorguard.state.pool_registry import (
    BuybackExecution,
    ExecutionStatus,
    PoolBinding,
    PoolRegistry,
)

__all__ = [
    "BuybackExecution",
    "ExecutionStatus",
    "PoolBinding",
    "PoolRegistry",
]
