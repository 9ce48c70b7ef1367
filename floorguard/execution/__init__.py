"""
Execution package.

This package contains the market event listener and the buyback executor.
"""

from floorguard.execution.buyback_executor import (
    BuybackCalculation,
    BuybackExecutor,
    ExecutionResult,
    ExecutorConfig,
)
from floorguard.execution.market_listener import (
    BuybackTrigger,
    ListenerConfig,
    MarketEventListener,
    PollResult,
)

__all__ = [
    "BuybackCalculation",
    "BuybackExecutor",
    "ExecutionResult",
    "ExecutorConfig",
    "BuybackTrigger",
    "ListenerConfig",
    "MarketEventListener",
    "PollResult",
]
