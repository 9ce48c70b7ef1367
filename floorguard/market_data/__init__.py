"""
Market data package.

This package contains the observed-order cache.
"""

from floorguard.market_data.order_cache import CachedOrder, OrderCache, RecordResult

__all__ = ["CachedOrder", "OrderCache", "RecordResult"]
