"""
OrderCache: recently observed orders keyed by order id.

Used to recover size/side context for a fill when the fill event itself
does not carry it. Entries are only purged by an explicit age sweep or by
the FIFO capacity bound; a missing entry degrades sizing, it never fails
the flow.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from floorguard.core.utils import now_ms, to_int_safe

log = logging.getLogger("floorguard")

DEFAULT_MAX_AGE_MS = 24 * 60 * 60 * 1000


@dataclass
class CachedOrder:
    order_id: str
    pool_id: str
    price: int
    quantity: Optional[int]
    is_bid: bool
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "pool_id": self.pool_id,
            "price": self.price,
            "quantity": self.quantity,
            "is_bid": self.is_bid,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass
class RecordResult:
    """Result of record_order."""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None


def _pick(order: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = order.get(key)
        if value is not None and value != "":
            return value
    return None


class OrderCache:
    """
    Order cache with bounded memory usage.

    Maintains insertion order so the oldest entry is evicted first once
    max_orders is reached. Re-recording an order id refreshes its position
    and timestamp.

    Thread-safe for single-threaded asyncio usage (no internal locks).
    """

    def __init__(
        self,
        max_orders: int = 10000,
        clock: Callable[[], int] = now_ms,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.max_orders = max_orders
        self._orders: "OrderedDict[str, CachedOrder]" = OrderedDict()
        self._clock = clock
        self._log_event = log_event or self._default_log
        self._stats = {
            "recorded": 0,
            "rejected": 0,
            "evictions": 0,
            "swept": 0,
        }

    def _default_log(self, event: str, **kwargs) -> None:
        payload = {"event": event, **kwargs}
        log.debug(json.dumps(payload, default=str))

    def record_order(self, order: Mapping[str, Any]) -> RecordResult:
        """
        Insert or overwrite an order.

        Accepts snake_case or camelCase keys (order_id/orderId,
        pool_id/poolId, is_bid/isBid). order_id, pool_id and price are
        required.
        """
        order_id = _pick(order, "order_id", "orderId")
        pool_id = _pick(order, "pool_id", "poolId")
        price = to_int_safe(_pick(order, "price"))
        if order_id is None or pool_id is None or price is None:
            self._stats["rejected"] += 1
            return RecordResult(success=False, error="Missing required fields")

        order_id = str(order_id)
        cached = CachedOrder(
            order_id=order_id,
            pool_id=str(pool_id),
            price=price,
            quantity=to_int_safe(_pick(order, "quantity")),
            is_bid=bool(_pick(order, "is_bid", "isBid")),
            timestamp_ms=self._clock(),
        )

        if order_id in self._orders:
            self._orders.move_to_end(order_id)
        elif len(self._orders) >= self.max_orders:
            old_id, _ = self._orders.popitem(last=False)
            self._stats["evictions"] += 1
            self._log_event("order_cache_evict", order_id=old_id)

        self._orders[order_id] = cached
        self._stats["recorded"] += 1
        return RecordResult(success=True, order_id=order_id)

    def get_cached_order(self, order_id: Optional[str]) -> Optional[CachedOrder]:
        if order_id is None:
            return None
        return self._orders.get(str(order_id))

    def clean_old_orders(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        """
        Remove every entry whose age is >= max_age_ms.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        stale = [oid for oid, o in self._orders.items() if now - o.timestamp_ms >= max_age_ms]
        for oid in stale:
            del self._orders[oid]
        if stale:
            self._stats["swept"] += len(stale)
            self._log_event("order_cache_swept", removed=len(stale), remaining=len(self._orders))
        return len(stale)

    def clear(self) -> None:
        self._orders.clear()

    def size(self) -> int:
        return len(self._orders)

    def __len__(self) -> int:
        return len(self._orders)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "current_size": self.size(),
            "max_size": self.max_orders,
        }
