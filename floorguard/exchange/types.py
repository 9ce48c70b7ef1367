"""
Value types exchanged with the venue client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional


class OrderType(IntEnum):
    """DeepBook v3 order restriction codes."""
    NO_RESTRICTION = 0
    IMMEDIATE_OR_CANCEL = 1
    FILL_OR_KILL = 2
    POST_ONLY = 3


@dataclass
class LimitOrderRequest:
    """A limit order routed through a balance manager."""
    pool_id: str
    balance_manager_id: str
    base_coin_type: str
    quote_coin_type: str
    price: int  # fixed point x10^6
    quantity: float  # human base units
    quantity_raw: int
    is_bid: bool = True
    order_type: OrderType = OrderType.IMMEDIATE_OR_CANCEL
    client_order_id: int = 0
    self_matching_option: int = 0
    pay_with_deep: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "balance_manager_id": self.balance_manager_id,
            "base_coin_type": self.base_coin_type,
            "quote_coin_type": self.quote_coin_type,
            "price": self.price,
            "quantity": self.quantity,
            "quantity_raw": self.quantity_raw,
            "is_bid": self.is_bid,
            "order_type": int(self.order_type),
            "client_order_id": str(self.client_order_id),
            "self_matching_option": self.self_matching_option,
            "pay_with_deep": self.pay_with_deep,
        }


@dataclass
class TransactionResult:
    """Parsed transaction-block response."""
    digest: Optional[str]
    status: str
    error: Optional[str] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    simulated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def has_fill(self) -> bool:
        """True when the transaction emitted at least one OrderFilled event."""
        return any("OrderFilled" in str(ev.get("type", "")) for ev in self.events)

    @classmethod
    def from_rpc(cls, response: Dict[str, Any]) -> "TransactionResult":
        """
        Build from a Sui transaction-block response:
        {digest, effects: {status: {status, error}}, events: [...]}.
        """
        effects = response.get("effects") or {}
        status_obj = effects.get("status") or {}
        return cls(
            digest=response.get("digest"),
            status=status_obj.get("status") or "unknown",
            error=status_obj.get("error"),
            events=list(response.get("events") or []),
            simulated=bool(response.get("simulated", False)),
        )


@dataclass
class EventPage:
    """One page of suix_queryEvents results."""
    data: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[Dict[str, Any]] = None
    has_next_page: bool = False

    @classmethod
    def from_rpc(cls, result: Optional[Dict[str, Any]]) -> "EventPage":
        result = result or {}
        return cls(
            data=list(result.get("data") or []),
            next_cursor=result.get("nextCursor"),
            has_next_page=bool(result.get("hasNextPage", False)),
        )
