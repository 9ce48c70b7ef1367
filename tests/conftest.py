"""
Pytest configuration and shared fixtures.
Adds the repo root to sys.path so tests can import floorguard without installing.
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from floorguard.exchange.credentials import SigningCredential  # noqa: E402
from floorguard.exchange.types import EventPage, TransactionResult  # noqa: E402

PACKAGE_ID = "0xdeeb"
POOL_ID = "0x00a1"
VAULT_ID = "0xv1"
COIN_TYPE = "0xc0ffee::token::TOKEN"
HEX_KEY = "ab" * 32


def filled_tx(digest: str = "0xdigest") -> Dict[str, Any]:
    return {
        "digest": digest,
        "effects": {"status": {"status": "success"}},
        "events": [{"type": f"{PACKAGE_ID}::order_info::OrderFilled", "parsedJson": {}}],
    }


@dataclass
class MockExchangeClient:
    """In-memory exchange client recording every call."""
    pages: Dict[str, List[EventPage]] = field(default_factory=dict)
    pool_objects: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    query_errors: Dict[str, Exception] = field(default_factory=dict)
    object_error: Optional[Exception] = None
    tx_response: Dict[str, Any] = field(default_factory=filled_tx)
    place_error: Optional[Exception] = None
    place_gate: Any = None  # asyncio.Event to hold submissions open
    orders: List[Any] = field(default_factory=list)
    queries: List[tuple] = field(default_factory=list)
    closed: bool = False

    async def query_events(self, event_type, cursor=None, limit=50):
        name = event_type.split("::")[-1]
        self.queries.append((event_type, cursor, limit))
        if name in self.query_errors:
            raise self.query_errors[name]
        queue = self.pages.get(name) or []
        return queue.pop(0) if queue else EventPage()

    async def get_pool_object(self, pool_id):
        if self.object_error is not None:
            raise self.object_error
        return self.pool_objects.get(pool_id)

    async def get_coin_balance(self, owner, coin_type):
        return 0

    async def place_limit_order(self, order, credential):
        self.orders.append(order)
        if self.place_gate is not None:
            await self.place_gate.wait()
        if self.place_error is not None:
            raise self.place_error
        return TransactionResult.from_rpc(self.tx_response)

    async def close(self):
        self.closed = True


def make_event(
    name: str,
    data: Dict[str, Any],
    ts: int = 1000,
    digest: str = "tx1",
    seq: str = "0",
) -> Dict[str, Any]:
    return {
        "id": {"txDigest": digest, "eventSeq": seq},
        "type": f"{PACKAGE_ID}::order_info::{name}",
        "timestampMs": str(ts),
        "parsedJson": data,
    }


def placed(
    pool_id: str = POOL_ID,
    price_raw: int = 900_000_000,
    is_bid: bool = False,
    quantity: int = 2_000_000_000,
    order_id: str = "101",
    **kwargs,
) -> Dict[str, Any]:
    return make_event("OrderPlaced", {
        "pool_id": pool_id,
        "order_id": order_id,
        "price": str(price_raw),
        "is_bid": is_bid,
        "placed_quantity": str(quantity),
    }, **kwargs)


def filled(
    pool_id: str = POOL_ID,
    price_raw: int = 900_000_000,
    taker_is_bid: Optional[bool] = False,
    base_quantity: Optional[int] = 1_000_000_000,
    taker_order_id: str = "202",
    maker_order_id: str = "303",
    **kwargs,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "pool_id": pool_id,
        "price": str(price_raw),
        "taker_order_id": taker_order_id,
        "maker_order_id": maker_order_id,
    }
    if taker_is_bid is not None:
        data["taker_is_bid"] = taker_is_bid
    if base_quantity is not None:
        data["base_quantity"] = str(base_quantity)
    data.update(kwargs.pop("extra", {}))
    return make_event("OrderFilled", data, **kwargs)


@pytest.fixture
def mock_client():
    return MockExchangeClient()


@pytest.fixture
def credential():
    return SigningCredential.load(HEX_KEY)


@pytest.fixture
def events_log():
    """Collects (event, kwargs) emitted through a log_event callback."""
    records: List[tuple] = []

    def _log(event: str, **kwargs) -> None:
        records.append((event, kwargs))

    _log.records = records
    return _log
