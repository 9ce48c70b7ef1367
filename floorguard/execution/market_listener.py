"""
MarketEventListener: DeepBook order-event polling service.

Polls the fullnode for OrderPlaced and OrderFilled events, keeps the
order cache and last trade prices current, and raises a buyback trigger
when a sell prices a registered pool below its floor.

Architecture:
    One poll loop task consumes events strictly in timestamp order; each
    event is processed to completion before the next. Trigger handlers run
    as separate tracked tasks so a slow submission never stalls event
    consumption. The listener observes; deciding whether to act belongs to
    the handler.

Failure semantics:
    Events for unregistered pools are ignored. Query and processing errors
    are logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from floorguard.config.config import DEFAULT_DEEPBOOK_PACKAGE_ID
from floorguard.core.utils import (
    PRICE_SCALE,
    BoundedSet,
    from_fixed_price,
    normalize_object_id,
    raw_to_fixed_price,
    short_id,
    to_int_safe,
    utc_now_iso,
)

if TYPE_CHECKING:
    from floorguard.exchange.client import ExchangeClient
    from floorguard.market_data.order_cache import OrderCache
    from floorguard.monitoring.metrics import DefenseMetrics
    from floorguard.state.pool_registry import PoolBinding, PoolRegistry

log = logging.getLogger("floorguard")

ORDER_PLACED = "OrderPlaced"
ORDER_FILLED = "OrderFilled"

_POOL_TYPE = re.compile(r"Pool<(.+),\s*(.+)>")


@dataclass
class ListenerConfig:
    """Configuration for MarketEventListener."""
    network: str = "testnet"
    poll_interval_sec: float = 5.0
    event_page_limit: int = 50
    deepbook_package_id: str = DEFAULT_DEEPBOOK_PACKAGE_ID
    # Floor used for manual pools when none is supplied (1 USDC)
    default_manual_floor_price: int = PRICE_SCALE

    # Bounded dedup sizes
    max_triggered_orders: int = 5000
    max_seen_events: int = 20000

    # How long stop() waits for running trigger handlers
    stop_grace_sec: float = 5.0

    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class BuybackTrigger:
    """Context handed to the trigger handler for a below-floor sell."""
    pool_id: str
    vault_id: str
    current_price: int
    floor_price: int
    order_quantity: Optional[int] = None
    order_id: Optional[str] = None
    source: str = ORDER_PLACED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "vault_id": self.vault_id,
            "current_price": self.current_price,
            "floor_price": self.floor_price,
            "order_quantity": self.order_quantity,
            "order_id": self.order_id,
            "source": self.source,
        }


BuybackTriggerHandler = Callable[[BuybackTrigger], Awaitable[Any]]


@dataclass
class PollResult:
    """Result of one poll cycle."""
    success: bool
    events_found: int = 0
    new_events: int = 0
    triggers: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0


class MarketEventListener:
    """
    Order-event listener for registered and manually added pools.

    Usage:
        listener = MarketEventListener(
            client=client,
            registry=registry,
            order_cache=cache,
            trigger_handler=executor.execute_buyback,
            config=ListenerConfig(poll_interval_sec=5.0),
        )
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        client: "ExchangeClient",
        registry: "PoolRegistry",
        order_cache: "OrderCache",
        trigger_handler: Optional[BuybackTriggerHandler] = None,
        config: Optional[ListenerConfig] = None,
        metrics: Optional["DefenseMetrics"] = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.order_cache = order_cache
        self.config = config or ListenerConfig()
        self.metrics = metrics
        self._trigger_handler = trigger_handler

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._trigger_tasks: Set[asyncio.Task] = set()

        # Per event type cursor; only advanced when a page returned data
        self._cursors: Dict[str, Optional[Dict[str, Any]]] = {
            ORDER_PLACED: None,
            ORDER_FILLED: None,
        }
        self._seen_events = BoundedSet(self.config.max_seen_events)
        self._triggered_orders = BoundedSet(self.config.max_triggered_orders)
        self._manual_pools: Dict[str, Dict[str, Any]] = {}

        self._stats: Dict[str, Any] = {
            "events_processed": 0,
            "order_placed_count": 0,
            "order_filled_count": 0,
            "buyback_triggered": 0,
            "poll_errors": 0,
            "last_event_time": None,
        }

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    # ========== Lifecycle ==========

    @property
    def is_running(self) -> bool:
        return self._running

    def event_type(self, name: str) -> str:
        """Fully qualified Move event type for OrderPlaced / OrderFilled."""
        return f"{self.config.deepbook_package_id}::order_info::{name}"

    async def start(self) -> bool:
        """
        Start polling. No-op when already running.

        Returns:
            True if the listener was started by this call
        """
        if self._running:
            self._log_event("listener_already_running")
            return False

        self._running = True
        if self.metrics:
            self.metrics.listener_running.set(1)
        self._log_event(
            "listener_started",
            network=self.config.network,
            poll_interval_sec=self.config.poll_interval_sec,
            registered_pools=len(self.registry.get_monitored_pool_ids()),
            manual_pools=len(self._manual_pools),
        )

        await self.poll()
        if self._running:
            self._task = asyncio.create_task(self._run_loop(), name="market-listener")
        return True

    async def stop(self) -> bool:
        """
        Stop polling and wait for running trigger handlers. No-op when stopped.

        Returns:
            True if the listener was stopped by this call
        """
        if not self._running:
            self._log_event("listener_not_running")
            return False

        self._running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.drain_triggers(timeout=self.config.stop_grace_sec, cancel_pending=True)

        if self.metrics:
            self.metrics.listener_running.set(0)
        self._log_event("listener_stopped", **self._stats)
        return True

    async def drain_triggers(self, timeout: Optional[float] = None, cancel_pending: bool = False) -> int:
        """
        Wait for dispatched trigger handlers to finish.

        Returns:
            Number of handlers still pending after the wait
        """
        tasks = set(self._trigger_tasks)
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending and cancel_pending:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._log_event("trigger_handlers_cancelled", count=len(pending))
        return len(pending)

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.poll_interval_sec)
            if not self._running:
                break
            await self.poll()

    # ========== Polling ==========

    def _monitored_keys(self) -> Set[str]:
        keys = {normalize_object_id(p) for p in self.registry.get_monitored_pool_ids()}
        keys.update(self._manual_pools.keys())
        return keys

    @staticmethod
    def _event_pool_key(event: Dict[str, Any]) -> Optional[str]:
        data = event.get("parsedJson")
        if not isinstance(data, dict):
            return None
        return normalize_object_id(data.get("pool_id"))

    @staticmethod
    def _event_key(event: Dict[str, Any]) -> Optional[str]:
        ev_id = event.get("id")
        if isinstance(ev_id, dict) and ev_id.get("txDigest") is not None:
            return f"{ev_id.get('txDigest')}:{ev_id.get('eventSeq')}"
        return None

    async def poll(self) -> PollResult:
        """
        Run one poll cycle. Never raises.
        """
        monitored = self._monitored_keys()
        if not monitored:
            self._log_event("poll_no_pools")
            return PollResult(success=True)

        start_time = time.time()
        events: List[Dict[str, Any]] = []
        errors: List[str] = []

        for name in (ORDER_PLACED, ORDER_FILLED):
            try:
                page = await self.client.query_events(
                    self.event_type(name),
                    self._cursors[name],
                    self.config.event_page_limit,
                )
            except Exception as exc:
                errors.append(f"{name}: {exc}")
                self._stats["poll_errors"] += 1
                if self.metrics:
                    self.metrics.poll_errors.labels(event_type=name).inc()
                self._log_event("event_query_error", event_type=name, error=str(exc))
                continue

            if page.data:
                if page.next_cursor is not None:
                    self._cursors[name] = page.next_cursor
                events.extend(e for e in page.data if self._event_pool_key(e) in monitored)

        events.sort(key=lambda e: to_int_safe(e.get("timestampMs")) or 0)

        triggered_before = self._stats["buyback_triggered"]
        new_events = 0
        for event in events:
            key = self._event_key(event)
            if key is not None and not self._seen_events.add(key):
                continue
            new_events += 1
            try:
                await self.process_event(event)
            except Exception as exc:
                errors.append(str(exc))
                self._log_event(
                    "event_process_error",
                    error=str(exc),
                    event_type=str(event.get("type", "")).split("::")[-1],
                )

        duration_ms = (time.time() - start_time) * 1000
        if self.metrics:
            self.metrics.poll_duration_ms.observe(duration_ms)
            self.metrics.monitored_pools.set(len(monitored))
        if events:
            self._log_event(
                "events_polled",
                count=len(events),
                new_events=new_events,
                duration_ms=round(duration_ms, 1),
            )

        return PollResult(
            success=not errors,
            events_found=len(events),
            new_events=new_events,
            triggers=self._stats["buyback_triggered"] - triggered_before,
            errors=errors,
            duration_ms=duration_ms,
        )

    # ========== Event handling ==========

    async def process_event(self, event: Dict[str, Any]) -> None:
        """Process a single event to completion."""
        self._stats["events_processed"] += 1
        self._stats["last_event_time"] = utc_now_iso()

        name = str(event.get("type", "")).split("::")[-1]
        if self.metrics:
            self.metrics.events_processed.labels(event_type=name or "unknown").inc()

        if name == ORDER_PLACED:
            await self._handle_order_placed(event)
        elif name == ORDER_FILLED:
            await self._handle_order_filled(event)

    async def _handle_order_placed(self, event: Dict[str, Any]) -> None:
        self._stats["order_placed_count"] += 1
        data = event.get("parsedJson")
        if not isinstance(data, dict):
            self._log_event("event_no_data", event_type=ORDER_PLACED)
            return

        pool_id = data.get("pool_id")
        raw_price = to_int_safe(data.get("price"))
        if not pool_id or raw_price is None:
            return

        price = raw_to_fixed_price(raw_price)
        is_bid = bool(data.get("is_bid"))
        quantity = to_int_safe(data.get("placed_quantity"))
        order_id = data.get("order_id")

        if order_id is not None:
            self.order_cache.record_order({
                "order_id": str(order_id),
                "pool_id": pool_id,
                "price": price,
                "quantity": quantity,
                "is_bid": is_bid,
            })

        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return

        if not is_bid and price < binding.floor_price:
            self._raise_trigger(binding, price, quantity, order_id, ORDER_PLACED)

    async def _handle_order_filled(self, event: Dict[str, Any]) -> None:
        self._stats["order_filled_count"] += 1
        data = event.get("parsedJson")
        if not isinstance(data, dict):
            self._log_event("event_no_data", event_type=ORDER_FILLED)
            return

        pool_id = data.get("pool_id")
        raw_price = to_int_safe(data.get("execution_price") or data.get("price"))
        if not pool_id or raw_price is None:
            return

        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return

        price = raw_to_fixed_price(raw_price)
        self.registry.update_last_trade_price(pool_id, price)

        if not self._seller_was_taker(data) or price >= binding.floor_price:
            return

        sell_order_id = data.get("taker_order_id")
        quantity = to_int_safe(data.get("base_quantity"))
        if quantity is None:
            cached = self.order_cache.get_cached_order(sell_order_id)
            quantity = cached.quantity if cached else None

        self._raise_trigger(binding, price, quantity, sell_order_id, ORDER_FILLED)

    def _seller_was_taker(self, data: Dict[str, Any]) -> bool:
        """Side of the aggressor: taker flag, then maker flag, then cached maker order."""
        if data.get("taker_is_bid") is not None:
            return not bool(data["taker_is_bid"])
        if data.get("maker_is_bid") is not None:
            return bool(data["maker_is_bid"])
        maker = self.order_cache.get_cached_order(data.get("maker_order_id"))
        return bool(maker and maker.is_bid)

    def _raise_trigger(
        self,
        binding: "PoolBinding",
        price: int,
        quantity: Optional[int],
        order_id: Any,
        source: str,
    ) -> None:
        if order_id is not None and not self._triggered_orders.add(str(order_id)):
            self._log_event("trigger_duplicate_skipped", pool_id=binding.pool_id, order_id=str(order_id))
            return

        trigger = BuybackTrigger(
            pool_id=binding.pool_id,
            vault_id=binding.vault_id,
            current_price=price,
            floor_price=binding.floor_price,
            order_quantity=quantity,
            order_id=str(order_id) if order_id is not None else None,
            source=source,
        )
        self._stats["buyback_triggered"] += 1
        if self.metrics:
            self.metrics.triggers_raised.labels(pool=short_id(binding.pool_id), source=source).inc()
        self._log_event("buyback_triggered", **trigger.to_dict())

        if self._trigger_handler is None:
            self._log_event("trigger_no_handler", pool_id=binding.pool_id)
            return

        task = asyncio.create_task(self._dispatch(trigger))
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)

    async def _dispatch(self, trigger: BuybackTrigger) -> None:
        try:
            await self._trigger_handler(trigger)
        except Exception as exc:
            self._log_event("trigger_handler_error", pool_id=trigger.pool_id, error=str(exc))

    # ========== Front-end order reports ==========

    async def report_order(self, order_info: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record an order reported by a front end (price in 9-decimal raw
        units) and apply the same sell-below-floor check as OrderPlaced.
        """
        order_id = order_info.get("order_id") or order_info.get("orderId")
        pool_id = order_info.get("pool_id") or order_info.get("poolId")
        raw_price = to_int_safe(order_info.get("price"))
        if not order_id or not pool_id or not raw_price:
            self._log_event("order_report_rejected", order_id=order_id, pool_id=pool_id)
            return {"success": False, "error": "Missing required fields"}

        price = raw_to_fixed_price(raw_price)
        is_bid = bool(order_info.get("is_bid", order_info.get("isBid", False)))
        quantity = to_int_safe(order_info.get("quantity"))
        self.order_cache.record_order({
            "order_id": str(order_id),
            "pool_id": pool_id,
            "price": price,
            "quantity": quantity,
            "is_bid": is_bid,
        })
        self._log_event("order_reported", order_id=str(order_id), pool_id=pool_id, price=price, is_bid=is_bid)

        triggered = False
        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is not None and not is_bid and price < binding.floor_price:
            before = self._stats["buyback_triggered"]
            self._raise_trigger(binding, price, quantity, order_id, "order_report")
            triggered = self._stats["buyback_triggered"] > before

        return {"success": True, "order_id": str(order_id), "cached": True, "triggered": triggered}

    # ========== Manual pools ==========

    async def add_manual_pool(self, pool_id: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Watch a pool without binding it to a vault. Pool parameters and coin
        types are read from the chain when available.

        Raises:
            ValueError: empty pool_id
        """
        if not pool_id:
            raise ValueError("pool_id is required")
        overrides = overrides or {}

        chain_info: Dict[str, Any] = {}
        try:
            obj = await self.client.get_pool_object(pool_id)
        except Exception as exc:
            self._log_event("pool_object_query_error", pool_id=pool_id, error=str(exc))
            obj = None

        if obj and obj.get("content"):
            fields = obj["content"].get("fields") or {}
            chain_info = {
                "tick_size": fields.get("tick_size"),
                "lot_size": fields.get("lot_size"),
                "min_size": fields.get("min_size"),
                "pool_type": obj.get("type"),
            }
            match = _POOL_TYPE.search(obj.get("type") or "")
            if match:
                chain_info["base_coin"] = match.group(1).strip()
                chain_info["quote_coin"] = match.group(2).strip()

        pool = {
            "pool_id": pool_id,
            "vault_id": overrides.get("vault_id"),
            "balance_manager_id": overrides.get("balance_manager_id"),
            "coin_type": overrides.get("coin_type") or chain_info.get("base_coin"),
            "quote_coin": chain_info.get("quote_coin"),
            "floor_price": overrides.get("floor_price") or self.config.default_manual_floor_price,
            "owner": overrides.get("owner"),
            "tick_size": chain_info.get("tick_size"),
            "lot_size": chain_info.get("lot_size"),
            "min_size": chain_info.get("min_size"),
            "added_at": utc_now_iso(),
            "source": "manual",
        }
        self._manual_pools[normalize_object_id(pool_id)] = pool
        self._log_event(
            "manual_pool_added",
            pool_id=pool_id,
            coin_type=pool["coin_type"],
            found_on_chain=bool(chain_info),
        )
        return pool

    def remove_manual_pool(self, pool_id: str) -> bool:
        removed = self._manual_pools.pop(normalize_object_id(pool_id), None)
        if removed is None:
            return False
        self._log_event("manual_pool_removed", pool_id=pool_id)
        return True

    def get_manual_pools(self) -> List[Dict[str, Any]]:
        return list(self._manual_pools.values())

    # ========== Queries ==========

    async def get_pool_order_book(self, pool_id: str) -> Dict[str, Any]:
        """Snapshot of a pool's resting-order structure, or {"error": ...}."""
        try:
            obj = await self.client.get_pool_object(pool_id)
        except Exception as exc:
            self._log_event("order_book_query_error", pool_id=pool_id, error=str(exc))
            return {"error": str(exc)}

        if not obj or not obj.get("content"):
            return {"error": "Pool not found"}

        fields = obj["content"].get("fields") or {}
        bids = _nested_int(fields, "bids", "size")
        asks = _nested_int(fields, "asks", "size")
        mid_price = to_int_safe(fields.get("mid_price"))
        return {
            "pool_id": pool_id,
            "bids_count": bids,
            "asks_count": asks,
            "total_orders": bids + asks,
            "mid_price": from_fixed_price(mid_price) if mid_price else None,
            "pool_state": {
                "base_vault": _nested_int(fields, "base_vault", "balance"),
                "quote_vault": _nested_int(fields, "quote_vault", "balance"),
            },
            "queried_at": utc_now_iso(),
        }

    def check_pool_price(self, pool_id: str) -> Dict[str, Any]:
        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return {"error": "Pool not registered"}
        return {
            "pool_id": binding.pool_id,
            "vault_id": binding.vault_id,
            "floor_price": binding.floor_price,
            "floor_price_display": f"{from_fixed_price(binding.floor_price):.6f}",
            "last_trade_price": binding.last_trade_price,
            "last_trade_price_display": f"{from_fixed_price(binding.last_trade_price):.6f}",
            # No trade observed yet means nothing to compare against
            "needs_buyback": binding.last_trade_price > 0
            and self.registry.should_buyback(binding.pool_id, binding.last_trade_price),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "network": self.config.network,
            "poll_interval_sec": self.config.poll_interval_sec,
            "monitored_pools": len(self.registry.get_monitored_pool_ids()),
            "manual_pools": len(self._manual_pools),
            "pending_triggers": len(self._trigger_tasks),
            "stats": dict(self._stats),
        }


def _nested_int(fields: Dict[str, Any], name: str, inner: str) -> int:
    """Read fields[name].fields[inner] as int, 0 when absent."""
    outer = fields.get(name)
    if not isinstance(outer, dict):
        return 0
    value = (outer.get("fields") or {}).get(inner)
    return to_int_safe(value) or 0
