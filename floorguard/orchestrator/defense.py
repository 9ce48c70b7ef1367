"""
PriceFloorDefense: control facade over the defense components.

Architecture:
    The facade composes PoolRegistry, OrderCache, MarketEventListener and
    BuybackExecutor (built once and injected, never module globals) and
    exposes the operator operations an HTTP layer would call:
    - pool registration and lookup
    - listener start/stop and manual pools
    - manual buyback, execution history, stats
    - registry export/import and cache sweeps

    Every operation returns a JSON-shaped dict with "success". Failures
    carry "error" and an HTTP-like "status" (400, 404, 409). Nothing raises.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from floorguard.core.errors import VaultConflictError
from floorguard.core.utils import PRICE_SCALE, to_fixed_price
from floorguard.execution.buyback_executor import BuybackExecutor, ExecutorConfig
from floorguard.execution.market_listener import BuybackTrigger, ListenerConfig, MarketEventListener
from floorguard.market_data.order_cache import DEFAULT_MAX_AGE_MS, OrderCache
from floorguard.state.pool_registry import PoolRegistry

if TYPE_CHECKING:
    from floorguard.exchange.client import ExchangeClient
    from floorguard.exchange.credentials import SigningCredential
    from floorguard.monitoring.alerting import AlertManager
    from floorguard.monitoring.metrics import DefenseMetrics
    from floorguard.monitoring.server import HealthChecker

log = logging.getLogger("floorguard")


def _error(message: str, status: int) -> Dict[str, Any]:
    return {"success": False, "error": message, "status": status}


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _pick(payload: Dict[str, Any], snake: str, camel: str) -> Any:
    value = payload.get(snake)
    return value if value is not None else payload.get(camel)


class PriceFloorDefense:
    """
    Facade for the price-floor defense service.

    Usage:
        defense = PriceFloorDefense.create(client, listener_config, executor_config, credential)
        defense.register_pool({"pool_id": ..., "vault_id": ..., "floor_price": 1.0})
        await defense.start_listener()
    """

    def __init__(
        self,
        registry: PoolRegistry,
        order_cache: OrderCache,
        listener: MarketEventListener,
        executor: BuybackExecutor,
        metrics: Optional["DefenseMetrics"] = None,
        health: Optional["HealthChecker"] = None,
        order_cache_max_age_ms: int = DEFAULT_MAX_AGE_MS,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.registry = registry
        self.order_cache = order_cache
        self.listener = listener
        self.executor = executor
        self.metrics = metrics
        self.health = health
        self.order_cache_max_age_ms = order_cache_max_age_ms
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    @classmethod
    def create(
        cls,
        client: "ExchangeClient",
        listener_config: Optional[ListenerConfig] = None,
        executor_config: Optional[ExecutorConfig] = None,
        credential: Optional["SigningCredential"] = None,
        metrics: Optional["DefenseMetrics"] = None,
        alerts: Optional["AlertManager"] = None,
        health: Optional["HealthChecker"] = None,
        order_cache_max_age_ms: int = DEFAULT_MAX_AGE_MS,
        log_event: Optional[Callable[..., None]] = None,
    ) -> "PriceFloorDefense":
        """Compose the components; the executor is the listener's trigger handler."""
        registry = PoolRegistry(log_event=log_event)
        order_cache = OrderCache(log_event=log_event)
        executor = BuybackExecutor(
            registry=registry,
            client=client,
            config=executor_config,
            credential=credential,
            metrics=metrics,
            alerts=alerts,
        )
        listener = MarketEventListener(
            client=client,
            registry=registry,
            order_cache=order_cache,
            trigger_handler=executor.execute_buyback,
            config=listener_config,
            metrics=metrics,
        )
        return cls(
            registry=registry,
            order_cache=order_cache,
            listener=listener,
            executor=executor,
            metrics=metrics,
            health=health,
            order_cache_max_age_ms=order_cache_max_age_ms,
            log_event=log_event,
        )

    # ========== Pools ==========

    def register_pool(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register or update a pool binding. Prices are human quote units
        (floor_price defaults to 1.0).
        """
        pool_id = _pick(payload, "pool_id", "poolId")
        vault_id = _pick(payload, "vault_id", "vaultId")
        if not pool_id or not vault_id:
            return _error("Missing required fields: vault_id, pool_id", 400)

        try:
            floor = _pick(payload, "floor_price", "floorPrice")
            binding = self.registry.register_pool(
                pool_id,
                vault_id=vault_id,
                floor_price=to_fixed_price(floor) if floor else PRICE_SCALE,
                balance_manager_id=_pick(payload, "balance_manager_id", "balanceManagerId"),
                coin_type=_pick(payload, "coin_type", "coinType"),
                min_buyback_amount=_optional_float(_pick(payload, "min_buyback_amount", "minBuybackAmount")),
                owner=payload.get("owner"),
            )
        except VaultConflictError as exc:
            return _error(str(exc), 409)
        except (TypeError, ValueError) as exc:
            return _error(str(exc), 400)

        self._refresh_gauges()
        return {"success": True, "pool": binding.to_dict()}

    def unregister_pool(self, pool_id: str) -> Dict[str, Any]:
        if not self.registry.unregister_pool(pool_id):
            return _error("Pool not registered", 404)
        self._refresh_gauges()
        return {"success": True, "pool_id": pool_id}

    def get_vault_pool_info(self, vault_id: str) -> Dict[str, Any]:
        binding = self.registry.get_pool_by_vault_id(vault_id)
        if binding is None:
            return _error("Vault not registered", 404)
        return {"success": True, "pool": binding.to_dict()}

    def list_pools(self) -> Dict[str, Any]:
        pools = [b.to_dict() for b in self.registry.get_all_pools()]
        return {"success": True, "pools": pools, "count": len(pools)}

    # ========== Listener ==========

    async def start_listener(self) -> Dict[str, Any]:
        started = await self.listener.start()
        if self.health:
            self.health.set_ready(True)
            self.health.set_component_health("listener", True)
        return {"success": True, "started": started, "listener": self.listener.get_status()}

    async def stop_listener(self) -> Dict[str, Any]:
        stopped = await self.listener.stop()
        if self.health:
            self.health.set_ready(False)
        return {"success": True, "stopped": stopped, "listener": self.listener.get_status()}

    async def add_manual_pool(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Watch a pool outside the registry. When vault_id is supplied the
        pool is also registered so it becomes defendable.
        """
        pool_id = _pick(payload, "pool_id", "poolId")
        if not pool_id:
            return _error("Missing pool_id", 400)

        floor = _pick(payload, "floor_price", "floorPrice")
        try:
            overrides = {
                "vault_id": _pick(payload, "vault_id", "vaultId"),
                "balance_manager_id": _pick(payload, "balance_manager_id", "balanceManagerId"),
                "coin_type": _pick(payload, "coin_type", "coinType"),
                "floor_price": to_fixed_price(floor) if floor else None,
                "owner": payload.get("owner"),
            }
            pool = await self.listener.add_manual_pool(pool_id, overrides)
        except (TypeError, ValueError) as exc:
            return _error(str(exc), 400)

        result: Dict[str, Any] = {"success": True, "pool": pool, "registered": False}
        if pool.get("vault_id"):
            try:
                binding = self.registry.register_pool(
                    pool_id,
                    vault_id=pool["vault_id"],
                    floor_price=pool["floor_price"],
                    balance_manager_id=pool.get("balance_manager_id"),
                    coin_type=pool.get("coin_type"),
                    min_buyback_amount=_optional_float(_pick(payload, "min_buyback_amount", "minBuybackAmount")),
                    owner=pool.get("owner"),
                )
            except VaultConflictError as exc:
                return {**_error(str(exc), 409), "pool": pool}
            except (TypeError, ValueError) as exc:
                return {**_error(str(exc), 400), "pool": pool}
            result["registered"] = True
            result["binding"] = binding.to_dict()
            self._refresh_gauges()
        return result

    def remove_manual_pool(self, pool_id: str) -> Dict[str, Any]:
        if not self.listener.remove_manual_pool(pool_id):
            return _error("Manual pool not found", 404)
        return {"success": True, "pool_id": pool_id}

    def get_manual_pools(self) -> Dict[str, Any]:
        pools = self.listener.get_manual_pools()
        return {"success": True, "pools": pools, "count": len(pools)}

    async def get_pool_order_book(self, pool_id: str) -> Dict[str, Any]:
        book = await self.listener.get_pool_order_book(pool_id)
        if "error" in book:
            return _error(book["error"], 404)
        return {"success": True, "order_book": book}

    async def report_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.listener.report_order(payload)
        if not result.get("success"):
            return _error(result.get("error", "Invalid order"), 400)
        return result

    def check_pool_price(self, pool_id: str) -> Dict[str, Any]:
        info = self.listener.check_pool_price(pool_id)
        if "error" in info:
            return _error(info["error"], 404)
        return {"success": True, **info}

    # ========== Buyback ==========

    async def manual_buyback(self, pool_id: str) -> Dict[str, Any]:
        """Run the executor against the pool's last observed trade price."""
        if not pool_id:
            return _error("Missing pool_id", 400)
        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return _error("Pool not registered", 404)
        if binding.last_trade_price <= 0:
            return _error("No trade price observed for pool yet", 409)

        result = await self.executor.execute_buyback(BuybackTrigger(
            pool_id=binding.pool_id,
            vault_id=binding.vault_id,
            current_price=binding.last_trade_price,
            floor_price=binding.floor_price,
            source="manual",
        ))
        self._log_event("manual_buyback", pool_id=pool_id, success=result.success, reason=result.reason)
        return result.to_dict()

    def get_executions(self, pool_id: Optional[str] = None) -> Dict[str, Any]:
        executions = [e.to_dict() for e in self.executor.get_executions(pool_id)]
        return {"success": True, "executions": executions, "count": len(executions)}

    def get_stats(self, pool_id: Optional[str] = None) -> Dict[str, Any]:
        if pool_id is None:
            return {
                "success": True,
                "registry": self.registry.get_stats(),
                "executor": self.executor.get_stats(),
            }
        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return _error("Pool not registered", 404)
        executions = self.executor.get_executions(pool_id)
        return {
            "success": True,
            "pool_id": binding.pool_id,
            "buyback_count": binding.buyback_count,
            "total_buyback_amount": binding.total_buyback_amount,
            "total_buyback_volume": binding.total_buyback_amount / PRICE_SCALE,
            "last_trade_price": binding.last_trade_price,
            "executions": len(executions),
            "in_flight": self.registry.is_execution_in_flight(pool_id),
        }

    def get_status(self) -> Dict[str, Any]:
        self._refresh_gauges()
        return {
            "success": True,
            "listener": self.listener.get_status(),
            "executor": self.executor.get_stats(),
            "registry": self.registry.get_stats(),
        }

    # ========== Maintenance ==========

    def export_registry(self) -> Dict[str, Any]:
        return {"success": True, "data": self.registry.to_dict()}

    def import_registry(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict) or not isinstance(data.get("pools"), list):
            return _error("Expected an object with a 'pools' list", 400)
        loaded = self.registry.load_from_dict(data)
        self._refresh_gauges()
        return {"success": True, "loaded": loaded}

    def clean_order_cache(self, max_age_ms: Optional[int] = None) -> Dict[str, Any]:
        age = self.order_cache_max_age_ms if max_age_ms is None else int(max_age_ms)
        removed = self.order_cache.clean_old_orders(age)
        self._refresh_gauges()
        return {"success": True, "removed": removed, "remaining": self.order_cache.size()}

    def _refresh_gauges(self) -> None:
        if not self.metrics:
            return
        self.metrics.registered_pools.set(len(self.registry.get_all_pools()))
        self.metrics.cached_orders.set(self.order_cache.size())
