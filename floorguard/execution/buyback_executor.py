"""
BuybackExecutor: the single place collateral is spent.

Given a trigger (pool, observed price, floor, optional sell size) it
validates preconditions, sizes the defensive order, submits an
immediate-or-cancel bid through the exchange client and records the
outcome.

Per-attempt states:
    validating -> rejected
    validating -> submitting -> executed | partial | failed | simulated

Audit log:
    Rejections during validation are returned but not logged as
    executions. Every attempt that reaches submission appends exactly one
    BuybackExecution to the registry. There are no retries inside a call.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union, TYPE_CHECKING

from floorguard.config.config import DEFAULT_QUOTE_COIN_TYPE
from floorguard.core.errors import ExecutionError, NotRegisteredError, RejectReason
from floorguard.core.utils import BASE_SCALE, PRICE_SCALE, now_ms, short_id, to_int_safe
from floorguard.exchange.types import LimitOrderRequest, OrderType
from floorguard.execution.market_listener import BuybackTrigger
from floorguard.state.pool_registry import BuybackExecution, ExecutionStatus

if TYPE_CHECKING:
    from floorguard.exchange.client import ExchangeClient
    from floorguard.exchange.credentials import SigningCredential
    from floorguard.monitoring.alerting import AlertManager
    from floorguard.monitoring.metrics import DefenseMetrics
    from floorguard.state.pool_registry import PoolBinding, PoolRegistry

log = logging.getLogger("floorguard")

# Fallback sizing when the trigger carries no sell size:
# breach < 5% -> 100 tokens, < 10% -> 500 tokens, otherwise 1000 tokens.
SIZING_TIERS = ((0.05, 100.0), (0.10, 500.0))
DEEP_TIER_QUANTITY = 1000.0


@dataclass
class ExecutorConfig:
    """Configuration for BuybackExecutor."""
    network: str = "testnet"
    enabled: bool = False
    # Global minimum cost (human quote units); a pool's own minimum wins
    min_amount: Optional[float] = None
    # Global sub-account used when the pool has none
    balance_manager_id: Optional[str] = None
    quote_coin_type: str = DEFAULT_QUOTE_COIN_TYPE
    # IOC limit price = observed price x multiplier, to sweep available asks
    price_multiplier: float = 2.0
    base_scalar: int = BASE_SCALE

    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class BuybackCalculation:
    """Sizing and cost of one defensive order."""
    pool_id: str
    current_price: int
    floor_price: int
    quantity: float
    quantity_raw: int
    usdc_amount: float
    usdc_amount_raw: int
    price_diff: float
    price_diff_pct: str
    used_order_quantity: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "current_price": self.current_price,
            "floor_price": self.floor_price,
            "quantity": self.quantity,
            "quantity_raw": self.quantity_raw,
            "usdc_amount": self.usdc_amount,
            "usdc_amount_raw": self.usdc_amount_raw,
            "price_diff": self.price_diff,
            "price_diff_pct": self.price_diff_pct,
            "used_order_quantity": self.used_order_quantity,
        }


@dataclass
class ExecutionResult:
    """Result of execute_buyback."""
    success: bool
    reason: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    error_type: Optional[str] = None
    digest: Optional[str] = None
    execution: Optional[BuybackExecution] = None
    calculation: Optional[BuybackCalculation] = None

    @property
    def submitted(self) -> bool:
        """True when the attempt reached submission (and so was logged)."""
        return self.execution is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.error_type is not None:
            data["error_type"] = self.error_type
        if self.status is not None:
            data["status"] = self.status.value
        if self.digest is not None:
            data["digest"] = self.digest
        if self.execution is not None:
            data["execution"] = self.execution.to_dict()
        if self.calculation is not None:
            data["calculation"] = self.calculation.to_dict()
        return data


TriggerLike = Union[BuybackTrigger, Mapping[str, Any]]


@dataclass
class _Attempt:
    """Progress of one execute_buyback call, for unexpected-error recovery."""
    calculation: Optional[BuybackCalculation] = None
    vault_id: Optional[str] = None
    execution: Optional[BuybackExecution] = None


def _coerce_trigger(trigger: TriggerLike) -> BuybackTrigger:
    """Accept a BuybackTrigger or a mapping (snake_case or camelCase)."""
    if isinstance(trigger, BuybackTrigger):
        return trigger

    def pick(*keys: str) -> Any:
        for key in keys:
            if trigger.get(key) is not None:
                return trigger[key]
        return None

    return BuybackTrigger(
        pool_id=pick("pool_id", "poolId") or "",
        vault_id=pick("vault_id", "vaultId") or "",
        current_price=to_int_safe(pick("current_price", "currentPrice")) or 0,
        floor_price=to_int_safe(pick("floor_price", "floorPrice")) or 0,
        order_quantity=to_int_safe(pick("order_quantity", "orderQuantity", "quantity")),
        order_id=pick("order_id", "orderId"),
        source=pick("source") or "manual",
    )


class BuybackExecutor:
    """
    Validates, sizes, submits and records buybacks.

    Holds no state across calls beyond its configuration, the loaded
    credential and references to the registry and client. The execution
    log and per-pool in-flight markers live in the registry.
    """

    def __init__(
        self,
        registry: "PoolRegistry",
        client: "ExchangeClient",
        config: Optional[ExecutorConfig] = None,
        credential: Optional["SigningCredential"] = None,
        metrics: Optional["DefenseMetrics"] = None,
        alerts: Optional["AlertManager"] = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.config = config or ExecutorConfig()
        self.credential = credential
        self.metrics = metrics
        self.alerts = alerts
        self._log_event = self.config.log_event_callback or self._default_log

        self._log_event(
            "executor_initialized",
            network=self.config.network,
            enabled=self.config.enabled,
            has_credential=credential is not None,
            balance_manager=short_id(self.config.balance_manager_id, 20),
            min_amount=self.config.min_amount,
        )

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    # ========== Sizing ==========

    def calculate_buyback_amount(
        self,
        pool_id: str,
        current_price: int,
        floor_price: int,
        order_quantity: Optional[int] = None,
    ) -> BuybackCalculation:
        """
        Size the defensive order.

        With a positive order_quantity (raw, base scalar) the order matches
        the triggering sell exactly; otherwise the breach depth picks a tier.
        Cost = quantity x current_price.
        """
        current_price = int(current_price)
        floor_price = int(floor_price)
        price_diff = (floor_price - current_price) / floor_price if floor_price else 0.0

        if order_quantity is not None and int(order_quantity) > 0:
            quantity = int(order_quantity) / self.config.base_scalar
            used_order_quantity = True
        else:
            quantity = DEEP_TIER_QUANTITY
            for max_diff, tier_quantity in SIZING_TIERS:
                if price_diff < max_diff:
                    quantity = tier_quantity
                    break
            used_order_quantity = False

        usdc_amount = quantity * (current_price / PRICE_SCALE)
        return BuybackCalculation(
            pool_id=pool_id,
            current_price=current_price,
            floor_price=floor_price,
            quantity=quantity,
            quantity_raw=int(round(quantity * self.config.base_scalar)),
            usdc_amount=usdc_amount,
            usdc_amount_raw=math.floor(usdc_amount * PRICE_SCALE),
            price_diff=price_diff,
            price_diff_pct=f"{price_diff * 100:.2f}%",
            used_order_quantity=used_order_quantity,
        )

    def effective_min_amount(self, binding: "PoolBinding") -> float:
        """Pool minimum if set, else the global minimum, else 0."""
        if binding.min_buyback_amount is not None:
            return float(binding.min_buyback_amount)
        if self.config.min_amount is not None:
            return float(self.config.min_amount)
        return 0.0

    # ========== Execution ==========

    async def execute_buyback(self, trigger: TriggerLike) -> ExecutionResult:
        """
        Validate and, if everything checks out, submit one defensive order.
        Never raises.
        """
        params = _coerce_trigger(trigger)
        pool_id = params.pool_id

        if not self.config.enabled:
            return self._reject(pool_id, RejectReason.DISABLED)
        if self.credential is None:
            return self._reject(pool_id, RejectReason.NO_KEYPAIR)

        binding = self.registry.get_vault_by_pool_id(pool_id)
        if binding is None:
            return self._reject(pool_id, RejectReason.NOT_REGISTERED)

        if not self.registry.try_begin_execution(pool_id):
            return self._reject(pool_id, RejectReason.IN_FLIGHT)
        attempt = _Attempt()
        try:
            return await self._execute_validated(binding, params, attempt)
        except Exception as exc:
            return await self._unexpected_failure(binding, attempt, exc)
        finally:
            self.registry.end_execution(pool_id)

    async def _execute_validated(
        self, binding: "PoolBinding", params: BuybackTrigger, attempt: _Attempt
    ) -> ExecutionResult:
        calc = self.calculate_buyback_amount(
            binding.pool_id,
            params.current_price,
            params.floor_price,
            params.order_quantity,
        )

        min_amount = self.effective_min_amount(binding)
        if calc.usdc_amount < min_amount:
            return self._reject(
                binding.pool_id,
                RejectReason.BELOW_MINIMUM,
                calculation=calc,
                usdc_amount=calc.usdc_amount,
                min_amount=min_amount,
            )

        balance_manager_id = binding.balance_manager_id or self.config.balance_manager_id
        if not balance_manager_id:
            return self._reject(binding.pool_id, RejectReason.NO_BALANCE_MANAGER, calculation=calc)

        if not binding.coin_type:
            return self._reject(binding.pool_id, RejectReason.COIN_TYPE_UNKNOWN, calculation=calc)

        vault_id = params.vault_id or binding.vault_id
        # Past validation: from here on the attempt is always logged
        attempt.calculation, attempt.vault_id = calc, vault_id
        order = LimitOrderRequest(
            pool_id=binding.pool_id,
            balance_manager_id=balance_manager_id,
            base_coin_type=binding.coin_type,
            quote_coin_type=self.config.quote_coin_type,
            price=int(calc.current_price * self.config.price_multiplier),
            quantity=calc.quantity,
            quantity_raw=calc.quantity_raw,
            is_bid=True,
            order_type=OrderType.IMMEDIATE_OR_CANCEL,
            client_order_id=now_ms(),
        )
        self._log_event(
            "buyback_submitting",
            balance_manager=short_id(balance_manager_id, 20),
            price=order.price,
            **calc.to_dict(),
        )

        if self.metrics:
            self.metrics.executions_in_flight.inc()
        start = time.time()
        try:
            tx = await self.client.place_limit_order(order, self.credential)
        except Exception as exc:
            execution = attempt.execution = self._append(
                binding, vault_id, calc, ExecutionStatus.FAILED, error=str(exc)
            )
            self._log_event("buyback_failed", pool_id=binding.pool_id, error=str(exc))
            await self._alert_failure(binding.pool_id, str(exc))
            return ExecutionResult(
                success=False,
                reason=str(exc),
                error_type=ExecutionError.__name__,
                status=ExecutionStatus.FAILED,
                execution=execution,
                calculation=calc,
            )
        finally:
            if self.metrics:
                self.metrics.executions_in_flight.dec()
                self.metrics.execution_latency_ms.labels(pool=short_id(binding.pool_id)).observe(
                    (time.time() - start) * 1000
                )

        if not tx.succeeded:
            error = tx.error or str(RejectReason.TRANSACTION_FAILED)
            execution = attempt.execution = self._append(
                binding, vault_id, calc, ExecutionStatus.FAILED, digest=tx.digest, error=error
            )
            self._log_event("buyback_failed", pool_id=binding.pool_id, digest=tx.digest, error=error)
            await self._alert_failure(binding.pool_id, error, digest=tx.digest)
            return ExecutionResult(
                success=False,
                reason=str(RejectReason.TRANSACTION_FAILED),
                error_type=RejectReason.TRANSACTION_FAILED.error_class.__name__,
                status=ExecutionStatus.FAILED,
                digest=tx.digest,
                execution=execution,
                calculation=calc,
            )

        if tx.simulated:
            execution = attempt.execution = self._append(
                binding, vault_id, calc, ExecutionStatus.SIMULATED, digest=tx.digest
            )
            self._log_event("buyback_simulated", pool_id=binding.pool_id, digest=tx.digest)
            return ExecutionResult(
                success=True,
                status=ExecutionStatus.SIMULATED,
                digest=tx.digest,
                execution=execution,
                calculation=calc,
            )

        status = ExecutionStatus.EXECUTED if tx.has_fill else ExecutionStatus.PARTIAL
        execution = attempt.execution = self._append(binding, vault_id, calc, status, digest=tx.digest)
        try:
            self.registry.record_buyback(binding.pool_id, calc.usdc_amount_raw)
        except NotRegisteredError as exc:
            # Pool was unregistered while the transaction was in flight
            self._log_event("buyback_record_error", pool_id=binding.pool_id, error=str(exc))

        if self.metrics:
            self.metrics.quote_spent.labels(pool=short_id(binding.pool_id)).inc(calc.usdc_amount)
        self._log_event(
            "buyback_executed",
            pool_id=binding.pool_id,
            status=status.value,
            digest=tx.digest,
            quantity=calc.quantity,
            usdc_amount=calc.usdc_amount,
        )
        if self.alerts:
            try:
                await self.alerts.alert_buyback_executed(
                    binding.pool_id,
                    status.value,
                    digest=tx.digest,
                    quantity=calc.quantity,
                    usdc_amount=round(calc.usdc_amount, 6),
                )
            except Exception as exc:
                self._log_event("alert_error", error=str(exc))

        return ExecutionResult(
            success=True,
            status=status,
            digest=tx.digest,
            execution=execution,
            calculation=calc,
        )

    def _reject(
        self,
        pool_id: str,
        reason: RejectReason,
        calculation: Optional[BuybackCalculation] = None,
        **details: Any,
    ) -> ExecutionResult:
        if self.metrics:
            self.metrics.buyback_rejections.labels(pool=short_id(pool_id), reason=reason.value).inc()
        self._log_event("buyback_rejected", pool_id=pool_id, reason=reason.value, **details)
        return ExecutionResult(
            success=False,
            reason=reason.value,
            error_type=reason.error_class.__name__,
            calculation=calculation,
        )

    async def _unexpected_failure(
        self, binding: "PoolBinding", attempt: _Attempt, exc: Exception
    ) -> ExecutionResult:
        error = f"{type(exc).__name__}: {exc}"
        try:
            self._log_event("buyback_error", pool_id=binding.pool_id, error=error)
        except Exception:
            log.exception("buyback_error pool_id=%s", binding.pool_id)
        calc = attempt.calculation
        execution = attempt.execution
        if execution is None and calc is not None:
            try:
                execution = self._append(
                    binding, attempt.vault_id or binding.vault_id, calc, ExecutionStatus.FAILED, error=error
                )
            except Exception as append_exc:
                self._log_event("buyback_record_error", pool_id=binding.pool_id, error=str(append_exc))
            await self._alert_failure(binding.pool_id, error)
        if execution is not None and execution.status != ExecutionStatus.FAILED:
            # Outcome already recorded; only the follow-up bookkeeping failed
            return ExecutionResult(
                success=True,
                status=execution.status,
                digest=execution.digest,
                execution=execution,
                calculation=calc,
            )
        return ExecutionResult(
            success=False,
            reason=error,
            error_type=ExecutionError.__name__,
            status=ExecutionStatus.FAILED if execution is not None else None,
            execution=execution,
            calculation=calc,
        )

    def _append(
        self,
        binding: "PoolBinding",
        vault_id: str,
        calc: BuybackCalculation,
        status: ExecutionStatus,
        digest: Optional[str] = None,
        error: Optional[str] = None,
    ) -> BuybackExecution:
        execution = BuybackExecution(
            pool_id=binding.pool_id,
            vault_id=vault_id,
            current_price=calc.current_price,
            floor_price=calc.floor_price,
            quantity=calc.quantity,
            usdc_amount=calc.usdc_amount,
            usdc_amount_raw=calc.usdc_amount_raw,
            status=status,
            digest=digest,
            error=error,
        )
        self.registry.append_execution(execution)
        if self.metrics:
            self.metrics.buyback_executions.labels(pool=short_id(binding.pool_id), status=status.value).inc()
        return execution

    async def _alert_failure(self, pool_id: str, error: str, **details: Any) -> None:
        if not self.alerts:
            return
        try:
            await self.alerts.alert_buyback_failed(pool_id, error, **details)
        except Exception as exc:
            self._log_event("alert_error", error=str(exc))

    # ========== Queries ==========

    def get_executions(self, pool_id: Optional[str] = None):
        return self.registry.get_executions(pool_id)

    def get_stats(self) -> Dict[str, Any]:
        executions = self.registry.get_executions()
        by_status = {s: 0 for s in ExecutionStatus}
        for e in executions:
            by_status[e.status] += 1
        return {
            "enabled": self.config.enabled,
            "has_credential": self.credential is not None,
            "credential_fingerprint": self.credential.fingerprint if self.credential else None,
            "network": self.config.network,
            "total_executions": len(executions),
            "successful_executions": by_status[ExecutionStatus.EXECUTED] + by_status[ExecutionStatus.PARTIAL],
            "partial_executions": by_status[ExecutionStatus.PARTIAL],
            "failed_executions": by_status[ExecutionStatus.FAILED],
            "simulated_executions": by_status[ExecutionStatus.SIMULATED],
        }
