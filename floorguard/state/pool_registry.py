"""
PoolRegistry: pool -> vault policy bindings and the buyback audit trail.

Handles:
- Upsert of pool bindings (policy fields overwritten, running counters kept)
- 1:1 pool <-> vault enforcement
- Append-only execution log
- Per-pool in-flight markers so overlapping triggers cannot both submit

Thread Safety:
    All mutations are serialised by an internal RLock. Reads return
    copies or the binding objects themselves (callers must not mutate).
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from floorguard.core.errors import NotRegisteredError, VaultConflictError
from floorguard.core.utils import PRICE_SCALE, normalize_object_id, utc_now_iso

log = logging.getLogger("floorguard")


class ExecutionStatus(str, Enum):
    EXECUTED = "executed"
    PARTIAL = "partial"
    FAILED = "failed"
    SIMULATED = "simulated"

    def __str__(self) -> str:
        return self.value


@dataclass
class PoolBinding:
    """Policy and running state for one monitored pool."""
    pool_id: str
    vault_id: str
    floor_price: int
    balance_manager_id: Optional[str] = None
    coin_type: Optional[str] = None
    min_buyback_amount: Optional[float] = None
    owner: Optional[str] = None
    # Running state
    last_trade_price: int = 0
    buyback_count: int = 0
    total_buyback_amount: int = 0
    registered_at: str = field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None

    @property
    def actionable(self) -> bool:
        """A binding without a balance manager can be watched but not defended."""
        return bool(self.balance_manager_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["actionable"] = self.actionable
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolBinding":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class BuybackExecution:
    """One audit-log entry. Never mutated after creation."""
    pool_id: str
    vault_id: str
    current_price: int
    floor_price: int
    quantity: float
    usdc_amount: float
    usdc_amount_raw: int
    status: ExecutionStatus
    digest: Optional[str] = None
    error: Optional[str] = None
    executed_at: str = field(default_factory=utc_now_iso)

    @property
    def successful(self) -> bool:
        return self.status in (ExecutionStatus.EXECUTED, ExecutionStatus.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class PoolRegistry:
    """
    In-memory table of pool bindings.

    Contract:
    - register_pool on an unknown pool creates a binding with zeroed counters.
    - register_pool on a known pool overwrites policy fields and keeps
      last_trade_price, buyback_count, total_buyback_amount and registered_at.
    - A vault can be bound to at most one pool; a second pool for the same
      vault raises VaultConflictError.
    - record_buyback on an unknown pool raises NotRegisteredError.
    - Pool ids are matched regardless of leading zeros after "0x".
    """

    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._lock = threading.RLock()
        # normalized pool id -> binding (dict keeps insertion order)
        self._pools: Dict[str, PoolBinding] = {}
        # vault id -> normalized pool id
        self._vault_index: Dict[str, str] = {}
        self._executions: List[BuybackExecution] = []
        self._in_flight: Set[str] = set()
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    @staticmethod
    def _key(pool_id: str) -> str:
        return normalize_object_id(pool_id) or ""

    # ========== Bindings ==========

    def register_pool(
        self,
        pool_id: str,
        *,
        vault_id: str,
        floor_price: int,
        balance_manager_id: Optional[str] = None,
        coin_type: Optional[str] = None,
        min_buyback_amount: Optional[float] = None,
        owner: Optional[str] = None,
    ) -> PoolBinding:
        """
        Create or update the binding for pool_id.

        Raises:
            ValueError: empty ids or a negative floor price
            VaultConflictError: vault_id already bound to another pool
        """
        if not pool_id or not vault_id:
            raise ValueError("pool_id and vault_id are required")
        floor_price = int(floor_price)
        if floor_price < 0:
            raise ValueError("floor_price must be >= 0")

        key = self._key(pool_id)
        with self._lock:
            bound_key = self._vault_index.get(vault_id)
            if bound_key is not None and bound_key != key:
                raise VaultConflictError(vault_id, self._pools[bound_key].pool_id)

            existing = self._pools.get(key)
            if existing is None:
                binding = PoolBinding(
                    pool_id=pool_id,
                    vault_id=vault_id,
                    floor_price=floor_price,
                    balance_manager_id=balance_manager_id or None,
                    coin_type=coin_type or None,
                    min_buyback_amount=min_buyback_amount,
                    owner=owner,
                )
                self._pools[key] = binding
                self._log_event(
                    "pool_registered",
                    pool_id=pool_id,
                    vault_id=vault_id,
                    floor_price=floor_price,
                    actionable=binding.actionable,
                )
            else:
                if existing.vault_id != vault_id:
                    self._vault_index.pop(existing.vault_id, None)
                existing.vault_id = vault_id
                existing.floor_price = floor_price
                existing.balance_manager_id = balance_manager_id or None
                existing.coin_type = coin_type or None
                existing.min_buyback_amount = min_buyback_amount
                existing.owner = owner
                existing.updated_at = utc_now_iso()
                binding = existing
                self._log_event(
                    "pool_updated",
                    pool_id=pool_id,
                    vault_id=vault_id,
                    floor_price=floor_price,
                    buyback_count=existing.buyback_count,
                )
            self._vault_index[vault_id] = key
            return binding

    def unregister_pool(self, pool_id: str) -> bool:
        key = self._key(pool_id)
        with self._lock:
            binding = self._pools.pop(key, None)
            if binding is None:
                return False
            self._vault_index.pop(binding.vault_id, None)
            self._in_flight.discard(key)
        self._log_event("pool_unregistered", pool_id=pool_id)
        return True

    def get_vault_by_pool_id(self, pool_id: Optional[str]) -> Optional[PoolBinding]:
        if not pool_id:
            return None
        return self._pools.get(self._key(pool_id))

    def get_pool_by_vault_id(self, vault_id: Optional[str]) -> Optional[PoolBinding]:
        if not vault_id:
            return None
        with self._lock:
            key = self._vault_index.get(vault_id)
            return self._pools.get(key) if key is not None else None

    def get_floor_price(self, pool_id: str) -> Optional[int]:
        binding = self.get_vault_by_pool_id(pool_id)
        return binding.floor_price if binding else None

    def should_buyback(self, pool_id: str, current_price: int) -> bool:
        """True when current_price is strictly below the pool's floor."""
        floor = self.get_floor_price(pool_id)
        if floor is None:
            return False
        return int(current_price) < floor

    def get_all_pools(self) -> List[PoolBinding]:
        with self._lock:
            return list(self._pools.values())

    def get_monitored_pool_ids(self) -> Set[str]:
        with self._lock:
            return {b.pool_id for b in self._pools.values()}

    def is_registered(self, pool_id: Optional[str]) -> bool:
        return self.get_vault_by_pool_id(pool_id) is not None

    # ========== Running state ==========

    def update_last_trade_price(self, pool_id: str, price: int) -> bool:
        with self._lock:
            binding = self._pools.get(self._key(pool_id))
            if binding is None:
                return False
            binding.last_trade_price = int(price)
            return True

    def record_buyback(self, pool_id: str, quote_amount_raw: int) -> PoolBinding:
        """
        Add one buyback to the pool's running totals.

        Raises:
            NotRegisteredError: pool_id has no binding
        """
        with self._lock:
            binding = self._pools.get(self._key(pool_id))
            if binding is None:
                raise NotRegisteredError(pool_id)
            binding.buyback_count += 1
            binding.total_buyback_amount += int(quote_amount_raw)
            count = binding.buyback_count
            total = binding.total_buyback_amount
        self._log_event(
            "buyback_recorded",
            pool_id=pool_id,
            amount_raw=int(quote_amount_raw),
            buyback_count=count,
            total_buyback_amount=total,
        )
        return binding

    # ========== Execution log ==========

    def append_execution(self, execution: BuybackExecution) -> None:
        with self._lock:
            self._executions.append(execution)

    def get_executions(self, pool_id: Optional[str] = None) -> List[BuybackExecution]:
        with self._lock:
            if pool_id is None:
                return list(self._executions)
            key = self._key(pool_id)
            return [e for e in self._executions if self._key(e.pool_id) == key]

    # ========== In-flight guard ==========

    def try_begin_execution(self, pool_id: str) -> bool:
        """Atomically mark pool_id as executing. False if already marked."""
        key = self._key(pool_id)
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def end_execution(self, pool_id: str) -> None:
        with self._lock:
            self._in_flight.discard(self._key(pool_id))

    def is_execution_in_flight(self, pool_id: str) -> bool:
        with self._lock:
            return self._key(pool_id) in self._in_flight

    # ========== Stats / export ==========

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            pools = list(self._pools.values())
            total_amount = sum(b.total_buyback_amount for b in pools)
            return {
                "total_pools": len(pools),
                "actionable_pools": sum(1 for b in pools if b.actionable),
                "total_buybacks": sum(b.buyback_count for b in pools),
                "total_buyback_amount": total_amount,
                "total_buyback_volume": total_amount / PRICE_SCALE,
                "total_executions": len(self._executions),
                "in_flight": len(self._in_flight),
            }

    def to_dict(self) -> Dict[str, Any]:
        """Export bindings (with counters) for operators. Not a durability layer."""
        with self._lock:
            return {
                "pools": [asdict(b) for b in self._pools.values()],
                "exported_at": utc_now_iso(),
            }

    def load_from_dict(self, data: Dict[str, Any]) -> int:
        """
        Restore bindings exported by to_dict. Entries that conflict with an
        existing vault binding or are malformed are skipped.

        Returns:
            Number of bindings loaded
        """
        loaded = 0
        for entry in data.get("pools", []):
            if not isinstance(entry, dict):
                self._log_event("registry_import_error", error=f"expected object, got {type(entry).__name__}")
                continue
            try:
                binding = PoolBinding.from_dict(entry)
            except TypeError as exc:
                self._log_event("registry_import_error", error=str(exc))
                continue
            if not isinstance(binding.pool_id, str) or not isinstance(binding.vault_id, str):
                self._log_event("registry_import_error", error="pool_id and vault_id must be strings")
                continue
            key = self._key(binding.pool_id)
            with self._lock:
                bound_key = self._vault_index.get(binding.vault_id)
                if bound_key is not None and bound_key != key:
                    self._log_event(
                        "registry_import_conflict",
                        pool_id=binding.pool_id,
                        vault_id=binding.vault_id,
                    )
                    continue
                previous = self._pools.get(key)
                if previous is not None and previous.vault_id != binding.vault_id:
                    self._vault_index.pop(previous.vault_id, None)
                self._pools[key] = binding
                self._vault_index[binding.vault_id] = key
            loaded += 1
        self._log_event("registry_imported", loaded=loaded)
        return loaded
