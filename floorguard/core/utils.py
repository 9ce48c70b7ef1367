"""
Utility helpers: fixed-point scaling, id normalisation, bounded dedup.
"""

from __future__ import annotations

import re
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Optional, Set

# Quote asset (DBUSDC) uses 6 decimals; registry prices use the same scale.
PRICE_SCALE = 1_000_000
# DeepBook events report prices with 9 decimals.
RAW_PRICE_SCALE = 1_000_000_000
# Base tokens are assumed to use 9 decimals.
BASE_SCALE = 1_000_000_000

_LEADING_ZEROS = re.compile(r"^0x0+")


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def to_fixed_price(human: float) -> int:
    """Human quote price (e.g. 1.25 USDC) to fixed-point x10^6."""
    return int(float(human) * PRICE_SCALE)


def from_fixed_price(price: int) -> float:
    return price / PRICE_SCALE


def raw_to_fixed_price(raw_price: Any) -> int:
    """DeepBook 9-decimal price to the registry's 6-decimal fixed point."""
    return int(raw_price) // (RAW_PRICE_SCALE // PRICE_SCALE)


def to_int_safe(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_object_id(object_id: Optional[str]) -> Optional[str]:
    """Strip leading zeros after 0x so 0x00ab and 0xab compare equal."""
    if not object_id:
        return object_id
    normalized = _LEADING_ZEROS.sub("0x", object_id)
    return "0x0" if normalized == "0x" else normalized


def short_id(object_id: Optional[str], length: int = 16) -> str:
    if not object_id:
        return "-"
    return object_id[:length] + "..." if len(object_id) > length else object_id


class BoundedSet:
    """Dedup with bounded memory."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self.deque: Deque[str] = deque(maxlen=maxlen)
        self.set: Set[str] = set()

    def add(self, key: str) -> bool:
        if key in self.set:
            return False
        if len(self.deque) == self.maxlen:
            old = self.deque.popleft()
            self.set.discard(old)
        self.deque.append(key)
        self.set.add(key)
        return True

    def __contains__(self, key: object) -> bool:
        return key in self.set

    def __len__(self) -> int:
        return len(self.set)

    def clear(self) -> None:
        self.deque.clear()
        self.set.clear()
