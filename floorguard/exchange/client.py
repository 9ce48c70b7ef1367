"""
Minimal async JSON-RPC client for the Sui fullnode using HTTP/2.

Read paths (events, objects, balances) go straight to the fullnode; order
placement is handed to a TransactionSigner.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, Optional, Protocol

import httpx

from floorguard.core.errors import ConfigurationError, FloorGuardError
from floorguard.exchange.credentials import SigningCredential
from floorguard.exchange.signers import TransactionSigner
from floorguard.exchange.types import EventPage, LimitOrderRequest, TransactionResult


class RpcError(FloorGuardError):
    """JSON-RPC level error returned by the fullnode."""

    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code


class ExchangeClient(Protocol):
    """What the defense components need from the venue."""

    async def query_events(
        self, event_type: str, cursor: Optional[Dict[str, Any]], limit: int
    ) -> EventPage:
        ...

    async def get_pool_object(self, pool_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_coin_balance(self, owner: str, coin_type: str) -> int:
        ...

    async def place_limit_order(
        self, order: LimitOrderRequest, credential: SigningCredential
    ) -> TransactionResult:
        ...

    async def close(self) -> None:
        ...


class SuiExchangeClient:
    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        signer: Optional[TransactionSigner] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url.rstrip("/")
        self.signer = signer
        self._ids = itertools.count(1)
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.rpc_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        if self.signer is not None:
            await self.signer.close()

    async def query_events(
        self, event_type: str, cursor: Optional[Dict[str, Any]] = None, limit: int = 50
    ) -> EventPage:
        """Ascending page of events of one Move event type."""
        result = await self._rpc(
            "suix_queryEvents",
            [{"MoveEventType": event_type}, cursor, limit, False],
        )
        return EventPage.from_rpc(result)

    async def get_pool_object(self, pool_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an object with content and type. Returns the ``data`` member
        ({objectId, type, content: {fields}}) or None when it does not exist.
        """
        result = await self._rpc(
            "sui_getObject",
            [pool_id, {"showContent": True, "showType": True}],
        )
        if not isinstance(result, dict) or not result.get("data"):
            return None
        return result["data"]

    async def get_coin_balance(self, owner: str, coin_type: str) -> int:
        result = await self._rpc("suix_getBalance", [owner, coin_type])
        return int((result or {}).get("totalBalance", 0))

    async def place_limit_order(
        self, order: LimitOrderRequest, credential: SigningCredential
    ) -> TransactionResult:
        if self.signer is None:
            raise ConfigurationError("No transaction signer configured")
        response = await self.signer.sign_and_execute(order, credential)
        return TransactionResult.from_rpc(response)

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        resp = await self.client.post("", json=payload)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            raise RpcError(method, err.get("code"), err.get("message", str(err)))
        return data.get("result") if isinstance(data, dict) else data
