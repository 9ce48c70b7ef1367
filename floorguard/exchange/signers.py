"""
Transaction signers.

Signing and cryptography live outside this service. A signer receives an
order plus the credential to use and returns a Sui transaction-block
response dict ({digest, effects.status, events}).
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from floorguard.exchange.credentials import SigningCredential
from floorguard.exchange.types import LimitOrderRequest


class TransactionSigner(Protocol):
    async def sign_and_execute(
        self, order: LimitOrderRequest, credential: SigningCredential
    ) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


class SimulatedSigner:
    """Dry-run signer: nothing leaves the process."""

    def __init__(self) -> None:
        self.orders: list[LimitOrderRequest] = []

    async def sign_and_execute(
        self, order: LimitOrderRequest, credential: SigningCredential
    ) -> Dict[str, Any]:
        self.orders.append(order)
        return {
            "digest": f"simulated-{order.client_order_id}",
            "effects": {"status": {"status": "success"}},
            "events": [],
            "simulated": True,
        }

    async def close(self) -> None:
        return None


class RemoteSigner:
    """
    Delegates signing to an external signing service over HTTP.

    The service is expected to look the key up by fingerprint, build the
    DeepBook place_limit_order transaction, execute it with effects and
    events shown, and return the transaction-block response.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def sign_and_execute(
        self, order: LimitOrderRequest, credential: SigningCredential
    ) -> Dict[str, Any]:
        payload = {
            "credential": credential.fingerprint,
            "order": order.to_dict(),
            "options": {"showEffects": True, "showEvents": True},
        }
        resp = await self.client.post("/sign-and-execute", json=payload)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected signer response: {data!r}")
        return data
