"""
Exchange package.

This package contains the venue client capability, order/transaction
types, credential loading and transaction signers.
"""

from floorguard.exchange.client import ExchangeClient, RpcError, SuiExchangeClient
from floorguard.exchange.credentials import SigningCredential
from floorguard.exchange.signers import RemoteSigner, SimulatedSigner, TransactionSigner
from floorguard.exchange.types import EventPage, LimitOrderRequest, OrderType, TransactionResult

__all__ = [
    "ExchangeClient",
    "RpcError",
    "SuiExchangeClient",
    "SigningCredential",
    "RemoteSigner",
    "SimulatedSigner",
    "TransactionSigner",
    "EventPage",
    "LimitOrderRequest",
    "OrderType",
    "TransactionResult",
]
