"""Executors package exports for x402_hedera."""

from .base import X402BaseExecutor, request_headers
from .server import PaymentGatedExecutor
from .client import X402PayingClient

__all__ = [
    "X402BaseExecutor",
    "PaymentGatedExecutor",
    "X402PayingClient",
    "request_headers"
]
