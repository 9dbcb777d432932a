"""Core package exports for x402_hedera."""

from .broker import PaymentRequestBroker, generate_request_id
from .cache import ConversationPaymentCache
from .facilitator import FacilitatorClient
from .gateway import ProtocolGateway
from .ledger import (
    LedgerClient,
    LedgerTransport,
    Web3Transport,
    classify_rejection,
    is_transient_error
)
from .mirror import MirrorNodeClient
from .retry import BackoffSchedule, RetryExhausted, retry_async
from .utils import (
    extract_settlement_proof,
    format_amount,
    get_header,
    parse_amount,
    to_smallest_unit
)
from .verifier import TransactionVerifier

__all__ = [
    # Server side
    "PaymentRequestBroker",
    "generate_request_id",
    "ConversationPaymentCache",
    "FacilitatorClient",
    "ProtocolGateway",
    "MirrorNodeClient",
    "TransactionVerifier",

    # Caller side
    "LedgerClient",
    "LedgerTransport",
    "Web3Transport",
    "classify_rejection",
    "is_transient_error",

    # Retry
    "BackoffSchedule",
    "RetryExhausted",
    "retry_async",

    # Utilities
    "extract_settlement_proof",
    "format_amount",
    "get_header",
    "parse_amount",
    "to_smallest_unit"
]
