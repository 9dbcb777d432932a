"""x402_hedera - x402 payment-gated requests settled on Hedera, for A2A and HTTP."""

# A2A Extension Types & Functions
from .types import (
    # Extension Constants
    X402_EXTENSION_URI,
    HBAR,

    # States and metadata
    GatewayState,
    PaymentStatus,
    RequirementStatus,
    X402Metadata,

    # Configuration
    X402ExtensionConfig,
    TokenInfo,
    PaymentPolicy,
    VerifierConfig,
    RetryPolicy,
    LedgerEndpoint,
    LedgerConfig,
    GatewayConfig,
    X402HederaSettings,

    # Records
    PaymentRequirement,
    SettlementProof,
    VerificationResult,
    ConversationPaymentState,
    TransferReceipt,
    GatewayRequest,
    GatewayResponse,

    # Error Types
    X402Error,
    MessageError,
    ValidationError,
    InvalidAmountError,
    PaymentError,
    LedgerUnavailableError,
    FundsUnavailableError,
    SubmissionRejectedError,
    AllEndpointsFailedError,
    ConfirmationTimeoutError,
    StateError,
    DuplicateSettlementError,
    X402ErrorCode,
    map_error_to_code
)

from .extension import (
    get_extension_declaration,
    check_extension_activation,
    add_extension_activation_header,
    create_payment_headers
)

# Core components
from .core import (
    PaymentRequestBroker,
    ConversationPaymentCache,
    MirrorNodeClient,
    FacilitatorClient,
    TransactionVerifier,
    LedgerClient,
    LedgerTransport,
    Web3Transport,
    ProtocolGateway,
    retry_async,
    extract_settlement_proof
)

# A2A and HTTP adapters
from .executors import (
    X402BaseExecutor,
    PaymentGatedExecutor,
    X402PayingClient
)
from .http import payment_gated_endpoint, payment_status_endpoint

__version__ = "0.1.0"

__all__ = [
    "X402_EXTENSION_URI",
    "HBAR",
    "GatewayState",
    "PaymentStatus",
    "RequirementStatus",
    "X402Metadata",

    "X402ExtensionConfig",
    "TokenInfo",
    "PaymentPolicy",
    "VerifierConfig",
    "RetryPolicy",
    "LedgerEndpoint",
    "LedgerConfig",
    "GatewayConfig",
    "X402HederaSettings",

    "PaymentRequirement",
    "SettlementProof",
    "VerificationResult",
    "ConversationPaymentState",
    "TransferReceipt",
    "GatewayRequest",
    "GatewayResponse",

    "X402Error",
    "MessageError",
    "ValidationError",
    "InvalidAmountError",
    "PaymentError",
    "LedgerUnavailableError",
    "FundsUnavailableError",
    "SubmissionRejectedError",
    "AllEndpointsFailedError",
    "ConfirmationTimeoutError",
    "StateError",
    "DuplicateSettlementError",
    "X402ErrorCode",
    "map_error_to_code",

    "get_extension_declaration",
    "check_extension_activation",
    "add_extension_activation_header",
    "create_payment_headers",

    "PaymentRequestBroker",
    "ConversationPaymentCache",
    "MirrorNodeClient",
    "FacilitatorClient",
    "TransactionVerifier",
    "LedgerClient",
    "LedgerTransport",
    "Web3Transport",
    "ProtocolGateway",
    "retry_async",
    "extract_settlement_proof",

    "X402BaseExecutor",
    "PaymentGatedExecutor",
    "X402PayingClient",
    "payment_gated_endpoint",
    "payment_status_endpoint",

    "__version__"
]
