"""Types package for x402_hedera - re-exports A2A SDK types, adds payment-gating types."""


from a2a.types import (
    Task,
    Message,
    AgentCard,
    TaskState,
    TaskStatus
)
from a2a.server.agent_execution.agent_executor import AgentExecutor
from a2a.server.agent_execution.context import RequestContext
from a2a.server.events.event_queue import EventQueue

from .state import (
    GatewayState,
    PaymentStatus,
    RequirementStatus,
    X402Metadata
)

from .errors import (
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

from .config import (
    X402_EXTENSION_URI,
    HBAR,
    X402ExtensionConfig,
    TokenInfo,
    PaymentPolicy,
    VerifierConfig,
    RetryPolicy,
    LedgerEndpoint,
    LedgerConfig,
    GatewayConfig,
    X402HederaSettings
)

from .models import (
    PaymentRequirement,
    ProofSource,
    SettlementProof,
    VerificationResult,
    ConversationPaymentState,
    SubmissionAttempt,
    TransferReceipt,
    LedgerTransfer,
    LedgerTransaction,
    GatewayRequest,
    GatewayResponse
)

__all__ = [

    "Task",
    "Message",
    "AgentCard",
    "TaskState",
    "TaskStatus",

    "AgentExecutor",
    "RequestContext",
    "EventQueue",

    "GatewayState",
    "PaymentStatus",
    "RequirementStatus",
    "X402Metadata",

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

    "X402_EXTENSION_URI",
    "HBAR",
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
    "ProofSource",
    "SettlementProof",
    "VerificationResult",
    "ConversationPaymentState",
    "SubmissionAttempt",
    "TransferReceipt",
    "LedgerTransfer",
    "LedgerTransaction",
    "GatewayRequest",
    "GatewayResponse"
]
