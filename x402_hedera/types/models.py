# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Wire and record types for the payment-gated request protocol."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import HBAR
from .state import GatewayState


# Hedera transaction ids in mirror (0.0.N-sss-nnn) and SDK (0.0.N@s.n) form,
# and EVM transaction hashes.
TRANSACTION_REFERENCE_PATTERNS = (
    re.compile(r"^\d+\.\d+\.\d+-\d+-\d+$", re.ASCII),
    re.compile(r"^\d+\.\d+\.\d+@\d+\.\d+$", re.ASCII),
    re.compile(r"^0x[0-9a-fA-F]{64}$"),
)


def is_transaction_reference(value: str) -> bool:
    return any(pattern.match(value) for pattern in TRANSACTION_REFERENCE_PATTERNS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PaymentRequirement(_WireModel):
    """Terms a caller must settle before the gated operation runs."""
    request_id: str
    amount: str
    token: str = HBAR
    recipient: str = Field(alias="address")
    description: str = ""
    resource: str = "default"
    network: str = "hedera-testnet"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_wire(self) -> Dict[str, Any]:
        """The ``payment`` object of a gating response."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ProofSource(str, Enum):
    HEADER = "header"
    BODY = "body"


class SettlementProof(_WireModel):
    """Caller-supplied evidence of a transfer. Untrusted until verified."""
    reference: str = Field(
        validation_alias=AliasChoices("reference", "txHash", "transactionId", "paymentProof")
    )
    request_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("requestId", "request_id")
    )
    amount: Optional[str] = None
    token: Optional[str] = None
    sender: Optional[str] = Field(default=None, validation_alias=AliasChoices("sender", "from"))
    recipient: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipient", "address", "to")
    )
    source: ProofSource = ProofSource.BODY

    @field_validator("reference")
    @classmethod
    def _reference_format(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("settlement reference must not be empty")
        if not is_transaction_reference(value):
            raise ValueError(
                "settlement reference must be a Hedera transaction id or a 0x-prefixed transaction hash"
            )
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_string(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class VerificationResult(_WireModel):
    """Outcome of one verification attempt."""
    verified: bool
    error: Optional[str] = None
    code: Optional[str] = None
    reference: Optional[str] = None

    @classmethod
    def ok(cls, reference: str) -> "VerificationResult":
        return cls(verified=True, reference=reference)

    @classmethod
    def fail(cls, code: str, error: str, reference: Optional[str] = None) -> "VerificationResult":
        return cls(verified=False, code=code, error=error, reference=reference)


class ConversationPaymentState(_WireModel):
    """Whether a conversation has already paid."""
    context_id: str
    verified: bool = False
    settlement_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    last_seen_at: datetime = Field(default_factory=utcnow)


class SubmissionAttempt(_WireModel):
    """One try against one endpoint during a single submission call."""
    endpoint: str
    attempt: int
    delay_seconds: float = 0.0
    error: Optional[str] = None


class TransferReceipt(_WireModel):
    """A confirmed transfer."""
    reference: str
    confirmed_at: datetime
    endpoint: str
    attempts: List[SubmissionAttempt] = Field(default_factory=list)


class LedgerTransfer(_WireModel):
    """A single account credit (positive) or debit (negative) in smallest units."""
    account: str
    amount: int
    token_id: Optional[str] = None


class LedgerTransaction(_WireModel):
    """What the mirror node knows about a transaction."""
    reference: str
    transaction_id: Optional[str] = None
    result: str
    entity_id: Optional[str] = None
    consensus_timestamp: Optional[str] = None
    sender: Optional[str] = None
    transfers: List[LedgerTransfer] = Field(default_factory=list)
    token_transfers: List[LedgerTransfer] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result == "SUCCESS"


class GatewayRequest(_WireModel):
    """An incoming request as seen by the gateway."""
    context_id: Optional[str] = None
    operation: str = "default"
    headers: Dict[str, str] = Field(default_factory=dict)
    # Raw ``payment`` body field; validated by the gateway, never trusted.
    payment: Optional[Any] = None
    payload: Any = None


class GatewayResponse(_WireModel):
    """What the gateway hands back to the routing layer."""
    state: GatewayState
    status_code: int = 200
    body: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    result: Any = None
    requirement: Optional[PaymentRequirement] = None
    verification: Optional[VerificationResult] = None
    settlement_reference: Optional[str] = None

    @property
    def payment_required(self) -> bool:
        return self.state in (GatewayState.AWAITING_PAYMENT, GatewayState.REJECTED)
