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
"""Protocol error types and error code mapping."""

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SubmissionAttempt


class X402Error(Exception):
    """Base error for x402 protocol."""
    pass


class MessageError(X402Error):
    """Malformed payment proof or request data."""
    pass


class ValidationError(X402Error):
    """Payment validation errors."""
    pass


class InvalidAmountError(ValidationError):
    """Amount is non-numeric, non-positive, or too precise for its token."""

    def __init__(self, amount: object, reason: str):
        super().__init__(f"Invalid amount {amount!r}: {reason}")
        self.amount = amount
        self.reason = reason


class PaymentError(X402Error):
    """Payment processing errors."""
    pass


class LedgerUnavailableError(PaymentError):
    """The ledger could not be queried or reached."""
    pass


class FundsUnavailableError(PaymentError):
    """The paying account cannot cover the transfer."""
    pass


class SubmissionRejectedError(PaymentError):
    """The ledger refused the transfer for a non-transient reason.

    ``reference`` is set when the transaction was mined and then reverted.
    """

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class AllEndpointsFailedError(PaymentError):
    """Every endpoint in the pool exhausted its retries."""

    def __init__(
        self,
        last_error: Optional[BaseException],
        attempts: Optional[List["SubmissionAttempt"]] = None,
    ):
        self.last_error = last_error
        self.attempts = attempts or []
        tried = len({attempt.endpoint for attempt in self.attempts})
        super().__init__(
            f"All {tried} ledger endpoint(s) failed after {len(self.attempts)} attempt(s). "
            f"Last error: {last_error}"
        )


class ConfirmationTimeoutError(PaymentError):
    """The transfer was submitted but its confirmation was not observed in time.

    The transfer may already be irreversibly in flight. Callers must re-verify
    ``reference`` later and must not submit a fresh transfer.
    """

    def __init__(self, reference: str, timeout_seconds: float):
        super().__init__(
            f"Transfer {reference} was submitted but not confirmed within "
            f"{timeout_seconds:g}s. Do not resubmit; re-verify this reference later."
        )
        self.reference = reference
        self.timeout_seconds = timeout_seconds


class StateError(X402Error):
    """State transition errors."""
    pass


class DuplicateSettlementError(StateError):
    """A settlement reference was already accepted for another conversation."""

    def __init__(self, reference: str, owner_context_id: Optional[str]):
        super().__init__(
            f"Settlement reference {reference} was already accepted"
            + (" for another conversation" if owner_context_id else "")
        )
        self.reference = reference
        self.owner_context_id = owner_context_id


class X402ErrorCode:
    """Machine-readable error codes carried in gating responses."""
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PROOF = "INVALID_PROOF"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    RECIPIENT_MISMATCH = "RECIPIENT_MISMATCH"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    FUNDS_UNAVAILABLE = "FUNDS_UNAVAILABLE"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    ALL_ENDPOINTS_FAILED = "ALL_ENDPOINTS_FAILED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    DUPLICATE_SETTLEMENT = "DUPLICATE_SETTLEMENT"

    # Failures that may clear up by themselves once the ledger catches up.
    RETRYABLE = frozenset({TRANSACTION_NOT_FOUND, LEDGER_UNAVAILABLE})

    @classmethod
    def get_all_codes(cls) -> list[str]:
        """Returns all defined error codes."""
        return [
            cls.INVALID_AMOUNT,
            cls.INVALID_PROOF,
            cls.TRANSACTION_NOT_FOUND,
            cls.TRANSACTION_FAILED,
            cls.AMOUNT_MISMATCH,
            cls.RECIPIENT_MISMATCH,
            cls.TOKEN_MISMATCH,
            cls.LEDGER_UNAVAILABLE,
            cls.FUNDS_UNAVAILABLE,
            cls.SUBMISSION_REJECTED,
            cls.ALL_ENDPOINTS_FAILED,
            cls.CONFIRMATION_TIMEOUT,
            cls.DUPLICATE_SETTLEMENT,
        ]

    @classmethod
    def is_retryable(cls, code: Optional[str]) -> bool:
        return code in cls.RETRYABLE


def map_error_to_code(error: Exception) -> str:
    """Maps implementation errors to protocol error codes."""
    error_mapping = {
        InvalidAmountError: X402ErrorCode.INVALID_AMOUNT,
        MessageError: X402ErrorCode.INVALID_PROOF,
        LedgerUnavailableError: X402ErrorCode.LEDGER_UNAVAILABLE,
        FundsUnavailableError: X402ErrorCode.FUNDS_UNAVAILABLE,
        SubmissionRejectedError: X402ErrorCode.SUBMISSION_REJECTED,
        AllEndpointsFailedError: X402ErrorCode.ALL_ENDPOINTS_FAILED,
        ConfirmationTimeoutError: X402ErrorCode.CONFIRMATION_TIMEOUT,
        DuplicateSettlementError: X402ErrorCode.DUPLICATE_SETTLEMENT,
    }
    return error_mapping.get(type(error), "UNKNOWN_ERROR")
