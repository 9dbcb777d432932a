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
"""Settlement proof verification against the mirror node."""

import logging
import math
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Set

from ..types import (
    HBAR,
    InvalidAmountError,
    LedgerTransaction,
    LedgerTransfer,
    LedgerUnavailableError,
    PaymentRequirement,
    SettlementProof,
    TokenInfo,
    VerificationResult,
    VerifierConfig,
    X402ErrorCode,
)
from .facilitator import FacilitatorClient
from .mirror import MirrorNodeClient
from .utils import (
    account_id_to_long_zero,
    is_account_id,
    long_zero_to_account_id,
    parse_amount,
    same_address,
    to_smallest_unit,
)


logger = logging.getLogger(__name__)

# Ledger-side failures a remote facilitator may still be able to confirm.
FACILITATOR_FALLBACK_CODES = frozenset({
    X402ErrorCode.TRANSACTION_NOT_FOUND,
    X402ErrorCode.LEDGER_UNAVAILABLE,
    X402ErrorCode.RECIPIENT_MISMATCH,
    X402ErrorCode.AMOUNT_MISMATCH,
    X402ErrorCode.TOKEN_MISMATCH,
})


def _normalize(address: str) -> str:
    return (long_zero_to_account_id(address) or address).strip().lower()


class TransactionVerifier:
    """Checks that a referenced transaction settled a payment requirement.

    A proof is accepted when the transaction exists, succeeded, and credited
    at least the required amount of the required token to the required
    recipient. The terms always come from the requirement; fields stated in
    the proof can only cause a mismatch, never relax the check.
    A proof that cites its requestId must point at a transaction settled no
    earlier than ``max_clock_skew_seconds`` before that requirement was issued.

    When a facilitator is configured, it is asked only after the ledger check
    fails for a ledger-side reason, and only its explicit confirmation counts.

    Failures are returned as VerificationResult values. Nothing is retried
    here and nothing is written, so calling verify twice with the same inputs
    against the same ledger state gives the same result.
    """

    def __init__(
        self,
        mirror: Optional[MirrorNodeClient] = None,
        config: Optional[VerifierConfig] = None,
        facilitator: Optional[FacilitatorClient] = None,
    ):
        self.config = config or VerifierConfig()
        self.mirror = mirror or MirrorNodeClient(
            self.config.mirror_node_url, timeout_seconds=self.config.timeout_seconds
        )
        if facilitator is None and self.config.facilitator_url:
            facilitator = FacilitatorClient(
                self.config.facilitator_url, timeout_seconds=self.config.facilitator_timeout_seconds
            )
        self.facilitator = facilitator

    async def verify(self, proof: SettlementProof, requirement: PaymentRequirement) -> VerificationResult:
        reference = proof.reference
        logger.info(
            f"Verifying {reference} against {requirement.amount} {requirement.token} "
            f"to {requirement.recipient}"
        )

        mismatch = self._check_stated_terms(proof, requirement)
        if mismatch is not None:
            return self._reject(mismatch)

        token = self.config.tokens.get(requirement.token)
        if token is None:
            return self._reject(VerificationResult.fail(
                X402ErrorCode.TOKEN_MISMATCH,
                f"Token {requirement.token} is not supported by this verifier",
                reference,
            ))

        result = await self._verify_on_ledger(proof, requirement, token)
        if not result.verified and self.facilitator and result.code in FACILITATOR_FALLBACK_CODES:
            confirmed = await self.facilitator.verify(proof, requirement)
            if confirmed is not None:
                logger.info(f"Payment {reference} confirmed by facilitator after [{result.code}]")
                return confirmed

        if result.verified:
            logger.info(f"Payment {reference} verified for requirement {requirement.request_id}")
            return result
        return self._reject(result)

    async def _verify_on_ledger(
        self, proof: SettlementProof, requirement: PaymentRequirement, token: TokenInfo
    ) -> VerificationResult:
        reference = proof.reference
        try:
            transaction = await self.mirror.get_transaction(reference)
            if transaction is None:
                return VerificationResult.fail(
                    X402ErrorCode.TRANSACTION_NOT_FOUND,
                    f"Transaction {reference} not found (it may not be indexed yet)",
                    reference,
                )
            if not transaction.succeeded:
                return VerificationResult.fail(
                    X402ErrorCode.TRANSACTION_FAILED,
                    f"Transaction {reference} did not succeed (result {transaction.result})",
                    reference,
                )
            if self._predates(transaction, proof, requirement):
                return VerificationResult.fail(
                    X402ErrorCode.INVALID_PROOF,
                    f"Transaction {reference} predates payment requirement {requirement.request_id}",
                    reference,
                )
            return await self._check_credit(transaction, requirement, token)
        except LedgerUnavailableError as e:
            return VerificationResult.fail(X402ErrorCode.LEDGER_UNAVAILABLE, str(e), reference)

    def _predates(
        self, transaction: LedgerTransaction, proof: SettlementProof, requirement: PaymentRequirement
    ) -> bool:
        """Whether a proof citing ``requirement`` points at a transfer made before it was issued."""
        if not proof.request_id or proof.request_id != requirement.request_id:
            return False
        try:
            settled_at = Decimal(transaction.consensus_timestamp or "")
        except InvalidOperation:
            return False
        if not settled_at.is_finite():
            return False
        issued_at = Decimal(str(requirement.created_at.timestamp()))
        return settled_at < issued_at - Decimal(str(self.config.max_clock_skew_seconds))

    def _check_stated_terms(
        self, proof: SettlementProof, requirement: PaymentRequirement
    ) -> Optional[VerificationResult]:
        """Terms the caller claims must agree with what was asked for."""
        reference = proof.reference
        if proof.token and proof.token.upper() != requirement.token.upper():
            return VerificationResult.fail(
                X402ErrorCode.TOKEN_MISMATCH,
                f"Proof is for {proof.token}, payment requires {requirement.token}",
                reference,
            )
        if proof.recipient and _normalize(proof.recipient) != _normalize(requirement.recipient):
            return VerificationResult.fail(
                X402ErrorCode.RECIPIENT_MISMATCH,
                f"Proof pays {proof.recipient}, payment requires {requirement.recipient}",
                reference,
            )
        if proof.amount is not None:
            try:
                stated = parse_amount(proof.amount, 18)
            except InvalidAmountError as e:
                return VerificationResult.fail(X402ErrorCode.INVALID_PROOF, str(e), reference)
            if stated < Decimal(requirement.amount):
                return VerificationResult.fail(
                    X402ErrorCode.AMOUNT_MISMATCH,
                    f"Proof states {proof.amount}, payment requires {requirement.amount}",
                    reference,
                )
        return None

    async def _check_credit(
        self,
        transaction: LedgerTransaction,
        requirement: PaymentRequirement,
        token: TokenInfo,
    ) -> VerificationResult:
        reference = transaction.reference
        required_units = to_smallest_unit(Decimal(requirement.amount), token.decimals)
        threshold = required_units
        if self.config.lenient_matching:
            threshold = math.ceil(required_units * Decimal(self.config.lenient_amount_ratio))

        candidates = self._recipient_candidates(requirement.recipient)
        transfers = self._transfers_for(transaction, token)
        credited = self._credited(transfers, candidates)

        if credited == 0 and self._looks_like_evm_address(requirement.recipient):
            resolved = await self.mirror.resolve_account(requirement.recipient)
            if resolved:
                candidates.add(resolved.lower())
                credited = self._credited(transfers, candidates)

        if credited == 0:
            if self._credits_other_token(transaction, token, candidates):
                return VerificationResult.fail(
                    X402ErrorCode.TOKEN_MISMATCH,
                    f"Transaction {reference} paid the recipient in a different token than {token.symbol}",
                    reference,
                )
            if (
                self.config.lenient_matching
                and not transaction.transfers
                and not transaction.token_transfers
                and transaction.entity_id
                and transaction.entity_id.lower() in candidates
            ):
                logger.warning(f"Accepting {reference} on entity id match (lenient mode)")
                return VerificationResult.ok(reference)
            return VerificationResult.fail(
                X402ErrorCode.RECIPIENT_MISMATCH,
                f"Transaction {reference} credits nothing to {requirement.recipient}",
                reference,
            )

        if credited < threshold:
            return VerificationResult.fail(
                X402ErrorCode.AMOUNT_MISMATCH,
                f"Transaction {reference} credited {credited} of {required_units} required units",
                reference,
            )
        return VerificationResult.ok(reference)

    def _recipient_candidates(self, recipient: str) -> Set[str]:
        candidates = {recipient.strip().lower(), _normalize(recipient)}
        for evm_address, account_id in self.config.address_book.items():
            if same_address(evm_address, recipient):
                candidates.add(account_id.lower())
        if is_account_id(recipient):
            candidates.add(account_id_to_long_zero(recipient))
        return candidates

    @staticmethod
    def _looks_like_evm_address(address: str) -> bool:
        return address.lower().startswith("0x") and len(address) == 42 and not long_zero_to_account_id(address)

    @staticmethod
    def _transfers_for(transaction: LedgerTransaction, token: TokenInfo) -> List[LedgerTransfer]:
        if token.symbol == HBAR:
            return transaction.transfers
        return [t for t in transaction.token_transfers if t.token_id == token.token_id]

    @staticmethod
    def _credited(transfers: List[LedgerTransfer], candidates: Set[str]) -> int:
        return sum(
            t.amount for t in transfers
            if t.amount > 0 and (t.account.lower() in candidates or _normalize(t.account) in candidates)
        )

    @staticmethod
    def _credits_other_token(transaction: LedgerTransaction, token: TokenInfo, candidates: Set[str]) -> bool:
        if token.symbol == HBAR:
            others = transaction.token_transfers
        else:
            others = transaction.transfers + [
                t for t in transaction.token_transfers if t.token_id != token.token_id
            ]
        return any(t.amount > 0 and _normalize(t.account) in candidates for t in others)

    @staticmethod
    def _reject(result: VerificationResult) -> VerificationResult:
        logger.warning(f"Payment verification failed [{result.code}]: {result.error}")
        return result
