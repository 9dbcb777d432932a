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
"""Payment gating in front of a request handler."""

import logging
from typing import Any, Awaitable, Callable, Optional

from ..extension import create_payment_headers
from ..types import (
    DuplicateSettlementError,
    GatewayConfig,
    GatewayRequest,
    GatewayResponse,
    GatewayState,
    MessageError,
    PaymentPolicy,
    PaymentRequirement,
    SettlementProof,
    VerificationResult,
    X402ErrorCode,
    X402HederaSettings,
)
from .broker import PaymentRequestBroker
from .cache import ConversationPaymentCache
from .mirror import MirrorNodeClient
from .utils import extract_settlement_proof
from .verifier import TransactionVerifier


logger = logging.getLogger(__name__)

Handler = Callable[[GatewayRequest], Awaitable[Any]]

PAYMENT_REQUIRED_MESSAGE = "Payment required. Submit the transfer and retry with its reference."
RETRY_SAME_REFERENCE_HINT = "Retry later with the same reference; do not submit a new transfer."


class ProtocolGateway:
    """Decides, per request, whether to ask for payment, verify it, or pass through.

    Each request moves NEW -> (AWAITING_PAYMENT | VERIFYING) -> (COMPLETED |
    REJECTED). Conversations that have paid once pass straight through for as
    long as the cache remembers them.

    ``handler`` is optional. Without it a COMPLETED response carries no result
    and the routing layer runs the downstream work itself.

    Example:
        gateway = ProtocolGateway.from_settings(X402HederaSettings.from_env(), handler=answer)
        response = await gateway.handle(GatewayRequest(context_id="ctx-1", payload=body))
        if response.payment_required:
            return JSONResponse(response.body, status_code=402, headers=response.headers)
    """

    def __init__(
        self,
        policy: PaymentPolicy,
        verifier: TransactionVerifier,
        broker: Optional[PaymentRequestBroker] = None,
        cache: Optional[ConversationPaymentCache] = None,
        config: Optional[GatewayConfig] = None,
        handler: Optional[Handler] = None,
    ):
        self.config = config or GatewayConfig()
        self.policy = policy
        self.verifier = verifier
        self.broker = broker or PaymentRequestBroker(
            network=self.config.network,
            ttl_seconds=self.config.requirement_ttl_seconds,
            max_entries=self.config.max_requirements,
        )
        self.cache = cache or ConversationPaymentCache(
            ttl_seconds=self.config.context_ttl_seconds,
            max_entries=self.config.max_contexts,
            settlement_ttl_seconds=self.config.settlement_ttl_seconds,
            max_settlements=self.config.max_settlements,
        )
        self.handler = handler

    @classmethod
    def from_settings(
        cls, settings: X402HederaSettings, handler: Optional[Handler] = None
    ) -> "ProtocolGateway":
        mirror = MirrorNodeClient(
            settings.verifier.mirror_node_url, timeout_seconds=settings.verifier.timeout_seconds
        )
        gateway = settings.gateway
        broker = PaymentRequestBroker(
            network=gateway.network,
            ttl_seconds=gateway.requirement_ttl_seconds,
            max_entries=gateway.max_requirements,
            tokens=settings.verifier.tokens,
        )
        return cls(
            policy=settings.policy,
            verifier=TransactionVerifier(mirror, settings.verifier),
            broker=broker,
            config=settings.gateway,
            handler=handler,
        )

    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        context_id = request.context_id
        if context_id:
            state = self.cache.touch(context_id)
            if state.verified:
                logger.info(f"Context {context_id} already paid; passing through")
                return await self._complete(request, state.settlement_reference)

        if not self.policy.requires_payment(request.operation):
            logger.info(f"Operation {request.operation!r} is free; passing through")
            return await self._complete(request)

        try:
            proof = extract_settlement_proof(request.headers, request.payment)
        except MessageError as e:
            logger.warning(f"Malformed payment proof for context {context_id}: {e}")
            requirement = self._new_requirement(request.operation)
            return self._rejected(
                requirement,
                VerificationResult.fail(X402ErrorCode.INVALID_PROOF, str(e)),
            )

        if proof is None:
            requirement = self._new_requirement(request.operation)
            logger.info(
                f"Context {context_id} -> {GatewayState.AWAITING_PAYMENT.value} "
                f"(requirement {requirement.request_id})"
            )
            return self._payment_required(requirement)

        return await self._verify(request, proof)

    async def _verify(self, request: GatewayRequest, proof: SettlementProof) -> GatewayResponse:
        context_id = request.context_id
        logger.info(f"Context {context_id} -> {GatewayState.VERIFYING.value} ({proof.reference})")

        requirement = self.broker.lookup(proof.request_id)
        if requirement is None:
            if self.config.require_request_id:
                reason = (
                    f"Unknown or expired requestId {proof.request_id}"
                    if proof.request_id
                    else "Payment proof must cite the requestId it settles"
                )
                return self._rejected(
                    self._new_requirement(request.operation),
                    VerificationResult.fail(X402ErrorCode.INVALID_PROOF, reason, proof.reference),
                )
            requirement = self._new_requirement(request.operation)

        if not self.cache.can_accept(proof.reference, context_id):
            return self._rejected(requirement, self._duplicate(proof.reference))

        verification = await self.verifier.verify(proof, requirement)
        if not verification.verified:
            return self._rejected(requirement, verification)

        try:
            if context_id:
                self.cache.mark_verified(context_id, proof.reference)
            else:
                self.cache.claim_settlement(proof.reference)
        except DuplicateSettlementError:
            return self._rejected(requirement, self._duplicate(proof.reference))
        self.broker.settle(requirement.request_id)
        return await self._complete(request, proof.reference, verification, requirement)

    async def _complete(
        self,
        request: GatewayRequest,
        settlement_reference: Optional[str] = None,
        verification: Optional[VerificationResult] = None,
        requirement: Optional[PaymentRequirement] = None,
    ) -> GatewayResponse:
        logger.info(f"Context {request.context_id} -> {GatewayState.COMPLETED.value}")
        result = await self.handler(request) if self.handler else None
        return GatewayResponse(
            state=GatewayState.COMPLETED,
            result=result,
            verification=verification,
            requirement=requirement,
            settlement_reference=settlement_reference,
        )

    def _new_requirement(self, operation: str) -> PaymentRequirement:
        return self.broker.create_requirement(
            amount=self.policy.price_for(operation),
            token=self.policy.token,
            recipient=self.policy.pay_to_address,
            description=self.policy.description_for(operation),
            resource=operation,
        )

    def _payment_required(self, requirement: PaymentRequirement) -> GatewayResponse:
        return GatewayResponse(
            state=GatewayState.AWAITING_PAYMENT,
            status_code=402,
            body={
                "paymentRequired": True,
                "payment": requirement.to_wire(),
                "message": PAYMENT_REQUIRED_MESSAGE,
            },
            headers=create_payment_headers(requirement),
            requirement=requirement,
        )

    def _rejected(self, requirement: PaymentRequirement, verification: VerificationResult) -> GatewayResponse:
        retryable = X402ErrorCode.is_retryable(verification.code)
        logger.warning(
            f"Payment rejected [{verification.code}]: {verification.error} (retryable={retryable})"
        )
        body = {
            "paymentRequired": True,
            "payment": requirement.to_wire(),
            "message": RETRY_SAME_REFERENCE_HINT if retryable else verification.error,
            "error": verification.error,
            "errorCode": verification.code,
            "retryable": retryable,
        }
        return GatewayResponse(
            state=GatewayState.REJECTED,
            status_code=402,
            body=body,
            headers=create_payment_headers(requirement),
            requirement=requirement,
            verification=verification,
        )

    @staticmethod
    def _duplicate(reference: str) -> VerificationResult:
        return VerificationResult.fail(
            X402ErrorCode.DUPLICATE_SETTLEMENT,
            f"Settlement reference {reference} was already accepted for another request",
            reference,
        )
