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
"""Client-side payer for payment-gated services."""

import asyncio
import copy
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..core import LedgerClient
from ..core.retry import Sleep
from ..extension import EXTENSIONS_HEADER, PAYMENT_HEADER_NAMES
from ..types import (
    ConfirmationTimeoutError,
    MessageError,
    PaymentRequirement,
    ValidationError,
    X402_EXTENSION_URI,
    X402ErrorCode,
    X402Metadata
)


logger = logging.getLogger(__name__)


def gating_payload(response: httpx.Response) -> Dict[str, Any]:
    """The gateway body of a 402, unwrapping a JSON-RPC error envelope."""
    try:
        body = response.json()
    except json.JSONDecodeError as e:
        raise MessageError(f"402 response is not JSON: {e}")
    if isinstance(body, dict) and "jsonrpc" in body:
        body = (body.get("error") or {}).get("data") or {}
    if not isinstance(body, dict):
        raise MessageError("402 response body must be an object")
    return body


def attach_proof(body: Any, proof: Dict[str, Any]) -> Any:
    """Copy of ``body`` carrying ``proof`` where the gateway looks for it."""
    if not isinstance(body, dict):
        return body
    body = copy.deepcopy(body)
    message = (body.get("params") or {}).get("message") if "jsonrpc" in body else None
    if isinstance(message, dict):
        message.setdefault("metadata", {})[X402Metadata.PAYMENT_KEY] = proof
    else:
        body[X402Metadata.PAYMENT_KEY] = proof
    return body


class X402PayingClient:
    """Calls payment-gated endpoints and pays when asked to.

    On a 402 the client checks the price against ``max_amount``, submits the
    transfer through its LedgerClient, waits for the mirror node to index it
    and retries with the reference. While the gateway reports the transfer as
    not yet found, the same reference is re-sent; a transfer is never paid
    twice. References are remembered per context so follow-up requests in a
    paid conversation carry them.

    Example:
        payer = X402PayingClient(LedgerClient.from_private_key(key), max_amount="1")
        response = await payer.post(url, json=request_body, context_id="ctx-1")
    """

    def __init__(
        self,
        ledger: LedgerClient,
        max_amount: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        indexing_delay_seconds: float = 10.0,
        reverify_attempts: int = 3,
        reverify_delay_seconds: float = 5.0,
        round_trip_timeout_seconds: float = 120.0,
        auto_pay: bool = True,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize the paying client.

        Args:
            ledger: Submits the transfers
            max_amount: Refuse to pay more than this (optional)
            http_client: Client used for requests (one is created per call if omitted)
            indexing_delay_seconds: Wait between a confirmed transfer and the first retry
            reverify_attempts: Extra retries while the transfer is not yet indexed
            reverify_delay_seconds: Wait between those retries
            round_trip_timeout_seconds: Bound on one whole request, payment included
            auto_pay: Whether to pay automatically (default: True)
        """
        self.ledger = ledger
        self.max_amount = Decimal(max_amount) if max_amount is not None else None
        self.indexing_delay_seconds = indexing_delay_seconds
        self.reverify_attempts = reverify_attempts
        self.reverify_delay_seconds = reverify_delay_seconds
        self.round_trip_timeout_seconds = round_trip_timeout_seconds
        self.auto_pay = auto_pay
        self._http_client = http_client
        self._sleep = sleep
        self._references: Dict[str, str] = {}

    def reference_for(self, context_id: str) -> Optional[str]:
        return self._references.get(context_id)

    async def post(
        self,
        url: str,
        json: Any = None,
        context_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """POST ``json`` to ``url``, paying if the service requires it.

        Raises:
            asyncio.TimeoutError: the round trip exceeded its bound.
            ValidationError: the price exceeds ``max_amount``.
            PaymentError: the transfer could not be made.
        """
        return await asyncio.wait_for(
            self._round_trip(url, json, context_id, headers or {}),
            self.round_trip_timeout_seconds,
        )

    async def _round_trip(
        self, url: str, body: Any, context_id: Optional[str], headers: Dict[str, str]
    ) -> httpx.Response:
        headers = {EXTENSIONS_HEADER: X402_EXTENSION_URI, **headers}
        remembered = self._references.get(context_id) if context_id else None
        if remembered:
            headers[PAYMENT_HEADER_NAMES[0]] = remembered

        if self._http_client is not None:
            return await self._exchange(self._http_client, url, body, context_id, headers)
        async with httpx.AsyncClient() as client:
            return await self._exchange(client, url, body, context_id, headers)

    async def _exchange(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: Any,
        context_id: Optional[str],
        headers: Dict[str, str],
    ) -> httpx.Response:
        response = await client.post(url, json=body, headers=headers)
        if response.status_code != 402 or not self.auto_pay:
            return response

        payload = gating_payload(response)
        if context_id and context_id in self._references:
            logger.info(f"Remembered payment for context {context_id} was not accepted; paying again")
            self._references.pop(context_id, None)
            headers.pop(PAYMENT_HEADER_NAMES[0], None)

        requirement = self._requirement_from(payload)
        reference = await self._pay(requirement)

        proof = {
            "requestId": requirement.request_id,
            "txHash": reference,
            "amount": requirement.amount,
            "token": requirement.token,
        }
        retry_headers = {**headers, PAYMENT_HEADER_NAMES[0]: reference}
        retry_body = attach_proof(body, proof)

        await self._sleep(self.indexing_delay_seconds)
        for attempt in range(self.reverify_attempts + 1):
            response = await client.post(url, json=retry_body, headers=retry_headers)
            if response.status_code != 402:
                if context_id:
                    self._references[context_id] = reference
                logger.info(f"Payment {reference} accepted")
                return response

            code = gating_payload(response).get("errorCode")
            if code != X402ErrorCode.TRANSACTION_NOT_FOUND or attempt == self.reverify_attempts:
                logger.warning(f"Payment {reference} not accepted ({code})")
                return response
            logger.info(f"Payment {reference} not indexed yet; re-verifying (attempt {attempt + 1})")
            await self._sleep(self.reverify_delay_seconds)
        return response

    def _requirement_from(self, payload: Dict[str, Any]) -> PaymentRequirement:
        terms = payload.get("payment")
        if not isinstance(terms, dict):
            raise MessageError("402 response carries no payment terms")
        requirement = PaymentRequirement.model_validate(terms)
        if self.max_amount is not None and Decimal(requirement.amount) > self.max_amount:
            raise ValidationError(
                f"Payment of {requirement.amount} {requirement.token} exceeds maximum {self.max_amount}"
            )
        return requirement

    async def _pay(self, requirement: PaymentRequirement) -> str:
        logger.info(
            f"Paying {requirement.amount} {requirement.token} to {requirement.recipient} "
            f"for {requirement.request_id}"
        )
        try:
            receipt = await self.ledger.submit_transfer(
                requirement.recipient, requirement.amount, requirement.token
            )
        except ConfirmationTimeoutError as e:
            logger.warning(f"Confirmation of {e.reference} not seen; re-verifying instead of resubmitting")
            return e.reference
        return receipt.reference
