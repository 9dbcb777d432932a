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
"""Second-opinion verification through a remote x402 facilitator."""

import logging
from typing import Optional

import httpx

from ..types import PaymentRequirement, SettlementProof, VerificationResult


logger = logging.getLogger(__name__)


class FacilitatorClient:
    """Asks a hosted facilitator's ``/verify`` endpoint about a settlement.

    Only a response that explicitly says ``verified: true`` counts. Anything
    else, including an unreachable or misbehaving facilitator, yields None
    and the caller keeps its own result.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def verify(
        self, proof: SettlementProof, requirement: PaymentRequirement
    ) -> Optional[VerificationResult]:
        payload = {"paymentProof": proof.reference, "paymentRequest": requirement.to_wire()}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self._transport
            ) as client:
                response = await client.post(f"{self.base_url}/verify", json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Facilitator verification of {proof.reference} failed: {e}")
            return None

        if not isinstance(data, dict) or data.get("verified") is not True:
            logger.info(f"Facilitator did not confirm {proof.reference}")
            return None
        logger.info(f"Facilitator confirmed {proof.reference}")
        return VerificationResult.ok(proof.reference)
