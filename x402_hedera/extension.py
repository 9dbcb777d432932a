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
"""Extension declaration, header names and header helpers for x402 over A2A."""

import json
from typing import TYPE_CHECKING, Dict

from .types.config import X402_EXTENSION_URI

if TYPE_CHECKING:
    from .types.models import PaymentRequirement


EXTENSIONS_HEADER = "X-A2A-Extensions"

# Request headers that may carry a settlement reference, in precedence order.
PAYMENT_HEADER_NAMES = ("X-Payment", "Payment")

PAYMENT_REQUIRED_HEADER = "Payment-Required"
PAYMENT_ADDRESS_HEADER = "Payment-Address"
PAYMENT_AMOUNT_HEADER = "Payment-Amount"
PAYMENT_TOKEN_HEADER = "Payment-Token"


def get_extension_declaration(
    description: str = "Supports x402 payments settled on Hedera",
    required: bool = True
) -> dict:
    """Creates extension declaration for AgentCard."""
    return {
        "uri": X402_EXTENSION_URI,
        "description": description,
        "required": required
    }


def check_extension_activation(request_headers: dict) -> bool:
    """Check if x402 extension is activated via HTTP headers."""
    extensions = ""
    for key, value in (request_headers or {}).items():
        if key.lower() == EXTENSIONS_HEADER.lower():
            extensions = value
            break
    return X402_EXTENSION_URI in extensions


def add_extension_activation_header(response_headers: dict) -> dict:
    """Echo extension URI in response header to confirm activation."""
    response_headers[EXTENSIONS_HEADER] = X402_EXTENSION_URI
    return response_headers


def create_payment_headers(requirement: "PaymentRequirement") -> Dict[str, str]:
    """x402 response headers describing a payment requirement."""
    return {
        PAYMENT_REQUIRED_HEADER: json.dumps(requirement.to_wire()),
        PAYMENT_ADDRESS_HEADER: requirement.recipient,
        PAYMENT_AMOUNT_HEADER: requirement.amount,
        PAYMENT_TOKEN_HEADER: requirement.token,
    }
