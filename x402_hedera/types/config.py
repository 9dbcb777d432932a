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
"""Configuration types for x402_hedera."""

import os
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Set

from dotenv import load_dotenv
from pydantic import BaseModel, Field


X402_EXTENSION_URI = "https://github.com/google-a2a/a2a-x402/v0.1"

HEDERA_TESTNET_MIRROR_NODE_URL = "https://testnet.mirrornode.hedera.com/api/v1"
HEDERA_TESTNET_RPC_URL = "https://testnet.hashio.io/api"
HEDERA_TESTNET_CHAIN_ID = 296

HBAR = "HBAR"


class X402ExtensionConfig(BaseModel):
    """Configuration for x402 extension."""
    extension_uri: str = X402_EXTENSION_URI
    version: str = "0.1"
    x402_version: int = 1
    required: bool = True


class TokenInfo(BaseModel):
    """A token the gateway can bill in.

    ``token_id`` is the HTS id used by the mirror node (``0.0.x``) and
    ``evm_address`` is its ERC-20 facade used for submission. Neither is set
    for native HBAR.
    """
    symbol: str
    decimals: int = 8
    token_id: Optional[str] = None
    evm_address: Optional[str] = None


def default_tokens() -> Dict[str, TokenInfo]:
    return {HBAR: TokenInfo(symbol=HBAR, decimals=8)}


class PaymentPolicy(BaseModel):
    """How a service expects to be paid"""
    price: str = "0.1"
    token: str = HBAR
    pay_to_address: str
    description: str = "Payment required for this service"
    operation_prices: Dict[str, str] = Field(default_factory=dict)
    free_operations: Set[str] = Field(default_factory=set)

    def price_for(self, operation: str) -> str:
        return self.operation_prices.get(operation, self.price)

    def requires_payment(self, operation: str) -> bool:
        if operation in self.free_operations:
            return False
        try:
            return Decimal(self.price_for(operation)) > 0
        except InvalidOperation:
            # A misconfigured price is surfaced by the broker, not skipped.
            return True

    def description_for(self, operation: str) -> str:
        if operation and operation != "default":
            return f"{self.description} ({operation})"
        return self.description


class VerifierConfig(BaseModel):
    """How settlement proofs are checked against the mirror node"""
    mirror_node_url: str = HEDERA_TESTNET_MIRROR_NODE_URL
    timeout_seconds: float = 15.0
    # Accept 90% of the amount and entity-id matches, as early x402-hedera
    # servers did. Off unless explicitly enabled.
    lenient_matching: bool = False
    lenient_amount_ratio: str = "0.9"
    # EVM address -> Hedera account id, for accounts without a long-zero address
    address_book: Dict[str, str] = Field(default_factory=dict)
    tokens: Dict[str, TokenInfo] = Field(default_factory=default_tokens)
    # Transactions settled this long before a requirement was issued still count.
    max_clock_skew_seconds: float = 60.0
    # Remote x402 facilitator consulted when the ledger check fails.
    facilitator_url: Optional[str] = None
    facilitator_timeout_seconds: float = 5.0


class RetryPolicy(BaseModel):
    """Exponential backoff for ledger submission"""
    attempts_per_endpoint: int = Field(default=3, ge=1)
    base_delay_seconds: float = 2.0
    multiplier: float = 2.0
    max_delay_seconds: float = 16.0

    def delay_for(self, failures: int) -> float:
        """Delay to wait after ``failures`` failed attempts."""
        if failures <= 0:
            return 0.0
        delay = self.base_delay_seconds * (self.multiplier ** (failures - 1))
        return min(delay, self.max_delay_seconds)


class LedgerEndpoint(BaseModel):
    """One JSON-RPC relay the ledger client may submit through."""
    url: str
    name: Optional[str] = None
    timeout_seconds: float = 30.0

    @property
    def label(self) -> str:
        return self.name or self.url


class LedgerConfig(BaseModel):
    """Submission settings for the ledger client"""
    endpoints: List[LedgerEndpoint] = Field(
        default_factory=lambda: [LedgerEndpoint(url=HEDERA_TESTNET_RPC_URL, name="hashio-testnet")]
    )
    network: str = "hedera-testnet"
    chain_id: int = HEDERA_TESTNET_CHAIN_ID
    confirmation_timeout_seconds: float = 30.0
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    tokens: Dict[str, TokenInfo] = Field(default_factory=default_tokens)


class GatewayConfig(BaseModel):
    """Retention and strictness settings for the protocol gateway"""
    network: str = "hedera-testnet"
    requirement_ttl_seconds: float = 3600.0
    max_requirements: int = 10_000
    context_ttl_seconds: Optional[float] = 86_400.0
    max_contexts: int = 100_000
    # Accepted settlement references. None keeps them until the store is full.
    settlement_ttl_seconds: Optional[float] = None
    max_settlements: int = 1_000_000
    # Reject proofs that do not cite a requirement this gateway issued.
    require_request_id: bool = False


class X402HederaSettings(BaseModel):
    """Bundle of all configuration, loadable from the environment."""
    policy: PaymentPolicy
    verifier: VerifierConfig = Field(default_factory=VerifierConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "X402HederaSettings":
        """Build settings from environment variables (and a ``.env`` file if present)."""
        load_dotenv(dotenv_path)

        pay_to = os.getenv("PAY_TO_ADDRESS")
        if not pay_to:
            raise ValueError("PAY_TO_ADDRESS environment variable required")

        network = os.getenv("HEDERA_NETWORK", "hedera-testnet")
        rpc_urls = [
            url.strip()
            for url in os.getenv("HEDERA_RPC_URLS", HEDERA_TESTNET_RPC_URL).split(",")
            if url.strip()
        ]

        return cls(
            policy=PaymentPolicy(
                price=os.getenv("X402_PRICE", "0.1"),
                token=os.getenv("X402_TOKEN", HBAR),
                pay_to_address=pay_to,
            ),
            verifier=VerifierConfig(
                mirror_node_url=os.getenv("HEDERA_MIRROR_NODE_URL", HEDERA_TESTNET_MIRROR_NODE_URL),
                lenient_matching=os.getenv("X402_LENIENT_VERIFICATION", "false").lower() == "true",
                facilitator_url=os.getenv("X402_FACILITATOR_URL") or None,
            ),
            ledger=LedgerConfig(
                endpoints=[LedgerEndpoint(url=url) for url in rpc_urls],
                network=network,
                chain_id=int(os.getenv("HEDERA_CHAIN_ID", str(HEDERA_TESTNET_CHAIN_ID))),
            ),
            gateway=GatewayConfig(network=network),
        )
