"""Shared pytest fixtures for x402_hedera tests."""

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from eth_account import Account

from x402_hedera.core import (
    ConversationPaymentCache,
    MirrorNodeClient,
    PaymentRequestBroker,
    ProtocolGateway,
    TransactionVerifier
)
from x402_hedera.types import (
    PaymentPolicy,
    PaymentRequirement,
    VerifierConfig
)


MIRROR_URL = "https://mirror.test/api/v1"
PAY_TO = "0.0.7170260"
PAYER = "0.0.5005"
TX_ID = "0.0.5005-1700000000-000000001"


def hbar_transaction(
    transaction_id: str = TX_ID,
    recipient: str = PAY_TO,
    tinybars: int = 10_000_000,
    result: str = "SUCCESS",
    consensus_timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """Mirror node ``/transactions/{id}`` document for a plain HBAR transfer.

    Settles now unless ``consensus_timestamp`` says otherwise.
    """
    return {
        "transactions": [
            {
                "transaction_id": transaction_id,
                "result": result,
                "consensus_timestamp": consensus_timestamp or f"{time.time():.9f}",
                "entity_id": None,
                "transfers": [
                    {"account": PAYER, "amount": -tinybars - 100_000},
                    {"account": recipient, "amount": tinybars},
                    {"account": "0.0.98", "amount": 100_000},
                ],
                "token_transfers": [],
            }
        ]
    }


class MirrorStub:
    """Serves canned mirror node responses and records the paths requested."""

    def __init__(self, routes: Optional[Dict[str, Tuple[int, Any]]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []
        self.error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        path = request.url.path.replace("/api/v1", "", 1)
        status, body = self.routes.get(path, (404, {"_status": {"messages": [{"message": "Not found"}]}}))
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def paths(self) -> List[str]:
        return [request.url.path.replace("/api/v1", "", 1) for request in self.requests]


@pytest.fixture
def mirror_stub():
    """Mirror node stub; the default route serves a 0.1 HBAR payment to PAY_TO."""
    return MirrorStub({f"/transactions/{TX_ID}": (200, hbar_transaction())})


@pytest.fixture
def mirror_client(mirror_stub):
    return MirrorNodeClient(MIRROR_URL, transport=mirror_stub.transport)


@pytest.fixture
def verifier(mirror_client):
    return TransactionVerifier(mirror_client, VerifierConfig(mirror_node_url=MIRROR_URL))


@pytest.fixture
def policy():
    return PaymentPolicy(
        price="0.1",
        token="HBAR",
        pay_to_address=PAY_TO,
        description="Payment for Research agent",
    )


@pytest.fixture
def broker():
    return PaymentRequestBroker()


@pytest.fixture
def cache():
    return ConversationPaymentCache()


@pytest.fixture
def gateway(policy, verifier, broker, cache):
    return ProtocolGateway(policy=policy, verifier=verifier, broker=broker, cache=cache)


@pytest.fixture
def sample_requirement(broker):
    return broker.create_requirement(
        amount="0.1",
        token="HBAR",
        recipient=PAY_TO,
        description="Payment for Research agent",
    )


@pytest.fixture
def test_account():
    """Create a test Ethereum account."""
    # Use a deterministic private key for consistent testing
    private_key = "0x" + "1" * 64
    return Account.from_key(private_key)
