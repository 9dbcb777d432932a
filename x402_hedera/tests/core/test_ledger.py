"""Unit tests for x402_hedera.core.ledger module."""

import asyncio
from decimal import Decimal
from typing import Dict, List
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from x402_hedera.core.ledger import (
    LedgerClient,
    LedgerTransport,
    Web3Transport,
    classify_rejection,
    is_transient_error,
    to_evm_address
)
from x402_hedera.types import (
    AllEndpointsFailedError,
    ConfirmationTimeoutError,
    FundsUnavailableError,
    InvalidAmountError,
    LedgerConfig,
    LedgerEndpoint,
    RetryPolicy,
    SubmissionRejectedError,
    TokenInfo
)


PAY_TO = "0.0.7170260"
TX_HASH = "0x" + "ab" * 32


class ScriptedTransport(LedgerTransport):
    """Plays back queued outcomes for one endpoint; an Exception is raised, anything else returned."""

    def __init__(self, endpoint, sends: List, confirmations: List, calls: List):
        super().__init__(endpoint)
        self._sends = sends
        self._confirmations = confirmations
        self._calls = calls

    async def send_transfer(self, recipient, amount, token):
        self._calls.append(("send", self.endpoint.label, recipient, amount, token.symbol))
        outcome = self._sends.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def wait_for_confirmation(self, reference, timeout_seconds):
        self._calls.append(("confirm", self.endpoint.label, reference))
        outcome = self._confirmations.pop(0) if self._confirmations else True
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(3600)
        return outcome


class Relay:
    """Builds ScriptedTransports, one per attempt, from per-endpoint scripts."""

    def __init__(self, sends: Dict[str, List], confirmations: List = None):
        self.sends = sends
        self.confirmations = list(confirmations or [])
        self.calls: List = []
        self.transports_built = 0

    def factory(self, endpoint: LedgerEndpoint) -> LedgerTransport:
        self.transports_built += 1
        return ScriptedTransport(endpoint, self.sends[endpoint.label], self.confirmations, self.calls)


def make_client(relay: Relay, names, attempts_per_endpoint=3, confirmation_timeout=30.0):
    config = LedgerConfig(
        endpoints=[LedgerEndpoint(url=f"https://{name}.test/api", name=name) for name in names],
        retry=RetryPolicy(attempts_per_endpoint=attempts_per_endpoint),
        confirmation_timeout_seconds=confirmation_timeout,
    )
    sleep = AsyncMock()
    return LedgerClient(config=config, transport_factory=relay.factory, sleep=sleep), sleep


def slept(sleep: AsyncMock) -> List[float]:
    return [call.args[0] for call in sleep.await_args_list]


class TestSubmitTransfer:
    """Test submission, retry and failover."""

    @pytest.mark.asyncio
    async def test_first_try_success(self):
        relay = Relay({"a": [TX_HASH]})
        client, sleep = make_client(relay, ["a"])

        receipt = await client.submit_transfer(PAY_TO, "0.1", "HBAR")

        assert receipt.reference == TX_HASH
        assert receipt.endpoint == "a"
        assert len(receipt.attempts) == 1
        assert relay.calls[0] == ("send", "a", PAY_TO, Decimal("0.1"), "HBAR")
        assert relay.calls[1] == ("confirm", "a", TX_HASH)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scenario_two_endpoints_fail_third_succeeds(self):
        relay = Relay({
            "a": [ConnectionError("ECONNRESET")],
            "b": [ConnectionError("ECONNRESET")],
            "c": [TX_HASH],
        })
        client, sleep = make_client(relay, ["a", "b", "c"], attempts_per_endpoint=1)

        receipt = await client.submit_transfer(PAY_TO, "0.1")

        assert receipt.endpoint == "c"
        assert slept(sleep) == [2.0, 4.0]
        assert [a.endpoint for a in receipt.attempts] == ["a", "b", "c"]
        assert [a.delay_seconds for a in receipt.attempts] == [0.0, 2.0, 4.0]
        assert receipt.attempts[0].error == "ECONNRESET"

    @pytest.mark.asyncio
    async def test_retries_same_endpoint_before_failover(self):
        relay = Relay({
            "a": [TimeoutError("timed out"), TimeoutError("timed out"), TimeoutError("timed out")],
            "b": [TX_HASH],
        })
        client, sleep = make_client(relay, ["a", "b"])

        receipt = await client.submit_transfer(PAY_TO, "0.1")

        assert receipt.endpoint == "b"
        assert slept(sleep) == [2.0, 4.0, 8.0]
        assert relay.transports_built == 4

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self):
        last = httpx.ConnectError("connection refused")
        relay = Relay({
            "a": [ConnectionError("ECONNRESET")],
            "b": [last],
        })
        client, sleep = make_client(relay, ["a", "b"], attempts_per_endpoint=1)

        with pytest.raises(AllEndpointsFailedError) as exc_info:
            await client.submit_transfer(PAY_TO, "0.1")

        assert exc_info.value.last_error is last
        assert len(exc_info.value.attempts) == 2
        assert slept(sleep) == [2.0]

    @pytest.mark.asyncio
    async def test_insufficient_funds_aborts_immediately(self):
        relay = Relay({"a": [ValueError("insufficient funds for gas * price + value")], "b": [TX_HASH]})
        client, sleep = make_client(relay, ["a", "b"])

        with pytest.raises(FundsUnavailableError):
            await client.submit_transfer(PAY_TO, "0.1")

        assert relay.transports_built == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rpc_rejection_aborts_immediately(self):
        relay = Relay({"a": [ValueError("nonce too low")], "b": [TX_HASH]})
        client, _ = make_client(relay, ["a", "b"])

        with pytest.raises(SubmissionRejectedError, match="nonce too low"):
            await client.submit_transfer(PAY_TO, "0.1")
        assert relay.transports_built == 1

    @pytest.mark.asyncio
    async def test_invalid_amount_never_submits(self):
        relay = Relay({"a": [TX_HASH]})
        client, _ = make_client(relay, ["a"])

        with pytest.raises(InvalidAmountError):
            await client.submit_transfer(PAY_TO, "-5")
        with pytest.raises(InvalidAmountError):
            await client.submit_transfer(PAY_TO, "1", "DOGE")
        assert relay.calls == []

    @pytest.mark.asyncio
    async def test_backoff_counter_is_per_call(self):
        relay = Relay({"a": [ConnectionError("reset"), TX_HASH, ConnectionError("reset"), TX_HASH]})
        client, sleep = make_client(relay, ["a"])

        await client.submit_transfer(PAY_TO, "0.1")
        await client.submit_transfer(PAY_TO, "0.1")

        assert slept(sleep) == [2.0, 2.0]


class TestConfirmation:
    """Test the bounded confirmation wait."""

    @pytest.mark.asyncio
    async def test_timeout_raises_with_reference(self):
        relay = Relay({"a": [TX_HASH], "b": [TX_HASH]}, confirmations=["hang"])
        client, _ = make_client(relay, ["a", "b"], confirmation_timeout=0.05)

        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await client.submit_transfer(PAY_TO, "0.1")

        assert exc_info.value.reference == TX_HASH
        assert [c[0] for c in relay.calls] == ["send", "confirm"]

    @pytest.mark.asyncio
    async def test_connection_lost_while_waiting(self):
        relay = Relay({"a": [TX_HASH]}, confirmations=[ConnectionError("socket hang up")])
        client, _ = make_client(relay, ["a"])

        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await client.submit_transfer(PAY_TO, "0.1")
        assert exc_info.value.reference == TX_HASH

    @pytest.mark.asyncio
    async def test_reverted_transfer(self):
        relay = Relay({"a": [TX_HASH]}, confirmations=[False])
        client, _ = make_client(relay, ["a"])

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await client.submit_transfer(PAY_TO, "0.1")
        assert exc_info.value.reference == TX_HASH


class TestErrorClassification:
    @pytest.mark.parametrize("error", [
        ConnectionError("reset"),
        ConnectionRefusedError(),
        TimeoutError(),
        asyncio.TimeoutError(),
        httpx.ReadTimeout("read timed out"),
        RuntimeError("502 Bad Gateway"),
        RuntimeError("socket hang up"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [
        ValueError("nonce too low"),
        ValueError("insufficient funds"),
        FundsUnavailableError("broke"),
    ])
    def test_not_transient(self, error):
        assert not is_transient_error(error)

    def test_classify_rejection(self):
        assert isinstance(classify_rejection(ValueError("Insufficient balance")), FundsUnavailableError)
        assert isinstance(classify_rejection(ValueError("execution reverted")), SubmissionRejectedError)
        original = FundsUnavailableError("broke")
        assert classify_rejection(original) is original


class TestWeb3Transport:
    """Test transaction building without a network."""

    def test_to_evm_address(self):
        assert to_evm_address(PAY_TO).lower() == "0x00000000000000000000000000000000006d68d4"

    def test_client_requires_account_or_factory(self):
        with pytest.raises(ValueError):
            LedgerClient()

    @pytest.mark.asyncio
    async def test_native_transfer_in_weibars(self, test_account):
        endpoint = LedgerEndpoint(url="https://relay.test/api")
        transport = Web3Transport(endpoint, test_account, 296)
        eth = transport._w3.eth

        estimate_gas = AsyncMock(return_value=21_000)
        send_raw = AsyncMock(return_value=bytes.fromhex("ab" * 32))
        with patch.object(type(eth), "gas_price", new=_async_property(10)), \
             patch.object(eth, "get_transaction_count", AsyncMock(return_value=7)), \
             patch.object(eth, "estimate_gas", estimate_gas), \
             patch.object(eth, "send_raw_transaction", send_raw):
            reference = await transport.send_transfer(PAY_TO, Decimal("0.1"), TokenInfo(symbol="HBAR"))

        assert reference == TX_HASH
        send_raw.assert_awaited_once()
        tx = estimate_gas.await_args.args[0]
        assert tx["value"] == 10 ** 17
        assert tx["nonce"] == 7
        assert tx["chainId"] == 296
        assert tx["to"].lower() == "0x00000000000000000000000000000000006d68d4"


def _async_property(value):
    async def getter():
        return value

    return property(lambda self: getter())
