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
"""Transfer submission through Hedera JSON-RPC relays with failover."""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from ..types import (
    HBAR,
    AllEndpointsFailedError,
    ConfirmationTimeoutError,
    FundsUnavailableError,
    InvalidAmountError,
    LedgerConfig,
    LedgerEndpoint,
    SubmissionAttempt,
    SubmissionRejectedError,
    TokenInfo,
    TransferReceipt,
    X402Error,
)
from ..types.models import utcnow
from .retry import BackoffSchedule, RetryExhausted, Sleep, retry_async
from .utils import account_id_to_long_zero, is_account_id, parse_amount, to_smallest_unit


logger = logging.getLogger(__name__)


ERC20_TRANSFER_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    }
]

_TRANSIENT_MARKERS = (
    "econnreset",
    "econnrefused",
    "socket hang up",
    "timeout",
    "timed out",
    "502",
    "503",
    "504",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
)


class LedgerTransport(ABC):
    """One connection to one relay, used for a single submission attempt."""

    def __init__(self, endpoint: LedgerEndpoint):
        self.endpoint = endpoint

    @abstractmethod
    async def send_transfer(self, recipient: str, amount: Decimal, token: TokenInfo) -> str:
        """Sign and broadcast a transfer, returning its transaction hash."""

    @abstractmethod
    async def wait_for_confirmation(self, reference: str, timeout_seconds: float) -> bool:
        """Wait for the receipt; True if it succeeded, False if it reverted."""


TransportFactory = Callable[[LedgerEndpoint], LedgerTransport]


def to_evm_address(address: str) -> str:
    if is_account_id(address):
        address = account_id_to_long_zero(address)
    return Web3.to_checksum_address(address)


class Web3Transport(LedgerTransport):
    """Submits through a JSON-RPC relay with web3's async provider.

    Native HBAR is sent as the transaction ``value`` in weibars (18 decimals,
    the relay's convention). HTS tokens go through their ERC-20 facade.
    """

    def __init__(self, endpoint: LedgerEndpoint, account: LocalAccount, chain_id: int):
        super().__init__(endpoint)
        self._account = account
        self._chain_id = chain_id
        self._w3 = AsyncWeb3(AsyncHTTPProvider(endpoint.url))

    async def send_transfer(self, recipient: str, amount: Decimal, token: TokenInfo) -> str:
        w3 = self._w3
        to = to_evm_address(recipient)
        base_tx = {
            "from": self._account.address,
            "nonce": await w3.eth.get_transaction_count(self._account.address, "pending"),
            "gasPrice": await w3.eth.gas_price,
            "chainId": self._chain_id,
        }

        if token.symbol == HBAR:
            tx = {**base_tx, "to": to, "value": Web3.to_wei(amount, "ether")}
            tx["gas"] = await w3.eth.estimate_gas(tx)
        else:
            contract = w3.eth.contract(
                address=Web3.to_checksum_address(token.evm_address), abi=ERC20_TRANSFER_ABI
            )
            tx = await contract.functions.transfer(
                to, to_smallest_unit(amount, token.decimals)
            ).build_transaction(base_tx)

        signed = self._account.sign_transaction(tx)
        tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        return w3.to_hex(tx_hash)

    async def wait_for_confirmation(self, reference: str, timeout_seconds: float) -> bool:
        receipt = await self._w3.eth.wait_for_transaction_receipt(
            reference, timeout=timeout_seconds, poll_latency=1.0
        )
        return receipt["status"] == 1


def is_transient_error(error: BaseException) -> bool:
    """Connection resets, refusals, timeouts and gateway errors are worth retrying."""
    if isinstance(error, X402Error):
        return False
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError, httpx.TransportError)):
        return True
    name = type(error).__name__
    if "Connection" in name or "Timeout" in name or "Disconnected" in name:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def classify_rejection(error: BaseException) -> X402Error:
    """Map a non-transient submission error to the protocol error it means."""
    if isinstance(error, X402Error):
        return error
    message = str(error)
    if "insufficient" in message.lower():
        return FundsUnavailableError(f"Insufficient funds for transfer: {message}")
    return SubmissionRejectedError(f"Ledger rejected the transfer: {message}")


class LedgerClient:
    """Caller-side transfer submission with retry and endpoint failover.

    Endpoints are tried in order, each up to ``attempts_per_endpoint`` times.
    The backoff schedule belongs to the call and keeps growing across
    endpoints. Every attempt builds its own transport, so nothing carries
    over between attempts or calls.

    Example:
        client = LedgerClient.from_private_key(os.environ["HEDERA_PRIVATE_KEY"])
        receipt = await client.submit_transfer("0.0.7170260", "0.1", "HBAR")
    """

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        config: Optional[LedgerConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config or LedgerConfig()
        if not self.config.endpoints:
            raise ValueError("LedgerConfig.endpoints must list at least one endpoint")
        if transport_factory is None:
            if account is None:
                raise ValueError("account is required when no transport_factory is given")
            chain_id = self.config.chain_id

            def transport_factory(endpoint: LedgerEndpoint) -> LedgerTransport:
                return Web3Transport(endpoint, account, chain_id)
        self.account = account
        self._transport_factory = transport_factory
        self._sleep = sleep

    @classmethod
    def from_private_key(cls, private_key: str, config: Optional[LedgerConfig] = None) -> "LedgerClient":
        return cls(account=Account.from_key(private_key), config=config)

    async def submit_transfer(self, recipient: str, amount, token: str = HBAR) -> TransferReceipt:
        """Transfer ``amount`` of ``token`` to ``recipient`` and wait for confirmation.

        Raises:
            InvalidAmountError: bad amount or unknown token.
            FundsUnavailableError: the account cannot cover the transfer.
            SubmissionRejectedError: the ledger refused or reverted the transfer.
            AllEndpointsFailedError: every endpoint failed transiently.
            ConfirmationTimeoutError: submitted, but confirmation was not seen
                in time. Re-verify the reference; never resubmit.
        """
        info = self.config.tokens.get(token)
        if info is None:
            raise InvalidAmountError(amount, f"unknown token {token!r}")
        if info.symbol != HBAR and not info.evm_address:
            raise SubmissionRejectedError(f"Token {token} has no EVM address configured")
        value = parse_amount(amount, info.decimals)

        schedule = BackoffSchedule(self.config.retry)
        attempts: List[SubmissionAttempt] = []
        last_error: Optional[BaseException] = None

        for endpoint in self.config.endpoints:
            logger.info(f"Submitting {value} {token} to {recipient} via {endpoint.label}")
            try:
                transport, reference = await self._submit_with_retry(
                    endpoint, recipient, value, info, schedule, attempts
                )
            except RetryExhausted as e:
                last_error = e.last_error
                logger.warning(f"Endpoint {endpoint.label} exhausted its retries; failing over")
                continue
            except Exception as e:
                error = classify_rejection(e)
                logger.warning(f"Submission via {endpoint.label} rejected: {error}")
                raise error from e

            logger.info(f"Transfer {reference} submitted via {endpoint.label}")
            await self._confirm(transport, reference)
            logger.info(f"Transfer {reference} confirmed")
            return TransferReceipt(
                reference=reference,
                confirmed_at=utcnow(),
                endpoint=endpoint.label,
                attempts=attempts,
            )

        logger.error(f"All ledger endpoints failed; last error: {last_error}")
        raise AllEndpointsFailedError(last_error, attempts)

    async def _submit_with_retry(
        self,
        endpoint: LedgerEndpoint,
        recipient: str,
        value: Decimal,
        token: TokenInfo,
        schedule: BackoffSchedule,
        attempts: List[SubmissionAttempt],
    ) -> Tuple[LedgerTransport, str]:
        pending_delay = [0.0]

        def note_delay(delay: float) -> None:
            pending_delay[0] = delay

        async def attempt_once(attempt: int) -> Tuple[LedgerTransport, str]:
            record = SubmissionAttempt(
                endpoint=endpoint.label, attempt=attempt, delay_seconds=pending_delay[0]
            )
            attempts.append(record)
            pending_delay[0] = 0.0
            transport = self._transport_factory(endpoint)
            try:
                reference = await asyncio.wait_for(
                    transport.send_transfer(recipient, value, token), endpoint.timeout_seconds
                )
            except Exception as e:
                record.error = str(e) or type(e).__name__
                raise
            return transport, reference

        return await retry_async(
            attempt_once,
            max_attempts=self.config.retry.attempts_per_endpoint,
            schedule=schedule,
            is_retryable=is_transient_error,
            sleep=self._sleep,
            on_delay=note_delay,
        )

    async def _confirm(self, transport: LedgerTransport, reference: str) -> None:
        timeout = self.config.confirmation_timeout_seconds
        try:
            succeeded = await asyncio.wait_for(
                transport.wait_for_confirmation(reference, timeout), timeout
            )
        except (asyncio.TimeoutError, TimeExhausted) as e:
            logger.warning(f"Confirmation of {reference} timed out; re-verify instead of resubmitting")
            raise ConfirmationTimeoutError(reference, timeout) from e
        except Exception as e:
            if not is_transient_error(e):
                raise
            logger.warning(f"Lost connection while confirming {reference}: {e}")
            raise ConfirmationTimeoutError(reference, timeout) from e

        if not succeeded:
            raise SubmissionRejectedError(f"Transfer {reference} reverted", reference=reference)
