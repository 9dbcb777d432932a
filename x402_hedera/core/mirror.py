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
"""Read-only ledger queries against a Hedera mirror node."""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar
from urllib.parse import quote

import httpx

from ..types import LedgerTransaction, LedgerTransfer, LedgerUnavailableError
from .utils import is_evm_transaction_hash, to_mirror_transaction_id


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _segment(value: str) -> str:
    return quote(value, safe="")


def _parsed(what: str, parse: Callable[[], T]) -> T:
    """Run a parser over a mirror response, reporting malformed documents as an outage."""
    try:
        return parse()
    except (ValueError, TypeError, AttributeError, KeyError, IndexError) as e:
        raise LedgerUnavailableError(f"Mirror node returned a malformed {what}: {e}") from e


class MirrorNodeClient:
    """Looks up transactions and accounts through the mirror node REST API.

    A new HTTP client is opened per call, so instances can be shared freely
    between concurrent requests.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self._transport,
        )

    async def _get(
        self, client: httpx.AsyncClient, path: str, params: Optional[Dict[str, str]] = None
    ) -> Optional[Dict[str, Any]]:
        """GET a JSON document; None for 400/404, which the mirror uses for unknown ids."""
        try:
            response = await client.get(path, params=params)
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Mirror node request {path} failed: {e}") from e

        if response.status_code in (400, 404):
            logger.info(f"Mirror node has no record at {path} (status {response.status_code})")
            return None
        if response.status_code >= 300:
            raise LedgerUnavailableError(
                f"Mirror node returned status {response.status_code} for {path}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise LedgerUnavailableError(f"Mirror node returned invalid JSON for {path}") from e

    async def get_transaction(self, reference: str) -> Optional[LedgerTransaction]:
        """Find a transaction by transaction id or hash.

        Tries, in order: the direct transaction lookup, the contract-results
        lookup for 32-byte EVM hashes (JSON-RPC relay transfers), and the
        ``transactionhash`` query.

        Returns:
            The transaction, or None if the mirror node has not indexed it.

        Raises:
            LedgerUnavailableError: the mirror node could not be queried or
                answered with a malformed document.
        """
        async with self._client() as client:
            transaction_id = to_mirror_transaction_id(reference)
            data = await self._get(client, f"/transactions/{_segment(transaction_id)}")
            transaction = _parsed("transaction", lambda: self._parse_transactions(reference, data))
            if transaction:
                return transaction

            if is_evm_transaction_hash(reference):
                data = await self._get(client, f"/contracts/results/{_segment(reference)}")
                transaction = _parsed(
                    "contract result", lambda: self._parse_contract_result(reference, data)
                )
                if transaction:
                    return transaction

            data = await self._get(
                client, "/transactions", params={"transactionhash": reference.removeprefix("0x")}
            )
            return _parsed("transaction", lambda: self._parse_transactions(reference, data))

    async def resolve_account(self, address: str) -> Optional[str]:
        """Map an EVM address or alias to its ``0.0.x`` account id."""
        async with self._client() as client:
            data = await self._get(client, f"/accounts/{_segment(address)}")
        if not data:
            return None
        account = _parsed("account", lambda: data.get("account"))
        return account if isinstance(account, str) else None

    @staticmethod
    def _parse_transactions(reference: str, data: Optional[Dict[str, Any]]) -> Optional[LedgerTransaction]:
        if not data:
            return None
        transactions = data.get("transactions")
        if transactions is None and "result" in data:
            transactions = [data]
        if not transactions:
            return None

        tx = transactions[0]
        transaction_id = tx.get("transaction_id")
        payer = transaction_id.split("-")[0] if transaction_id else None
        return LedgerTransaction(
            reference=reference,
            transaction_id=transaction_id,
            result=tx.get("result", "UNKNOWN"),
            entity_id=tx.get("entity_id"),
            consensus_timestamp=tx.get("consensus_timestamp"),
            sender=payer,
            transfers=[
                LedgerTransfer(account=str(t.get("account", "")), amount=int(t.get("amount", 0)))
                for t in tx.get("transfers") or []
            ],
            token_transfers=[
                LedgerTransfer(
                    account=str(t.get("account", "")),
                    amount=int(t.get("amount", 0)),
                    token_id=t.get("token_id"),
                )
                for t in tx.get("token_transfers") or []
            ],
        )

    @staticmethod
    def _parse_contract_result(reference: str, data: Optional[Dict[str, Any]]) -> Optional[LedgerTransaction]:
        if not data or "result" not in data:
            return None
        amount = int(data.get("amount") or 0)
        transfers = [LedgerTransfer(account=data["to"], amount=amount)] if data.get("to") and amount else []
        return LedgerTransaction(
            reference=reference,
            transaction_id=data.get("hash"),
            result=data.get("result", "UNKNOWN"),
            consensus_timestamp=data.get("timestamp"),
            sender=data.get("from"),
            transfers=transfers,
        )
