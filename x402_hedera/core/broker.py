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
"""Payment requirement creation and lifecycle tracking."""

import logging
import secrets
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from ..types import (
    HBAR,
    InvalidAmountError,
    PaymentRequirement,
    RequirementStatus,
    TokenInfo,
)
from ..types.config import default_tokens
from ..types.models import utcnow
from .utils import format_amount, parse_amount


logger = logging.getLogger(__name__)


def generate_request_id() -> str:
    """Time plus random suffix, so concurrent callers never need a shared counter."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class PaymentRequestBroker:
    """Issues payment requirements and remembers them until settled or expired.

    Requirements are held in memory with a TTL and a size cap that evicts the
    oldest first. Once closed (settled, expired or discarded) a requirement
    leaves only its final status behind, kept for another ``ttl_seconds``
    under the same cap so callers can still ask what became of it. All
    bookkeeping happens under one short-held lock; nothing here performs I/O.

    Example:
        broker = PaymentRequestBroker()
        requirement = broker.create_requirement(
            amount="0.1",
            token="HBAR",
            recipient="0.0.7170260",
            description="Payment for Research agent"
        )
        broker.lookup(requirement.request_id)
    """

    def __init__(
        self,
        network: str = "hedera-testnet",
        ttl_seconds: Optional[float] = 3600.0,
        max_entries: int = 10_000,
        tokens: Optional[Dict[str, TokenInfo]] = None,
    ):
        """Initialize the broker.

        Args:
            network: Network name stamped on every requirement
            ttl_seconds: How long an unsettled requirement stays valid (None: forever)
            max_entries: Oldest requirements are evicted beyond this many
            tokens: Billable tokens by symbol; HBAR is always known
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.network = network
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._tokens = {**default_tokens(), **(tokens or {})}
        self._requirements: "OrderedDict[str, PaymentRequirement]" = OrderedDict()
        self._closed: "OrderedDict[str, Tuple[RequirementStatus, datetime]]" = OrderedDict()
        self._lock = threading.Lock()

    def token_decimals(self, token: str) -> int:
        info = self._tokens.get(token)
        if info is None:
            raise InvalidAmountError(token, f"unknown token {token!r}")
        return info.decimals

    def create_requirement(
        self,
        amount,
        token: str = HBAR,
        recipient: str = "",
        description: str = "",
        resource: str = "default",
    ) -> PaymentRequirement:
        """Create and record a new payment requirement.

        Args:
            amount: Decimal amount in whole token units (e.g. "0.1")
            token: Token symbol (default: "HBAR")
            recipient: Ledger address that must receive the transfer
            description: Human-readable description
            resource: Operation the payment unlocks

        Returns:
            The recorded PaymentRequirement

        Raises:
            InvalidAmountError: amount is non-numeric, non-positive or too precise
        """
        value = parse_amount(amount, self.token_decimals(token))
        if not recipient:
            raise ValueError("recipient is required for a payment requirement")

        created_at = utcnow()
        expires_at = created_at + timedelta(seconds=self.ttl_seconds) if self.ttl_seconds else None

        with self._lock:
            self._purge_expired_locked()
            request_id = generate_request_id()
            while request_id in self._requirements:
                request_id = generate_request_id()

            requirement = PaymentRequirement(
                request_id=request_id,
                amount=format_amount(value),
                token=token,
                recipient=recipient,
                description=description,
                resource=resource,
                network=self.network,
                created_at=created_at,
                expires_at=expires_at,
            )
            self._requirements[request_id] = requirement
            while len(self._requirements) > self.max_entries:
                evicted_id, _ = self._requirements.popitem(last=False)
                self._close_locked(evicted_id, RequirementStatus.DISCARDED)
                logger.warning(f"Requirement store full; evicted oldest requirement {evicted_id}")

        logger.info(
            f"Created payment requirement {request_id}: {requirement.amount} {token} to {recipient}"
        )
        return requirement

    def lookup(self, request_id: Optional[str]) -> Optional[PaymentRequirement]:
        """Return the live requirement for ``request_id``, or None."""
        if not request_id:
            return None
        with self._lock:
            requirement = self._requirements.get(request_id)
            if requirement is None:
                return None
            if requirement.is_expired():
                del self._requirements[request_id]
                self._close_locked(request_id, RequirementStatus.EXPIRED)
                logger.info(f"Requirement {request_id} expired")
                return None
            return requirement

    def settle(self, request_id: Optional[str]) -> Optional[PaymentRequirement]:
        """Forget a requirement once a proof for it has been accepted."""
        if not request_id:
            return None
        with self._lock:
            requirement = self._requirements.pop(request_id, None)
            if requirement is not None:
                self._close_locked(request_id, RequirementStatus.SETTLED)
        if requirement is not None:
            logger.info(f"Requirement {request_id} settled")
        return requirement

    def discard(self, request_id: str) -> bool:
        with self._lock:
            if self._requirements.pop(request_id, None) is None:
                return False
            self._close_locked(request_id, RequirementStatus.DISCARDED)
        logger.info(f"Requirement {request_id} discarded")
        return True

    def status(self, request_id: Optional[str]) -> Optional[RequirementStatus]:
        """Where ``request_id`` is in its lifecycle; None if unknown or long forgotten."""
        if not request_id:
            return None
        with self._lock:
            self._purge_expired_locked()
            if request_id in self._requirements:
                return RequirementStatus.PENDING
            self._prune_closed_locked()
            closed = self._closed.get(request_id)
        return closed[0] if closed else None

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked()
            return len(self._requirements)

    def _purge_expired_locked(self) -> None:
        # Entries are kept in creation order with one TTL, so expired ones lead.
        now = utcnow()
        while self._requirements:
            oldest = next(iter(self._requirements.values()))
            if not oldest.is_expired(now):
                break
            self._requirements.popitem(last=False)
            self._close_locked(oldest.request_id, RequirementStatus.EXPIRED)

    def _close_locked(self, request_id: str, status: RequirementStatus) -> None:
        self._closed[request_id] = (status, utcnow())
        self._closed.move_to_end(request_id)
        self._prune_closed_locked()

    def _prune_closed_locked(self) -> None:
        if self.ttl_seconds:
            cutoff = utcnow() - timedelta(seconds=self.ttl_seconds)
            while self._closed:
                _, closed_at = next(iter(self._closed.values()))
                if closed_at > cutoff:
                    break
                self._closed.popitem(last=False)
        while len(self._closed) > self.max_entries:
            self._closed.popitem(last=False)
