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
"""Per-conversation memory of settled payments."""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from ..types import ConversationPaymentState, DuplicateSettlementError
from ..types.models import utcnow


logger = logging.getLogger(__name__)


class _Settlement(NamedTuple):
    context_id: Optional[str]
    accepted_at: datetime


class ConversationPaymentCache:
    """Remembers which conversations have paid so follow-ups are not re-billed.

    Once a context is marked verified it stays verified until it is evicted,
    even if its settlement reference would fail a later verification.
    Entries are ordered by last activity; idle ones expire after ``ttl_seconds``
    and the least recently active are evicted beyond ``max_entries``.

    Accepted settlement references are kept in a separate store with their
    own retention (``settlement_ttl_seconds``, ``max_settlements``), so a
    reference is accepted once whether or not the request named a context,
    and evicting a conversation does not free its reference.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = 86_400.0,
        max_entries: int = 100_000,
        settlement_ttl_seconds: Optional[float] = None,
        max_settlements: int = 1_000_000,
    ):
        if max_entries < 1 or max_settlements < 1:
            raise ValueError("max_entries and max_settlements must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.settlement_ttl_seconds = settlement_ttl_seconds
        self.max_settlements = max_settlements
        self._states: "OrderedDict[str, ConversationPaymentState]" = OrderedDict()
        self._settlements: "OrderedDict[str, _Settlement]" = OrderedDict()
        self._lock = threading.Lock()

    def touch(self, context_id: str) -> ConversationPaymentState:
        """Record activity on a conversation, creating its state on first sight."""
        with self._lock:
            state = self._live_state_locked(context_id)
            if state is None:
                state = ConversationPaymentState(context_id=context_id)
                self._states[context_id] = state
                self._evict_overflow_locked()
            return state.model_copy()

    def is_verified(self, context_id: Optional[str]) -> bool:
        if not context_id:
            return False
        with self._lock:
            state = self._live_state_locked(context_id)
            return bool(state and state.verified)

    def get(self, context_id: str) -> Optional[ConversationPaymentState]:
        with self._lock:
            state = self._live_state_locked(context_id)
            return state.model_copy() if state else None

    def mark_verified(self, context_id: str, settlement_reference: str) -> ConversationPaymentState:
        """Mark ``context_id`` as paid.

        Idempotent for the same context; a repeat call only refreshes the
        stored reference.

        Raises:
            DuplicateSettlementError: the reference was already accepted for
                a different context, or for a request without one.
        """
        with self._lock:
            self._claim_locked(settlement_reference, context_id)

            state = self._live_state_locked(context_id)
            if state is None:
                state = ConversationPaymentState(context_id=context_id)
                self._states[context_id] = state

            now = utcnow()
            state.verified = True
            state.settlement_reference = settlement_reference
            state.verified_at = state.verified_at or now
            state.last_seen_at = now
            self._evict_overflow_locked()
            snapshot = state.model_copy()

        logger.info(f"Context {context_id} marked as paid (reference {settlement_reference})")
        return snapshot

    def claim_settlement(self, settlement_reference: str, context_id: Optional[str] = None) -> None:
        """Record ``settlement_reference`` as accepted without marking a conversation.

        Raises:
            DuplicateSettlementError: the reference was already accepted.
        """
        with self._lock:
            self._claim_locked(settlement_reference, context_id)
        logger.info(f"Settlement {settlement_reference} accepted (context {context_id})")

    def can_accept(self, settlement_reference: str, context_id: Optional[str] = None) -> bool:
        """Whether ``settlement_reference`` is unused, or already belongs to ``context_id``."""
        with self._lock:
            settlement = self._settlement_locked(settlement_reference)
        if settlement is None:
            return True
        return context_id is not None and settlement.context_id == context_id

    def reference_owner(self, settlement_reference: str) -> Optional[str]:
        """The context a reference was accepted for, if any."""
        with self._lock:
            settlement = self._settlement_locked(settlement_reference)
        return settlement.context_id if settlement else None

    def is_settled(self, settlement_reference: str) -> bool:
        with self._lock:
            return self._settlement_locked(settlement_reference) is not None

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked()
            return len(self._states)

    def _claim_locked(self, settlement_reference: str, context_id: Optional[str]) -> None:
        settlement = self._settlement_locked(settlement_reference)
        if settlement is not None and (context_id is None or settlement.context_id != context_id):
            raise DuplicateSettlementError(settlement_reference, settlement.context_id)
        self._settlements[settlement_reference] = _Settlement(
            context_id, settlement.accepted_at if settlement else utcnow()
        )
        while len(self._settlements) > self.max_settlements:
            evicted, _ = self._settlements.popitem(last=False)
            logger.warning(f"Settlement store full; forgot oldest reference {evicted}")

    def _settlement_locked(self, settlement_reference: str) -> Optional[_Settlement]:
        if self.settlement_ttl_seconds:
            cutoff = utcnow() - timedelta(seconds=self.settlement_ttl_seconds)
            # Insertion order is acceptance order, so the oldest lead.
            while self._settlements:
                reference, settlement = next(iter(self._settlements.items()))
                if settlement.accepted_at > cutoff:
                    break
                del self._settlements[reference]
        return self._settlements.get(settlement_reference)

    def _live_state_locked(self, context_id: str) -> Optional[ConversationPaymentState]:
        self._purge_expired_locked()
        state = self._states.get(context_id)
        if state is not None:
            state.last_seen_at = utcnow()
            self._states.move_to_end(context_id)
        return state

    def _purge_expired_locked(self) -> None:
        if not self.ttl_seconds:
            return
        cutoff = utcnow() - timedelta(seconds=self.ttl_seconds)
        # Ordered by last activity, so idle entries lead.
        while self._states:
            context_id, state = next(iter(self._states.items()))
            if state.last_seen_at > cutoff:
                break
            del self._states[context_id]

    def _evict_overflow_locked(self) -> None:
        while len(self._states) > self.max_entries:
            context_id, _ = self._states.popitem(last=False)
            logger.warning(f"Conversation cache full; evicted {context_id}")
