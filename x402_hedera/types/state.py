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
"""Gateway and payment state definitions, and metadata keys."""

from enum import Enum


class GatewayState(str, Enum):
    """States a single request moves through inside the gateway"""
    NEW = "new"
    AWAITING_PAYMENT = "awaiting-payment"    # Requirement issued, no proof yet
    VERIFYING = "verifying"                  # Proof being checked against the ledger
    COMPLETED = "completed"                  # Forwarded to the downstream handler
    REJECTED = "rejected"                    # Proof failed; terms returned for retry


class PaymentStatus(str, Enum):
    """Payment states published in A2A message metadata"""
    PAYMENT_REQUIRED = "payment-required"    # Payment requested
    PAYMENT_SUBMITTED = "payment-submitted"  # Proof attached by the caller
    PAYMENT_REJECTED = "payment-rejected"    # Proof failed verification
    PAYMENT_VERIFIED = "payment-verified"    # Proof accepted or context already paid


class RequirementStatus(str, Enum):
    """Lifecycle of a payment requirement held by the broker"""
    PENDING = "pending"        # Issued, awaiting a proof
    SETTLED = "settled"        # A proof for it was accepted
    EXPIRED = "expired"        # Outlived its TTL unsettled
    DISCARDED = "discarded"    # Withdrawn or evicted unsettled


class X402Metadata:
    """Metadata key constants"""
    STATUS_KEY = "x402.payment.status"
    REQUIRED_KEY = "x402.payment.required"      # Contains the gating response body
    ERROR_KEY = "x402.payment.error"            # Error code (when rejected)

    # Keys read from / written to the caller's message metadata
    PAYMENT_KEY = "payment"
    VERIFIED_KEY = "paymentVerified"
    REQUEST_ID_KEY = "paymentRequestId"
    TX_HASH_KEY = "paymentTxHash"
