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
"""Amount, address and proof parsing utilities."""

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from ..extension import PAYMENT_HEADER_NAMES
from ..types import (
    InvalidAmountError,
    MessageError,
    ProofSource,
    SettlementProof,
)

_REFERENCE_KEYS = ("reference", "txHash", "transactionId", "paymentProof")

# Long-zero EVM addresses encode shard (4 bytes), realm (8) and account num (8).
_LONG_ZERO_PREFIX = "0x" + "0" * 24


def parse_amount(amount: Any, decimals: int) -> Decimal:
    """Parse a positive decimal amount representable with ``decimals`` places.

    Raises:
        InvalidAmountError: if the amount is not a finite positive number or
            carries more precision than the token supports.
    """
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmountError(amount, "not a number")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise InvalidAmountError(amount, "not a number")
    if not value.is_finite():
        raise InvalidAmountError(amount, "not a finite number")
    if value <= 0:
        raise InvalidAmountError(amount, "must be positive")
    if -value.normalize().as_tuple().exponent > decimals:
        raise InvalidAmountError(amount, f"more than {decimals} decimal places")
    return value


def format_amount(value: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros ("0.10" -> "0.1")."""
    return format(value.normalize(), "f")


def to_smallest_unit(value: Decimal, decimals: int) -> int:
    """Convert a token amount to its smallest unit (HBAR -> tinybars)."""
    return int(value.scaleb(decimals))


def get_header(headers: Optional[Mapping[str, str]], *names: str) -> Optional[str]:
    """Case-insensitive header lookup returning the first non-empty match."""
    if not headers:
        return None
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _split_reference(data: Dict[str, Any]) -> tuple[Optional[str], Dict[str, Any]]:
    reference = None
    rest = dict(data)
    for key in _REFERENCE_KEYS:
        value = rest.pop(key, None)
        if reference is None and value:
            reference = value
    return reference, rest


def _header_fields(header_value: str) -> Dict[str, Any]:
    if header_value.startswith("{"):
        try:
            data = json.loads(header_value)
        except json.JSONDecodeError as e:
            raise MessageError(f"Payment header is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise MessageError("Payment header JSON must be an object")
        return data
    return {"reference": header_value}


def _body_fields(payment: Any) -> Dict[str, Any]:
    if isinstance(payment, str):
        return {"reference": payment}
    if isinstance(payment, Mapping):
        return dict(payment)
    raise MessageError(f"Payment field must be an object or a string, got {type(payment).__name__}")


def extract_settlement_proof(
    headers: Optional[Mapping[str, str]],
    payment: Any = None,
) -> Optional[SettlementProof]:
    """Build a proof from the payment header and/or the ``payment`` body field.

    The header reference wins when both are present; body fields such as
    ``requestId`` still fill in what the header lacks.

    Returns:
        None when neither carries a proof.

    Raises:
        MessageError: if a proof is present but malformed.
    """
    header_value = get_header(headers, *PAYMENT_HEADER_NAMES)
    has_body = payment is not None and payment != {} and payment != ""
    if header_value is None and not has_body:
        return None

    body_reference, fields = _split_reference(_body_fields(payment)) if has_body else (None, {})
    source = ProofSource.BODY
    reference = body_reference

    if header_value is not None:
        header_reference, header_extra = _split_reference(_header_fields(header_value))
        for key, value in header_extra.items():
            fields.setdefault(key, value)
        if header_reference:
            reference = header_reference
            source = ProofSource.HEADER

    if not reference:
        raise MessageError("Payment proof carries no transaction reference")
    if not isinstance(reference, str):
        raise MessageError("Transaction reference must be a string")

    try:
        return SettlementProof.model_validate({**fields, "reference": reference, "source": source})
    except PydanticValidationError as e:
        raise MessageError(f"Malformed payment proof: {e.errors()[0].get('msg', e)}")


def long_zero_to_account_id(address: Optional[str]) -> Optional[str]:
    """``0x0000...00000000000003e8`` -> ``0.0.1000``; None for other addresses."""
    if not address:
        return None
    lowered = address.lower()
    if len(lowered) != 42 or not lowered.startswith(_LONG_ZERO_PREFIX):
        return None
    try:
        shard = int(lowered[2:10], 16)
        realm = int(lowered[10:26], 16)
        num = int(lowered[26:], 16)
    except ValueError:
        return None
    return f"{shard}.{realm}.{num}"


def account_id_to_long_zero(account_id: str) -> str:
    """``0.0.1000`` -> ``0x00000000000000000000000000000000000003e8``."""
    shard, realm, num = (int(part) for part in account_id.split("."))
    return "0x" + f"{shard:08x}{realm:016x}{num:016x}"


def is_account_id(address: Optional[str]) -> bool:
    if not address:
        return False
    parts = address.split(".")
    return len(parts) == 3 and all(part.isdigit() for part in parts)


def is_evm_transaction_hash(reference: str) -> bool:
    body = reference[2:] if reference.lower().startswith("0x") else ""
    return len(body) == 64 and all(c in "0123456789abcdefABCDEF" for c in body)


def same_address(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def to_mirror_transaction_id(reference: str) -> str:
    """``0.0.5005@1700000000.1`` -> ``0.0.5005-1700000000-000000001``.

    Other references are returned unchanged.
    """
    account, sep, valid_start = reference.partition("@")
    if not sep:
        return reference
    seconds, _, nanos = valid_start.partition(".")
    return f"{account}-{seconds}-{nanos.zfill(9)}"
