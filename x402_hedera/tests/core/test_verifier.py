"""Unit tests for x402_hedera.core.verifier module."""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from x402_hedera.core.mirror import MirrorNodeClient
from x402_hedera.core.verifier import TransactionVerifier
from x402_hedera.types import (
    LedgerTransaction,
    LedgerTransfer,
    LedgerUnavailableError,
    PaymentRequirement,
    SettlementProof,
    TokenInfo,
    VerificationResult,
    VerifierConfig,
    X402ErrorCode
)
from x402_hedera.types.models import utcnow

from conftest import MIRROR_URL, PAY_TO, TX_ID, MirrorStub, hbar_transaction


USDC = TokenInfo(symbol="USDC", decimals=6, token_id="0.0.456858", evm_address="0x" + "0" * 34 + "6f899a")


def requirement(amount="0.1", token="HBAR", recipient=PAY_TO):
    return PaymentRequirement(request_id="req_1_abc", amount=amount, token=token, recipient=recipient)


def verifier_for(routes, **config):
    stub = MirrorStub(routes)
    mirror = MirrorNodeClient(MIRROR_URL, transport=stub.transport)
    return TransactionVerifier(mirror, VerifierConfig(mirror_node_url=MIRROR_URL, **config)), stub


def proof(reference=TX_ID, **fields):
    return SettlementProof(reference=reference, **fields)


class TestVerify:
    """Test settlement verification outcomes."""

    @pytest.mark.asyncio
    async def test_valid_hbar_payment(self, verifier):
        result = await verifier.verify(proof(), requirement())
        assert result.verified
        assert result.reference == TX_ID

    @pytest.mark.asyncio
    async def test_overpayment_accepted(self):
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(tinybars=50_000_000))})
        assert (await verifier.verify(proof(), requirement())).verified

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, verifier):
        first = await verifier.verify(proof(), requirement())
        second = await verifier.verify(proof(), requirement())
        assert first == second

    @pytest.mark.asyncio
    async def test_not_indexed(self):
        verifier, _ = verifier_for({})
        result = await verifier.verify(proof(), requirement())
        assert not result.verified
        assert result.code == X402ErrorCode.TRANSACTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_failed_transaction(self):
        verifier, _ = verifier_for({
            f"/transactions/{TX_ID}": (200, hbar_transaction(result="INSUFFICIENT_PAYER_BALANCE")),
        })
        result = await verifier.verify(proof(), requirement())
        assert result.code == X402ErrorCode.TRANSACTION_FAILED

    @pytest.mark.asyncio
    async def test_underpayment(self):
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(tinybars=9_000_000))})
        result = await verifier.verify(proof(), requirement())
        assert result.code == X402ErrorCode.AMOUNT_MISMATCH

    @pytest.mark.asyncio
    async def test_wrong_recipient(self):
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(recipient="0.0.999"))})
        result = await verifier.verify(proof(), requirement())
        assert result.code == X402ErrorCode.RECIPIENT_MISMATCH

    @pytest.mark.asyncio
    async def test_mirror_unavailable(self):
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (500, {})})
        result = await verifier.verify(proof(), requirement())
        assert result.code == X402ErrorCode.LEDGER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_malformed_mirror_document_is_unavailable(self):
        verifier, _ = verifier_for({
            f"/transactions/{TX_ID}": (200, {"transactions": [{"result": "SUCCESS", "transfers": [{"amount": "x"}]}]}),
        })
        result = await verifier.verify(proof(), requirement())
        assert not result.verified
        assert result.code == X402ErrorCode.LEDGER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unsupported_token(self, verifier):
        result = await verifier.verify(proof(), requirement(token="DOGE"))
        assert result.code == X402ErrorCode.TOKEN_MISMATCH


class TestStatedTerms:
    """Terms stated in the proof never relax the requirement."""

    @pytest.mark.asyncio
    async def test_stated_lower_amount_is_mismatch(self, verifier, mirror_stub):
        result = await verifier.verify(proof(amount="0.01"), requirement())
        assert result.code == X402ErrorCode.AMOUNT_MISMATCH
        assert mirror_stub.requests == []

    @pytest.mark.asyncio
    async def test_stated_other_token_is_mismatch(self, verifier):
        result = await verifier.verify(proof(token="USDC"), requirement())
        assert result.code == X402ErrorCode.TOKEN_MISMATCH

    @pytest.mark.asyncio
    async def test_stated_other_recipient_is_mismatch(self, verifier):
        result = await verifier.verify(proof(recipient="0.0.999"), requirement())
        assert result.code == X402ErrorCode.RECIPIENT_MISMATCH

    @pytest.mark.asyncio
    async def test_stated_garbage_amount_is_invalid_proof(self, verifier):
        result = await verifier.verify(proof(amount="lots"), requirement())
        assert result.code == X402ErrorCode.INVALID_PROOF

    @pytest.mark.asyncio
    async def test_stated_matching_terms_pass(self, verifier):
        result = await verifier.verify(
            proof(amount="0.1", token="hbar", recipient="0x00000000000000000000000000000000006d68d4"),
            requirement(),
        )
        assert result.verified


class TestRecipientMatching:
    """Recipient forms that must be recognized."""

    @pytest.mark.asyncio
    async def test_long_zero_requirement_matches_account_id_credit(self, verifier):
        long_zero = "0x00000000000000000000000000000000006d68d4"
        assert (await verifier.verify(proof(), requirement(recipient=long_zero))).verified

    @pytest.mark.asyncio
    async def test_address_book_mapping(self):
        alias = "0x71C7656EC7ab88b098defB751B7401B5f6d8976F"
        verifier, stub = verifier_for(
            {f"/transactions/{TX_ID}": (200, hbar_transaction())},
            address_book={alias.lower(): PAY_TO},
        )
        assert (await verifier.verify(proof(), requirement(recipient=alias))).verified
        assert all(not path.startswith("/accounts") for path in stub.paths)

    @pytest.mark.asyncio
    async def test_mirror_account_resolution(self):
        alias = "0x71c7656ec7ab88b098defb751b7401b5f6d8976f"
        verifier, stub = verifier_for({
            f"/transactions/{TX_ID}": (200, hbar_transaction()),
            f"/accounts/{alias}": (200, {"account": PAY_TO}),
        })
        assert (await verifier.verify(proof(), requirement(recipient=alias))).verified
        assert f"/accounts/{alias}" in stub.paths

    @pytest.mark.asyncio
    async def test_contract_result_to_long_zero(self):
        evm_hash = "0x" + "ef" * 32
        verifier, _ = verifier_for({
            f"/contracts/results/{evm_hash}": (200, {
                "hash": evm_hash,
                "result": "SUCCESS",
                "from": "0x000000000000000000000000000000000000138d",
                "to": "0x00000000000000000000000000000000006d68d4",
                "amount": 10_000_000,
            }),
        })
        assert (await verifier.verify(proof(reference=evm_hash), requirement())).verified


class TestTokens:
    @pytest.mark.asyncio
    async def test_hts_token_payment(self):
        tx = hbar_transaction(tinybars=0)
        tx["transactions"][0]["transfers"] = []
        tx["transactions"][0]["token_transfers"] = [
            {"token_id": USDC.token_id, "account": "0.0.5005", "amount": -1_500_000},
            {"token_id": USDC.token_id, "account": PAY_TO, "amount": 1_500_000},
        ]
        verifier, _ = verifier_for(
            {f"/transactions/{TX_ID}": (200, tx)},
            tokens={"HBAR": TokenInfo(symbol="HBAR"), "USDC": USDC},
        )
        assert (await verifier.verify(proof(), requirement(amount="1.5", token="USDC"))).verified

    @pytest.mark.asyncio
    async def test_paid_in_wrong_token(self):
        tx = hbar_transaction(tinybars=0)
        tx["transactions"][0]["transfers"] = []
        tx["transactions"][0]["token_transfers"] = [
            {"token_id": USDC.token_id, "account": PAY_TO, "amount": 100_000},
        ]
        verifier, _ = verifier_for(
            {f"/transactions/{TX_ID}": (200, tx)},
            tokens={"HBAR": TokenInfo(symbol="HBAR"), "USDC": USDC},
        )
        result = await verifier.verify(proof(), requirement())
        assert result.code == X402ErrorCode.TOKEN_MISMATCH


class TestLenientMatching:
    """Leniency is opt-in."""

    @pytest.mark.asyncio
    async def test_ninety_percent_only_when_lenient(self):
        routes = {f"/transactions/{TX_ID}": (200, hbar_transaction(tinybars=9_000_000))}
        strict, _ = verifier_for(routes)
        lenient, _ = verifier_for(routes, lenient_matching=True)

        assert not (await strict.verify(proof(), requirement())).verified
        assert (await lenient.verify(proof(), requirement())).verified

    @pytest.mark.asyncio
    async def test_entity_match_only_when_lenient(self):
        mirror = Mock()
        mirror.get_transaction = AsyncMock(return_value=LedgerTransaction(
            reference=TX_ID, result="SUCCESS", entity_id=PAY_TO,
        ))
        mirror.resolve_account = AsyncMock(return_value=None)

        strict = TransactionVerifier(mirror, VerifierConfig())
        lenient = TransactionVerifier(mirror, VerifierConfig(lenient_matching=True))

        assert (await strict.verify(proof(), requirement())).code == X402ErrorCode.RECIPIENT_MISMATCH
        assert (await lenient.verify(proof(), requirement())).verified

    @pytest.mark.asyncio
    async def test_resolution_failure_reports_unavailable(self):
        mirror = Mock()
        mirror.get_transaction = AsyncMock(return_value=LedgerTransaction(
            reference=TX_ID, result="SUCCESS",
            transfers=[LedgerTransfer(account="0.0.1", amount=10_000_000)],
        ))
        mirror.resolve_account = AsyncMock(side_effect=LedgerUnavailableError("down"))
        verifier = TransactionVerifier(mirror, VerifierConfig())

        result = await verifier.verify(proof(), requirement(recipient="0x71c7656ec7ab88b098defb751b7401b5f6d8976f"))

        assert result.code == X402ErrorCode.LEDGER_UNAVAILABLE


class TestSettlementTiming:
    """A proof citing a requirement must not point at an older transfer."""

    def issued(self, seconds_ago):
        return PaymentRequirement(
            request_id="req_1_abc", amount="0.1", recipient=PAY_TO,
            created_at=utcnow() - timedelta(seconds=seconds_ago),
        )

    @pytest.mark.asyncio
    async def test_transfer_before_requirement_rejected(self):
        old = f"{(utcnow() - timedelta(hours=1)).timestamp():.9f}"
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(consensus_timestamp=old))})

        result = await verifier.verify(proof(request_id="req_1_abc"), self.issued(seconds_ago=10))

        assert not result.verified
        assert result.code == X402ErrorCode.INVALID_PROOF
        assert "predates" in result.error

    @pytest.mark.asyncio
    async def test_small_clock_skew_tolerated(self):
        earlier = f"{(utcnow() - timedelta(seconds=40)).timestamp():.9f}"
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(consensus_timestamp=earlier))})

        result = await verifier.verify(proof(request_id="req_1_abc"), self.issued(seconds_ago=10))

        assert result.verified

    @pytest.mark.asyncio
    async def test_uncited_requirement_is_not_time_checked(self):
        old = f"{(utcnow() - timedelta(hours=1)).timestamp():.9f}"
        verifier, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(consensus_timestamp=old))})

        assert (await verifier.verify(proof(), self.issued(seconds_ago=10))).verified


class TestFacilitatorFallback:
    """The facilitator is a second opinion on ledger-side failures only."""

    def facilitator(self, answer):
        facilitator = Mock()
        facilitator.verify = AsyncMock(return_value=answer)
        return facilitator

    @pytest.mark.asyncio
    async def test_confirms_transaction_mirror_has_not_indexed(self):
        stub = MirrorStub()
        mirror = MirrorNodeClient(MIRROR_URL, transport=stub.transport)
        facilitator = self.facilitator(VerificationResult.ok(TX_ID))
        verifier = TransactionVerifier(mirror, VerifierConfig(), facilitator=facilitator)

        result = await verifier.verify(proof(), requirement())

        assert result.verified
        facilitator.verify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconfirmed_keeps_local_result(self):
        stub = MirrorStub()
        mirror = MirrorNodeClient(MIRROR_URL, transport=stub.transport)
        verifier = TransactionVerifier(mirror, VerifierConfig(), facilitator=self.facilitator(None))

        result = await verifier.verify(proof(), requirement())

        assert result.code == X402ErrorCode.TRANSACTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_consulted_for_stated_mismatch_or_failed_transaction(self, verifier):
        facilitator = self.facilitator(VerificationResult.ok(TX_ID))
        verifier.facilitator = facilitator
        failed, _ = verifier_for({f"/transactions/{TX_ID}": (200, hbar_transaction(result="INSUFFICIENT_PAYER_BALANCE"))})
        failed.facilitator = facilitator

        assert (await verifier.verify(proof(token="USDC"), requirement())).code == X402ErrorCode.TOKEN_MISMATCH
        assert (await failed.verify(proof(), requirement())).code == X402ErrorCode.TRANSACTION_FAILED
        facilitator.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_consulted_when_local_check_passes(self, verifier):
        facilitator = self.facilitator(None)
        verifier.facilitator = facilitator

        assert (await verifier.verify(proof(), requirement())).verified
        facilitator.verify.assert_not_awaited()

    def test_built_from_config(self):
        verifier = TransactionVerifier(
            Mock(), VerifierConfig(facilitator_url="https://facilitator.test/", facilitator_timeout_seconds=2.0)
        )
        assert verifier.facilitator.base_url == "https://facilitator.test"
        assert verifier.facilitator.timeout_seconds == 2.0
        assert TransactionVerifier(Mock(), VerifierConfig()).facilitator is None
