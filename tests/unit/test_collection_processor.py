"""Unit tests for payment intake, idempotency and reversals."""

import asyncio

import pytest

from app.business.errors import (
    DisputedReceivableError,
    DuplicateReferenceError,
    InvalidStateError,
    OverpaymentError,
    UnauthorizedError,
    ValidationError,
)
from app.security.auth import Actor, Role
from app.services.compliance import EventType

from factories.data_factories import OTHER_CLIENT_ID, issue_invoice


@pytest.mark.unit
class TestPayments:
    """Payments move the balance exactly once per reference."""

    @pytest.mark.asyncio
    async def test_partial_then_full_payment_with_repeated_gateway_callback(
        self, sent_invoice, collection_processor, invoice_service, receivable_ledger, client_actor, finance
    ):
        invoice, receivable = sent_invoice
        assert receivable.total_paise == 1_080_000

        first = await collection_processor.process_payment(
            client_actor, receivable.id, 500_000, "GATEWAY", "R1", gateway_payment_id="pay_1"
        )
        assert first.duplicate is False
        assert first.receivable.balance_paise == 580_000
        assert first.receivable.status == "PARTIALLY_PAID"
        assert first.record.self_service is True

        second = await collection_processor.process_payment(
            client_actor, receivable.id, 580_000, "GATEWAY", "R2"
        )
        assert second.receivable.balance_paise == 0
        assert second.receivable.status == "PAID"
        assert (await invoice_service.get(finance, invoice.id)).status == "PAID"

        repeat = await collection_processor.process_payment(
            client_actor, receivable.id, 500_000, "GATEWAY", "R1"
        )
        assert repeat.duplicate is True
        assert repeat.record.id == first.record.id
        assert repeat.receivable.balance_paise == 0

        records = await receivable_ledger.collections(finance, receivable.id)
        assert [r.reference for r in records] == ["R1", "R2"]
        assert await receivable_ledger.find_invariant_violations() == []

    @pytest.mark.asyncio
    async def test_staff_repeating_reference_is_rejected(
        self, sent_invoice, collection_processor, receivable_ledger, finance, sink
    ):
        _, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 100_000, "BANK_TRANSFER", "UTR-9")

        with pytest.raises(DuplicateReferenceError):
            await collection_processor.process_payment(finance, receivable.id, 100_000, "BANK_TRANSFER", "UTR-9")

        assert (await receivable_ledger.get(finance, receivable.id)).balance_paise == 980_000
        rejected = sink.of_type(EventType.COLLECTION_REJECTED)
        assert rejected[-1]["metadata"]["error_code"] == "DUPLICATE_REFERENCE"

    @pytest.mark.asyncio
    async def test_reference_is_global_across_receivables(
        self, sent_invoice, factory, invoice_service, collection_processor, finance
    ):
        _, receivable = sent_invoice
        await factory.standard_client(client_id=OTHER_CLIENT_ID, shipment_count=1)
        _, other = await issue_invoice(invoice_service, finance, OTHER_CLIENT_ID)
        await collection_processor.process_payment(finance, receivable.id, 1_000, "CHEQUE", "CHQ-1")

        with pytest.raises(DuplicateReferenceError):
            await collection_processor.process_payment(finance, other.id, 1_000, "CHEQUE", "CHQ-1")

    @pytest.mark.asyncio
    async def test_overpayment_rejected(self, sent_invoice, collection_processor, receivable_ledger, finance):
        _, receivable = sent_invoice

        with pytest.raises(OverpaymentError) as exc:
            await collection_processor.process_payment(finance, receivable.id, 1_080_001, "CASH", "CASH-1")

        assert exc.value.context["balance_paise"] == 1_080_000
        assert (await receivable_ledger.get(finance, receivable.id)).amount_paid_paise == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, sent_invoice, collection_processor, finance, amount):
        _, receivable = sent_invoice
        with pytest.raises(ValidationError):
            await collection_processor.process_payment(finance, receivable.id, amount, "CASH", "CASH-1")

    @pytest.mark.asyncio
    async def test_blank_reference_rejected(self, sent_invoice, collection_processor, finance):
        _, receivable = sent_invoice
        with pytest.raises(ValidationError):
            await collection_processor.process_payment(finance, receivable.id, 100, "CASH", "   ")

    @pytest.mark.asyncio
    async def test_disputed_receivable_blocks_payment(
        self, sent_invoice, invoice_service, collection_processor, client_actor
    ):
        invoice, receivable = sent_invoice
        await invoice_service.raise_dispute(client_actor, invoice.id, "Wrong SLA figures")

        with pytest.raises(DisputedReceivableError):
            await collection_processor.process_payment(client_actor, receivable.id, 100, "GATEWAY", "R-D")

    @pytest.mark.asyncio
    async def test_void_receivable_blocks_payment(
        self, sent_invoice, invoice_service, collection_processor, finance, founder
    ):
        invoice, receivable = sent_invoice
        await invoice_service.raise_dispute(finance, invoice.id, "Duplicate")
        await invoice_service.resolve_dispute(founder, invoice.id, "VOID")

        with pytest.raises(InvalidStateError):
            await collection_processor.process_payment(finance, receivable.id, 100, "CASH", "CASH-V")

    @pytest.mark.asyncio
    async def test_client_cannot_pay_other_clients_receivable(
        self, sent_invoice, collection_processor, other_client_actor
    ):
        _, receivable = sent_invoice
        with pytest.raises(UnauthorizedError):
            await collection_processor.process_payment(other_client_actor, receivable.id, 100, "GATEWAY", "R-X")

    @pytest.mark.asyncio
    async def test_client_limited_to_gateway_mode(self, sent_invoice, collection_processor, client_actor):
        _, receivable = sent_invoice
        with pytest.raises(UnauthorizedError):
            await collection_processor.process_payment(client_actor, receivable.id, 100, "BANK_TRANSFER", "UTR-C")

    @pytest.mark.asyncio
    async def test_operations_cannot_record_payments(self, sent_invoice, collection_processor):
        _, receivable = sent_invoice
        operations = Actor(user_id="ops-1", role=Role.OPERATIONS)
        with pytest.raises(UnauthorizedError):
            await collection_processor.process_payment(operations, receivable.id, 100, "CASH", "CASH-O")

    @pytest.mark.asyncio
    async def test_failed_gateway_payment_leaves_balance(
        self, sent_invoice, collection_processor, receivable_ledger, client_actor, finance
    ):
        _, receivable = sent_invoice

        record = await collection_processor.record_failed_payment(
            client_actor, receivable.id, 500_000, "R-F", "card declined", gateway_payment_id="pay_f"
        )

        assert record.status == "FAILED"
        assert record.failure_reason == "card declined"
        assert (await receivable_ledger.get(finance, receivable.id)).balance_paise == 1_080_000

        # a failed attempt does not reserve the reference
        outcome = await collection_processor.process_payment(client_actor, receivable.id, 500_000, "GATEWAY", "R-F")
        assert outcome.duplicate is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,reference", [(0, "R-F"), (-100, "R-F"), (100, "  ")])
    async def test_failed_payment_input_validated(
        self, sent_invoice, collection_processor, receivable_ledger, client_actor, finance, amount, reference
    ):
        _, receivable = sent_invoice

        with pytest.raises(ValidationError):
            await collection_processor.record_failed_payment(
                client_actor, receivable.id, amount, reference, "card declined"
            )

        assert await receivable_ledger.collections(finance, receivable.id) == []


@pytest.mark.unit
class TestConcurrency:
    """Concurrent writers against one receivable."""

    @pytest.mark.asyncio
    async def test_concurrent_payments_cannot_overdraw(
        self, sent_invoice, collection_processor, receivable_ledger, finance
    ):
        _, receivable = sent_invoice

        results = await asyncio.gather(
            collection_processor.process_payment(finance, receivable.id, 600_000, "BANK_TRANSFER", "UTR-A"),
            collection_processor.process_payment(finance, receivable.id, 600_000, "BANK_TRANSFER", "UTR-B"),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1 and isinstance(failed[0], OverpaymentError)

        current = await receivable_ledger.get(finance, receivable.id)
        assert current.balance_paise == 480_000
        assert await receivable_ledger.find_invariant_violations() == []

    @pytest.mark.asyncio
    async def test_concurrent_repeated_callback_applies_once(
        self, sent_invoice, collection_processor, receivable_ledger, client_actor, finance
    ):
        _, receivable = sent_invoice

        results = await asyncio.gather(*[
            collection_processor.process_payment(client_actor, receivable.id, 200_000, "GATEWAY", "R-SAME")
            for _ in range(3)
        ])

        assert sorted(r.duplicate for r in results) == [False, True, True]
        current = await receivable_ledger.get(finance, receivable.id)
        assert current.amount_paid_paise == 200_000
        assert current.balance_paise == 880_000


@pytest.mark.unit
class TestReversals:

    @pytest.mark.asyncio
    async def test_reversal_restores_balance_and_status(
        self, sent_invoice, collection_processor, invoice_service, founder, finance
    ):
        invoice, receivable = sent_invoice
        paid = await collection_processor.process_payment(finance, receivable.id, 1_080_000, "BANK_TRANSFER", "UTR-1")
        assert paid.receivable.status == "PAID"

        reversed_ = await collection_processor.reverse_payment(founder, paid.record.id, "Cheque bounced")

        assert reversed_.record.status == "REVERSED"
        assert reversed_.record.reversed_by == founder.user_id
        assert reversed_.receivable.balance_paise == 1_080_000
        assert reversed_.receivable.status == "OPEN"
        assert (await invoice_service.get(finance, invoice.id)).status == "SENT"

    @pytest.mark.asyncio
    async def test_reversed_reference_can_be_reused(self, sent_invoice, collection_processor, founder, finance):
        _, receivable = sent_invoice
        paid = await collection_processor.process_payment(finance, receivable.id, 100_000, "BANK_TRANSFER", "UTR-2")
        await collection_processor.reverse_payment(founder, paid.record.id, "Posted to wrong account")

        again = await collection_processor.process_payment(finance, receivable.id, 100_000, "BANK_TRANSFER", "UTR-2")

        assert again.receivable.balance_paise == 980_000

    @pytest.mark.asyncio
    async def test_reversal_only_once(self, sent_invoice, collection_processor, founder, finance):
        _, receivable = sent_invoice
        paid = await collection_processor.process_payment(finance, receivable.id, 100_000, "CASH", "CASH-2")
        await collection_processor.reverse_payment(founder, paid.record.id, "Counterfeit notes")

        with pytest.raises(InvalidStateError):
            await collection_processor.reverse_payment(founder, paid.record.id, "Again")

    @pytest.mark.asyncio
    async def test_finance_cannot_reverse(self, sent_invoice, collection_processor, finance):
        _, receivable = sent_invoice
        paid = await collection_processor.process_payment(finance, receivable.id, 100_000, "CASH", "CASH-3")

        with pytest.raises(UnauthorizedError):
            await collection_processor.reverse_payment(finance, paid.record.id, "Mistake")

    @pytest.mark.asyncio
    async def test_reversal_needs_reason(self, sent_invoice, collection_processor, founder, finance):
        _, receivable = sent_invoice
        paid = await collection_processor.process_payment(finance, receivable.id, 100_000, "CASH", "CASH-4")

        with pytest.raises(ValidationError):
            await collection_processor.reverse_payment(founder, paid.record.id, "")
