"""Unit tests for receivable balances, status derivation and reporting."""

import datetime as dt

import pytest
from sqlalchemy import update

from app.business.errors import InvalidStateError, UnauthorizedError, ValidationError
from app.business.state_machines import ReceivableStatus
from app.security.auth import SYSTEM_ACTOR
from app.services.receivable_ledger import derive_settlement_status, effective_status, rebalance
from app.services.reporting import aging_bucket
from app.storage.models import Receivable

from factories.data_factories import CLIENT_ID, OTHER_CLIENT_ID, issue_invoice


def make_receivable(**overrides) -> Receivable:
    fields = {
        "id": "rcv-1",
        "invoice_id": "inv-1",
        "client_id": CLIENT_ID,
        "total_paise": 10_000,
        "amount_paid_paise": 0,
        "credit_applied_paise": 0,
        "debit_applied_paise": 0,
        "balance_paise": 10_000,
        "unapplied_credit_paise": 0,
        "due_date": dt.date(2025, 2, 15),
        "status": "OPEN",
    }
    fields.update(overrides)
    return Receivable(**fields)


@pytest.mark.unit
class TestStatusDerivation:

    def test_settlement_status_from_amounts(self):
        assert derive_settlement_status(make_receivable()) == ReceivableStatus.OPEN
        assert derive_settlement_status(
            make_receivable(amount_paid_paise=1, balance_paise=9_999)
        ) == ReceivableStatus.PARTIALLY_PAID
        assert derive_settlement_status(
            make_receivable(credit_applied_paise=10_000, balance_paise=0)
        ) == ReceivableStatus.PAID

    def test_overdue_derived_after_due_date(self):
        receivable = make_receivable()

        assert effective_status(receivable, dt.date(2025, 2, 15)) == ReceivableStatus.OPEN
        assert effective_status(receivable, dt.date(2025, 2, 16)) == ReceivableStatus.OVERDUE
        assert receivable.status == "OPEN"

    def test_paid_and_disputed_never_overdue(self):
        late = dt.date(2026, 1, 1)
        assert effective_status(make_receivable(status="PAID", balance_paise=0), late) == ReceivableStatus.PAID
        assert effective_status(make_receivable(status="DISPUTED"), late) == ReceivableStatus.DISPUTED

    def test_rebalance_recomputes_and_settles(self):
        receivable = make_receivable(amount_paid_paise=4_000, debit_applied_paise=1_000)

        rebalance(receivable)

        assert receivable.balance_paise == 7_000
        assert receivable.status == "PARTIALLY_PAID"

    def test_rebalance_refuses_negative_balance(self):
        receivable = make_receivable(amount_paid_paise=10_001)
        with pytest.raises(InvalidStateError):
            rebalance(receivable)

    def test_disputed_status_survives_rebalance(self):
        receivable = make_receivable(status="DISPUTED", credit_applied_paise=10_000)

        rebalance(receivable)

        assert receivable.balance_paise == 0
        assert receivable.status == "DISPUTED"


@pytest.mark.unit
class TestLedgerQueries:

    @pytest.mark.asyncio
    async def test_overdue_filter_uses_as_of(self, sent_invoice, receivable_ledger, finance):
        _, receivable = sent_invoice

        on_time = await receivable_ledger.list_for_client(finance, CLIENT_ID, ReceivableStatus.OVERDUE, receivable.due_date)
        late = await receivable_ledger.list_for_client(
            finance, CLIENT_ID, ReceivableStatus.OVERDUE, receivable.due_date + dt.timedelta(days=1)
        )

        assert on_time == []
        assert [r.id for r in late] == [receivable.id]

    @pytest.mark.asyncio
    async def test_client_listing_is_scoped(self, sent_invoice, receivable_ledger, client_actor, other_client_actor):
        _, receivable = sent_invoice

        assert [r.id for r in await receivable_ledger.list_for_client(client_actor)] == [receivable.id]
        assert await receivable_ledger.list_for_client(other_client_actor) == []
        with pytest.raises(UnauthorizedError):
            await receivable_ledger.list_for_client(other_client_actor, CLIENT_ID)
        with pytest.raises(UnauthorizedError):
            await receivable_ledger.get(other_client_actor, receivable.id)

    @pytest.mark.asyncio
    async def test_for_invoice(self, sent_invoice, receivable_ledger, finance):
        invoice, receivable = sent_invoice
        assert (await receivable_ledger.for_invoice(finance, invoice.id)).id == receivable.id

    @pytest.mark.asyncio
    async def test_invariant_check_flags_tampered_balance(self, sent_invoice, receivable_ledger, session_factory):
        _, receivable = sent_invoice
        assert await receivable_ledger.find_invariant_violations() == []

        async with session_factory() as session:
            await session.execute(
                update(Receivable).where(Receivable.id == receivable.id).values(balance_paise=1)
            )
            await session.commit()

        violations = await receivable_ledger.find_invariant_violations()
        assert len(violations) == 1
        assert violations[0].stored_balance_paise == 1
        assert violations[0].expected_balance_paise == 1_080_000


@pytest.mark.unit
class TestReporting:

    def test_aging_buckets(self):
        assert [aging_bucket(d) for d in (0, 1, 30, 31, 60, 61, 90, 91)] == [
            "current", "1_30", "1_30", "31_60", "31_60", "61_90", "61_90", "90_plus"
        ]

    @pytest.mark.asyncio
    async def test_period_and_outstanding_figures_are_separate(
        self, sent_invoice, collection_processor, receivables_report, finance
    ):
        _, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 80_000, "BANK_TRANSFER", "UTR-1")
        opened_on = receivable.created_at.date()

        in_period = await receivables_report.summary(finance, opened_on, opened_on, as_of=receivable.due_date)
        earlier = await receivables_report.summary(
            finance, opened_on - dt.timedelta(days=60), opened_on - dt.timedelta(days=30), as_of=receivable.due_date
        )

        assert in_period.invoiced_in_period_paise == 1_080_000
        assert in_period.outstanding_balance_paise == 1_000_000
        assert in_period.collected_paise == 80_000
        assert in_period.overdue_balance_paise == 0
        assert in_period.aging_paise["current"] == 1_000_000

        assert earlier.invoiced_in_period_paise == 0
        assert earlier.outstanding_balance_paise == 1_000_000

    @pytest.mark.asyncio
    async def test_overdue_and_aging(self, sent_invoice, receivables_report):
        _, receivable = sent_invoice
        as_of = receivable.due_date + dt.timedelta(days=45)

        summary = await receivables_report.summary(SYSTEM_ACTOR, as_of, as_of, as_of=as_of)

        assert summary.overdue_balance_paise == 1_080_000
        assert summary.aging_paise["31_60"] == 1_080_000
        assert summary.receivable_count == 1

    @pytest.mark.asyncio
    async def test_void_receivables_excluded(
        self, sent_invoice, factory, invoice_service, receivables_report, finance, founder
    ):
        invoice, receivable = sent_invoice
        await factory.standard_client(client_id=OTHER_CLIENT_ID, shipment_count=1)
        await issue_invoice(invoice_service, finance, OTHER_CLIENT_ID)
        await invoice_service.raise_dispute(finance, invoice.id, "Duplicate")
        await invoice_service.resolve_dispute(founder, invoice.id, "VOID")
        opened_on = receivable.created_at.date()

        summary = await receivables_report.summary(finance, opened_on, opened_on)
        acme = await receivables_report.summary(finance, opened_on, opened_on, client_id=CLIENT_ID)

        assert summary.receivable_count == 1
        assert summary.outstanding_balance_paise == 108_000
        assert acme.receivable_count == 0
        assert acme.invoiced_in_period_paise == 1_080_000

    @pytest.mark.asyncio
    async def test_client_summary_scoped(self, sent_invoice, receivables_report, client_actor, other_client_actor):
        _, receivable = sent_invoice
        day = receivable.created_at.date()

        assert (await receivables_report.summary(client_actor, day, day)).receivable_count == 1
        assert (await receivables_report.summary(other_client_actor, day, day)).receivable_count == 0
        with pytest.raises(UnauthorizedError):
            await receivables_report.summary(other_client_actor, day, day, client_id=CLIENT_ID)

    @pytest.mark.asyncio
    async def test_inverted_period_rejected(self, receivables_report, finance):
        with pytest.raises(ValidationError):
            await receivables_report.summary(finance, dt.date(2025, 2, 1), dt.date(2025, 1, 1))
