"""Unit tests for credit and debit notes."""

import datetime as dt
from decimal import Decimal

import pytest

from app.business.errors import InvalidStateError, UnauthorizedError, ValidationError
from app.security.auth import SYSTEM_ACTOR
from app.services.compliance import EventType
from app.services.note_service import NoteService
from app.services.policy_loader import BillingPolicy

from factories.data_factories import CLIENT_ID, PERIOD_END, PERIOD_START


async def issue_note(note_service, creator, approver, note_type, invoice_id, amount_paise, reason="Correction"):
    note = await note_service.create(creator, note_type, invoice_id, amount_paise, reason)
    return await note_service.approve(approver, note.id)


@pytest.mark.unit
class TestNoteLifecycle:

    @pytest.mark.asyncio
    async def test_created_note_awaits_approval(self, sent_invoice, note_service, finance):
        invoice, _ = sent_invoice

        note = await note_service.create(finance, "CREDIT", invoice.id, 50_000, "Late delivery goodwill")

        assert note.status == "PENDING_APPROVAL"
        assert note.note_number == "CN-000001"
        assert note.client_id == CLIENT_ID
        assert note.created_by == finance.user_id

    @pytest.mark.asyncio
    async def test_credit_and_debit_numbering_are_separate(self, sent_invoice, note_service, finance):
        invoice, _ = sent_invoice

        credit = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill")
        debit = await note_service.create(finance, "DEBIT", invoice.id, 1_000, "Missed surcharge")
        credit_2 = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill again")

        assert (credit.note_number, debit.note_number, credit_2.note_number) == (
            "CN-000001", "DN-000001", "CN-000002"
        )

    @pytest.mark.asyncio
    async def test_draft_note_submitted_later(self, sent_invoice, note_service, finance):
        invoice, _ = sent_invoice

        note = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill", submit=False)
        assert note.status == "DRAFT"

        submitted = await note_service.submit(finance, note.id)
        assert submitted.status == "PENDING_APPROVAL"

    @pytest.mark.asyncio
    async def test_creator_cannot_approve_own_note(self, sent_invoice, note_service, founder):
        invoice, _ = sent_invoice
        note = await note_service.create(founder, "CREDIT", invoice.id, 1_000, "Goodwill")

        with pytest.raises(UnauthorizedError):
            await note_service.approve(founder, note.id)

    @pytest.mark.asyncio
    async def test_finance_admin_cannot_approve(self, sent_invoice, note_service, finance, finance_2):
        invoice, _ = sent_invoice
        note = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill")

        with pytest.raises(UnauthorizedError):
            await note_service.approve(finance_2, note.id)

    @pytest.mark.asyncio
    async def test_rejected_note_is_final(self, sent_invoice, note_service, finance, founder):
        invoice, _ = sent_invoice
        note = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill")

        rejected = await note_service.reject(founder, note.id, "Not agreed with client")
        assert rejected.status == "REJECTED"
        assert rejected.rejected_by == founder.user_id
        assert rejected.rejection_reason == "Not agreed with client"

        with pytest.raises(InvalidStateError):
            await note_service.approve(founder, note.id)

    @pytest.mark.asyncio
    async def test_pending_note_cannot_be_applied(self, sent_invoice, note_service, finance):
        invoice, _ = sent_invoice
        note = await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill")

        with pytest.raises(InvalidStateError):
            await note_service.apply(finance, note.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,reason", [(0, "Goodwill"), (-100, "Goodwill"), (100, " ")])
    async def test_invalid_input_rejected(self, sent_invoice, note_service, finance, sink, amount, reason):
        invoice, _ = sent_invoice

        with pytest.raises(ValidationError):
            await note_service.create(finance, "CREDIT", invoice.id, amount, reason)
        assert sink.of_type(EventType.NOTE_REJECTED)

    @pytest.mark.asyncio
    async def test_note_needs_sent_invoice(self, factory, invoice_service, note_service, finance):
        await factory.standard_client()
        draft = await invoice_service.create_draft(finance, CLIENT_ID, PERIOD_START, PERIOD_END)

        with pytest.raises(InvalidStateError):
            await note_service.create(finance, "CREDIT", draft.id, 1_000, "Goodwill")

    @pytest.mark.asyncio
    async def test_client_cannot_create_notes(self, sent_invoice, note_service, client_actor):
        invoice, _ = sent_invoice
        with pytest.raises(UnauthorizedError):
            await note_service.create(client_actor, "CREDIT", invoice.id, 1_000, "Please")


@pytest.mark.unit
class TestNoteApplication:

    @pytest.mark.asyncio
    async def test_credit_reduces_balance_once(
        self, sent_invoice, collection_processor, note_service, finance, founder
    ):
        invoice, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 500_000, "BANK_TRANSFER", "UTR-1")
        note = await issue_note(note_service, finance, founder, "CREDIT", invoice.id, 50_000)

        applied = await note_service.apply(finance, note.id)

        assert applied.already_applied is False
        assert applied.note.status == "APPLIED"
        assert applied.note.applied_amount_paise == 50_000
        assert applied.receivable.balance_paise == 530_000
        assert applied.receivable.credit_applied_paise == 50_000
        assert applied.receivable.status == "PARTIALLY_PAID"

        again = await note_service.apply(finance, note.id)

        assert again.already_applied is True
        assert again.receivable.balance_paise == 530_000

    @pytest.mark.asyncio
    async def test_excess_credit_parked_as_unapplied(
        self, sent_invoice, note_service, invoice_service, finance, founder
    ):
        invoice, _ = sent_invoice
        note = await issue_note(note_service, finance, founder, "CREDIT", invoice.id, 1_200_000)

        applied = await note_service.apply(finance, note.id)

        assert applied.note.applied_amount_paise == 1_080_000
        assert applied.note.unapplied_amount_paise == 120_000
        assert applied.receivable.balance_paise == 0
        assert applied.receivable.unapplied_credit_paise == 120_000
        assert applied.receivable.status == "PAID"
        assert (await invoice_service.get(finance, invoice.id)).status == "PAID"

    @pytest.mark.asyncio
    async def test_debit_increases_balance(self, sent_invoice, note_service, finance, founder):
        invoice, _ = sent_invoice
        note = await issue_note(note_service, finance, founder, "DEBIT", invoice.id, 20_000)

        applied = await note_service.apply(finance, note.id)

        assert applied.receivable.balance_paise == 1_100_000
        assert applied.receivable.debit_applied_paise == 20_000
        assert applied.receivable.status == "OPEN"

    @pytest.mark.asyncio
    async def test_debit_on_paid_receivable_rejected(
        self, sent_invoice, collection_processor, note_service, finance
    ):
        invoice, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 1_080_000, "BANK_TRANSFER", "UTR-ALL")

        with pytest.raises(InvalidStateError):
            await note_service.create(finance, "DEBIT", invoice.id, 10_000, "Fuel surcharge")

    @pytest.mark.asyncio
    async def test_issued_debit_rejected_once_receivable_is_paid(
        self, sent_invoice, collection_processor, note_service, finance, founder
    ):
        invoice, receivable = sent_invoice
        note = await issue_note(note_service, finance, founder, "DEBIT", invoice.id, 10_000)
        await collection_processor.process_payment(finance, receivable.id, 1_080_000, "BANK_TRANSFER", "UTR-ALL")

        with pytest.raises(InvalidStateError):
            await note_service.apply(finance, note.id)

    @pytest.mark.asyncio
    async def test_application_is_audited(self, sent_invoice, note_service, finance, founder, sink):
        invoice, _ = sent_invoice
        note = await issue_note(note_service, finance, founder, "CREDIT", invoice.id, 5_000)

        await note_service.apply(finance, note.id)

        events = sink.of_type(EventType.NOTE_OP)
        assert [e["actor_id"] for e in events] == [finance.user_id, founder.user_id, finance.user_id]
        assert events[-1]["metadata"]["applied_paise"] == 5_000


@pytest.mark.unit
class TestNoteQueries:

    @pytest.mark.asyncio
    async def test_client_sees_only_own_notes(
        self, sent_invoice, note_service, finance, client_actor, other_client_actor
    ):
        invoice, _ = sent_invoice
        await note_service.create(finance, "CREDIT", invoice.id, 1_000, "Goodwill")

        assert len(await note_service.list_notes(client_actor)) == 1
        assert await note_service.list_notes(other_client_actor) == []
        with pytest.raises(UnauthorizedError):
            await note_service.list_notes(other_client_actor, client_id=CLIENT_ID)

    @pytest.mark.asyncio
    async def test_filter_by_invoice(self, sent_invoice, note_service, finance):
        invoice, _ = sent_invoice
        await note_service.create(finance, "DEBIT", invoice.id, 1_000, "Surcharge")

        assert len(await note_service.list_notes(finance, invoice_id=invoice.id)) == 1
        assert await note_service.list_notes(finance, invoice_id="other") == []


@pytest.fixture
def penalty_service(session_factory, sink, locks):
    return NoteService(session_factory, sink, locks, BillingPolicy(overdue_penalty_enabled=True))


def days_after_due(receivable, days):
    return receivable.due_date + dt.timedelta(days=days)


@pytest.mark.unit
class TestOverduePenalties:
    """The system raises one penalty per invoice once it is far enough overdue."""

    @pytest.mark.asyncio
    async def test_penalty_raised_once_past_threshold(
        self, sent_invoice, penalty_service, receivable_ledger, finance
    ):
        invoice, receivable = sent_invoice

        notes = await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 7))

        assert len(notes) == 1
        penalty = notes[0]
        assert penalty.note_type == "DEBIT"
        assert penalty.note_number == "DN-000001"
        assert penalty.invoice_id == invoice.id
        assert penalty.amount_paise == 50_000
        assert penalty.status == "PENDING_APPROVAL"
        assert penalty.purpose == "OVERDUE_PENALTY"
        assert penalty.created_by == SYSTEM_ACTOR.user_id
        assert penalty.reason == "System overdue penalty (7 days)"
        # pending penalties do not touch the balance
        assert (await receivable_ledger.get(finance, receivable.id)).balance_paise == 1_080_000

        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 12)) == []
        assert len(await penalty_service.list_notes(finance, invoice_id=invoice.id)) == 1

    @pytest.mark.asyncio
    async def test_late_run_still_raises_penalty(self, sent_invoice, penalty_service):
        _, receivable = sent_invoice

        notes = await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 9))

        assert [n.reason for n in notes] == ["System overdue penalty (9 days)"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [-3, 0, 6])
    async def test_nothing_raised_before_threshold(self, sent_invoice, penalty_service, days):
        _, receivable = sent_invoice

        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, days)) == []

    @pytest.mark.asyncio
    async def test_partially_paid_receivable_is_penalised(
        self, sent_invoice, collection_processor, penalty_service, finance
    ):
        _, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 500_000, "BANK_TRANSFER", "UTR-P")

        notes = await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 7))

        assert len(notes) == 1

    @pytest.mark.asyncio
    async def test_paid_receivable_skipped(self, sent_invoice, collection_processor, penalty_service, finance):
        _, receivable = sent_invoice
        await collection_processor.process_payment(finance, receivable.id, 1_080_000, "BANK_TRANSFER", "UTR-ALL")

        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 30)) == []

    @pytest.mark.asyncio
    async def test_disputed_receivable_skipped(
        self, sent_invoice, invoice_service, penalty_service, client_actor
    ):
        invoice, receivable = sent_invoice
        await invoice_service.raise_dispute(client_actor, invoice.id, "Wrong SLA figures")

        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 30)) == []

    @pytest.mark.asyncio
    async def test_disabled_policy_raises_nothing(self, sent_invoice, note_service):
        _, receivable = sent_invoice

        assert await note_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 30)) == []

    @pytest.mark.asyncio
    async def test_founder_approves_then_finance_applies(
        self, sent_invoice, penalty_service, receivable_ledger, finance, founder
    ):
        _, receivable = sent_invoice
        [penalty] = await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 7))

        approved = await penalty_service.approve(founder, penalty.id)
        applied = await penalty_service.apply(finance, approved.id)

        assert approved.approved_by == founder.user_id
        assert applied.receivable.balance_paise == 1_130_000
        assert applied.receivable.debit_applied_paise == 50_000
        assert await receivable_ledger.find_invariant_violations() == []
        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 20)) == []

    @pytest.mark.asyncio
    async def test_rejected_penalty_is_not_raised_again(self, sent_invoice, penalty_service, founder):
        _, receivable = sent_invoice
        [penalty] = await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 7))

        await penalty_service.reject(founder, penalty.id, "Waived for key account")

        assert await penalty_service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 8)) == []

    @pytest.mark.asyncio
    async def test_percentage_penalty_applied_without_approval(
        self, sent_invoice, session_factory, sink, locks, receivable_ledger, finance
    ):
        _, receivable = sent_invoice
        policy = BillingPolicy(
            overdue_penalty_enabled=True,
            overdue_penalty_type="PERCENTAGE",
            overdue_penalty_value=Decimal("2"),
            overdue_penalty_requires_approval=False,
        )
        service = NoteService(session_factory, sink, locks, policy)

        [penalty] = await service.issue_overdue_penalties(SYSTEM_ACTOR, days_after_due(receivable, 7))

        assert penalty.amount_paise == 21_600
        assert penalty.status == "APPLIED"
        assert penalty.applied_amount_paise == 21_600
        assert penalty.approved_by == penalty.applied_by == SYSTEM_ACTOR.user_id
        current = await receivable_ledger.get(finance, receivable.id)
        assert current.balance_paise == 1_101_600
        assert current.debit_applied_paise == 21_600
        assert await receivable_ledger.find_invariant_violations() == []
        event = sink.of_type(EventType.NOTE_OP)[-1]
        assert event["actor_id"] == SYSTEM_ACTOR.user_id
        assert event["metadata"]["days_past_due"] == 7

    @pytest.mark.asyncio
    async def test_finance_cannot_run_penalties(self, sent_invoice, penalty_service, finance):
        _, receivable = sent_invoice

        with pytest.raises(UnauthorizedError):
            await penalty_service.issue_overdue_penalties(finance, days_after_due(receivable, 7))
