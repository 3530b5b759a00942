# ==== NOTE SERVICE ==== #

"""
Credit and debit note lifecycle.

A note moves DRAFT -> PENDING_APPROVAL -> ISSUED -> APPLIED, or is
REJECTED. It changes the receivable balance only when applied, and applying
is idempotent per note: a second apply returns the note unchanged.

Approval needs the approval capability and a different user from the
creator. A credit larger than the balance settles the balance and parks the
excess as unapplied credit on the receivable.

Overdue penalties are DEBIT notes raised by the system user, at most one per
invoice, tagged with a purpose so a later run never raises a second one.
"""

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.business.errors import (
    InvalidStateError,
    LedgerError,
    UnauthorizedError,
    ValidationError,
)
from app.business.state_machines import NOTE_LIFECYCLE, InvoiceStatus, NoteStatus, ReceivableStatus
from app.observability.logging import get_logger
from app.observability.metrics import (
    notes_applied_total,
    overdue_penalties_total,
    unapplied_credit_paise_total,
)
from app.observability.tracing import get_tracer
from app.security.auth import Actor, Capability
from app.services.compliance import EventType
from app.services.ledger_service import LedgerService, invoice_lock
from app.services.numbering import next_note_number
from app.services.rate_engine import percent_of
from app.services.receivable_ledger import (
    days_past_due,
    effective_status,
    ensure_mutable,
    rebalance,
    sync_invoice_status,
)
from app.storage import repositories as repo
from app.storage.models import FinancialNote, Invoice, Receivable, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)


class NoteType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class NotePurpose(str, Enum):
    OVERDUE_PENALTY = "OVERDUE_PENALTY"
    VOID_FORGIVENESS = "VOID_FORGIVENESS"


@dataclass
class NoteApplication:
    note: FinancialNote
    receivable: Receivable
    already_applied: bool = False


# ==== NOTE SERVICE CLASS ==== #


class NoteService(LedgerService):
    """Creates, approves and applies financial notes."""

    ok_event = EventType.NOTE_OP
    rejected_event = EventType.NOTE_REJECTED

    async def _invoice_id_of(self, note_id: str) -> str:
        async with self.session_factory() as session:
            return (await repo.get_or_404(session, FinancialNote, note_id)).invoice_id


    # ==== CREATION ==== #


    async def create(
        self,
        actor: Actor,
        note_type: NoteType,
        invoice_id: str,
        amount_paise: int,
        reason: str,
        submit: bool = True
    ) -> FinancialNote:
        """
        Raise a note against a sent invoice.

        Args:
            actor (Actor): Finance user
            note_type (NoteType): CREDIT reduces the balance, DEBIT increases it
            invoice_id (str): Invoice whose receivable the note corrects
            amount_paise (int): Strictly positive amount
            reason (str): Mandatory free text
            submit (bool): Start in PENDING_APPROVAL rather than DRAFT

        Returns:
            FinancialNote: The persisted note

        Raises:
            ValidationError: Non-positive amount or blank reason
            InvalidStateError: Invoice not sent, void, or a debit on a paid receivable
        """
        note_type = NoteType(note_type)
        with tracer.start_as_current_span("note_create") as span:
            span.set_attribute("invoice_id", invoice_id)
            span.set_attribute("note_type", note_type.value)
            try:
                actor.require(Capability.CREATE_NOTE, "create notes")
                if not isinstance(amount_paise, int) or amount_paise <= 0:
                    raise ValidationError("Note amount must be positive", amount_paise=amount_paise)
                if not reason or not reason.strip():
                    raise ValidationError("A note needs a reason")

                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            receivable = await repo.receivable_for_invoice(session, invoice.id)
                            if receivable is None or invoice.status == InvoiceStatus.VOID.value:
                                raise InvalidStateError(
                                    f"Notes need a sent, non-void invoice; invoice {invoice.id} is {invoice.status}",
                                    entity="Invoice",
                                    current=invoice.status,
                                )
                            if note_type == NoteType.DEBIT and receivable.status == ReceivableStatus.PAID.value:
                                raise InvalidStateError(
                                    f"Receivable {receivable.id} is paid; debit notes are not accepted",
                                    entity="Receivable",
                                    current=receivable.status,
                                )

                            note = FinancialNote(
                                note_number=await next_note_number(session, self.policy, note_type.value),
                                note_type=note_type.value,
                                invoice_id=invoice.id,
                                client_id=invoice.client_id,
                                amount_paise=amount_paise,
                                reason=reason.strip(),
                                status=(NoteStatus.PENDING_APPROVAL if submit else NoteStatus.DRAFT).value,
                                created_by=actor.user_id,
                            )
                            session.add(note)
                            await session.flush()
            except LedgerError as e:
                await self._rejected(
                    "create_note", actor, e,
                    invoice_id=invoice_id, note_type=note_type.value, amount_paise=amount_paise
                )
                raise

            await self._record(
                actor,
                f"{note_type.value.title()} note {note.note_number} created",
                note_id=note.id,
                note_number=note.note_number,
                invoice_id=invoice_id,
                amount_paise=amount_paise,
                status=note.status,
            )
            return note


    # ==== APPROVAL FLOW ==== #


    async def _transition(
        self,
        actor: Actor,
        operation: str,
        note_id: str,
        target: NoteStatus,
        capability: Capability,
        reason: Optional[str] = None,
    ) -> FinancialNote:
        with tracer.start_as_current_span(f"note_{operation}") as span:
            span.set_attribute("note_id", note_id)
            try:
                actor.require(capability, f"{operation} notes")
                async with self.locks.hold(f"note:{note_id}"):
                    async with self.session_factory() as session:
                        async with session.begin():
                            note = await repo.get_for_update(session, FinancialNote, note_id)
                            if target == NoteStatus.ISSUED and note.created_by == actor.user_id:
                                raise UnauthorizedError(
                                    f"Note {note.note_number} cannot be approved by its creator",
                                    actor_id=actor.user_id,
                                )
                            note.status = NOTE_LIFECYCLE.ensure(note.status, target, note.id)

                            now = utcnow()
                            if target == NoteStatus.ISSUED:
                                note.approved_by = actor.user_id
                                note.approved_at = now
                            elif target == NoteStatus.REJECTED:
                                note.rejected_by = actor.user_id
                                note.rejection_reason = reason
            except LedgerError as e:
                await self._rejected(operation, actor, e, note_id=note_id)
                raise

            await self._record(
                actor,
                f"Note {note.note_number} moved to {note.status}",
                note_id=note.id,
                note_number=note.note_number,
                status=note.status,
                reason=reason,
            )
            return note

    async def submit(self, actor: Actor, note_id: str) -> FinancialNote:
        """DRAFT -> PENDING_APPROVAL."""
        return await self._transition(
            actor, "submit", note_id, NoteStatus.PENDING_APPROVAL, Capability.CREATE_NOTE
        )

    async def approve(self, actor: Actor, note_id: str) -> FinancialNote:
        """PENDING_APPROVAL -> ISSUED, by someone other than the creator."""
        return await self._transition(
            actor, "approve", note_id, NoteStatus.ISSUED, Capability.APPROVE_NOTE
        )

    async def reject(self, actor: Actor, note_id: str, reason: Optional[str] = None) -> FinancialNote:
        return await self._transition(
            actor, "reject", note_id, NoteStatus.REJECTED, Capability.APPROVE_NOTE, reason=reason
        )


    # ==== APPLICATION ==== #


    async def apply(self, actor: Actor, note_id: str) -> NoteApplication:
        """
        Apply an ISSUED note to its receivable (idempotent per note).

        Returns:
            NoteApplication: The note, the receivable after application and
            whether the note had already been applied

        Raises:
            InvalidStateError: Note not ISSUED/APPLIED, receivable void, or a
                debit on a paid receivable
        """
        with tracer.start_as_current_span("note_apply") as span:
            span.set_attribute("note_id", note_id)
            try:
                actor.require(Capability.APPLY_NOTE, "apply notes")
                invoice_id = await self._invoice_id_of(note_id)

                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            note = await repo.get_for_update(session, FinancialNote, note_id)
                            receivable = await repo.receivable_for_invoice(session, invoice.id, for_update=True)

                            if note.status == NoteStatus.APPLIED.value:
                                return NoteApplication(note, receivable, already_applied=True)

                            note.status = NOTE_LIFECYCLE.ensure(note.status, NoteStatus.APPLIED, note.id)
                            if receivable is None:
                                raise InvalidStateError(f"Invoice {invoice.id} has no receivable")
                            ensure_mutable(receivable)
                            self._apply_to_receivable(note, receivable)

                            note.applied_by = actor.user_id
                            note.applied_at = utcnow()
                            rebalance(receivable)
                            sync_invoice_status(invoice, receivable)
            except LedgerError as e:
                await self._rejected("apply_note", actor, e, note_id=note_id)
                raise

            notes_applied_total.labels(note_type=note.note_type).inc()
            if note.unapplied_amount_paise:
                unapplied_credit_paise_total.inc(note.unapplied_amount_paise)
            await self._record(
                actor,
                f"Note {note.note_number} applied",
                note_id=note.id,
                note_number=note.note_number,
                receivable_id=receivable.id,
                applied_paise=note.applied_amount_paise,
                unapplied_paise=note.unapplied_amount_paise,
                balance_paise=receivable.balance_paise,
                status=receivable.status,
            )
            return NoteApplication(note, receivable)

    def _apply_to_receivable(self, note: FinancialNote, receivable: Receivable) -> None:
        if note.note_type == NoteType.CREDIT.value:
            applied = min(note.amount_paise, max(receivable.balance_paise, 0))
            note.applied_amount_paise = applied
            note.unapplied_amount_paise = note.amount_paise - applied
            receivable.credit_applied_paise += applied
            receivable.unapplied_credit_paise += note.unapplied_amount_paise
            return

        if receivable.status == ReceivableStatus.PAID.value:
            raise InvalidStateError(
                f"Receivable {receivable.id} is paid; debit notes are not accepted",
                entity="Receivable",
                current=receivable.status,
            )
        note.applied_amount_paise = note.amount_paise
        receivable.debit_applied_paise += note.amount_paise


    # ==== OVERDUE PENALTIES ==== #


    def penalty_amount(self, receivable: Receivable) -> int:
        """Flat paise, or a percentage of the receivable total."""
        if self.policy.overdue_penalty_type == "PERCENTAGE":
            return percent_of(receivable.total_paise, self.policy.overdue_penalty_value)
        return int(self.policy.overdue_penalty_value)

    def _penalty_due(self, receivable: Receivable, as_of: dt.date) -> bool:
        return (
            effective_status(receivable, as_of) == ReceivableStatus.OVERDUE
            and days_past_due(receivable, as_of) >= self.policy.overdue_penalty_days
        )

    async def issue_overdue_penalties(
        self,
        actor: Actor,
        as_of: Optional[dt.date] = None
    ) -> List[FinancialNote]:
        """
        Raise the one-time overdue penalty on every qualifying receivable.

        A receivable qualifies when it is unpaid, not disputed and at least
        ``overdue_penalty_days`` past due on ``as_of``. An invoice is
        penalised at most once, even if that penalty was later rejected.
        Penalties wait in PENDING_APPROVAL for a founder unless the policy
        waives approval, in which case they are applied immediately.

        Args:
            actor (Actor): The system user, or a founder running it by hand
            as_of (Optional[dt.date]): Reference date (defaults to today)

        Returns:
            List[FinancialNote]: Notes raised by this run
        """
        actor.require(Capability.ISSUE_PENALTY, "issue overdue penalties")
        if not self.policy.overdue_penalty_enabled:
            return []
        as_of = as_of or dt.date.today()

        penalised = select(FinancialNote.id).where(
            FinancialNote.invoice_id == Receivable.invoice_id,
            FinancialNote.purpose == NotePurpose.OVERDUE_PENALTY.value,
        )
        stmt = (
            select(Receivable.invoice_id)
            .where(Receivable.status.in_([ReceivableStatus.OPEN.value, ReceivableStatus.PARTIALLY_PAID.value]))
            .where(Receivable.balance_paise > 0)
            .where(Receivable.due_date <= as_of - dt.timedelta(days=self.policy.overdue_penalty_days))
            .where(~penalised.exists())
            .order_by(Receivable.due_date)
        )
        async with self.session_factory() as session:
            invoice_ids = list((await session.execute(stmt)).scalars().all())

        issued = []
        for invoice_id in invoice_ids:
            try:
                note = await self._issue_penalty(actor, invoice_id, as_of)
            except LedgerError as e:
                # one receivable failing does not hold up the rest of the run
                await self._rejected("issue_penalty", actor, e, invoice_id=invoice_id)
                continue
            if note is not None:
                issued.append(note)

        logger.info(
            f"Overdue penalty run raised {len(issued)} note(s)",
            as_of=as_of.isoformat(),
            candidates=len(invoice_ids),
            **actor.audit_fields()
        )
        return issued

    async def _issue_penalty(self, actor: Actor, invoice_id: str, as_of: dt.date) -> Optional[FinancialNote]:
        with tracer.start_as_current_span("note_issue_penalty") as span:
            span.set_attribute("invoice_id", invoice_id)
            try:
                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            receivable = await repo.receivable_for_invoice(session, invoice.id, for_update=True)
                            if receivable is None or not self._penalty_due(receivable, as_of):
                                return None
                            existing = await session.scalar(
                                select(FinancialNote.id).where(
                                    FinancialNote.invoice_id == invoice.id,
                                    FinancialNote.purpose == NotePurpose.OVERDUE_PENALTY.value,
                                )
                            )
                            amount = self.penalty_amount(receivable)
                            if existing is not None or amount <= 0:
                                return None

                            days = days_past_due(receivable, as_of)
                            note = FinancialNote(
                                note_number=await next_note_number(session, self.policy, NoteType.DEBIT.value),
                                note_type=NoteType.DEBIT.value,
                                invoice_id=invoice.id,
                                client_id=invoice.client_id,
                                amount_paise=amount,
                                reason=f"System overdue penalty ({days} days)",
                                status=NoteStatus.PENDING_APPROVAL.value,
                                purpose=NotePurpose.OVERDUE_PENALTY.value,
                                created_by=actor.user_id,
                            )
                            if not self.policy.overdue_penalty_requires_approval:
                                now = utcnow()
                                self._apply_to_receivable(note, receivable)
                                note.status = NoteStatus.APPLIED.value
                                note.approved_by = note.applied_by = actor.user_id
                                note.approved_at = note.applied_at = now
                                rebalance(receivable)
                                sync_invoice_status(invoice, receivable)
                            session.add(note)
                            await session.flush()
            except IntegrityError:
                # raised concurrently by another worker
                logger.info("Overdue penalty already raised", invoice_id=invoice_id, **actor.audit_fields())
                return None

        overdue_penalties_total.labels(status=note.status).inc()
        if note.status == NoteStatus.APPLIED.value:
            notes_applied_total.labels(note_type=note.note_type).inc()
        await self._record(
            actor,
            f"Overdue penalty {note.note_number} raised on invoice {invoice.invoice_number}",
            note_id=note.id,
            note_number=note.note_number,
            invoice_id=invoice.id,
            receivable_id=receivable.id,
            amount_paise=note.amount_paise,
            days_past_due=days,
            status=note.status,
            balance_paise=receivable.balance_paise,
        )
        return note


    # ==== QUERIES ==== #


    async def list_notes(
        self,
        actor: Actor,
        client_id: Optional[str] = None,
        invoice_id: Optional[str] = None
    ) -> List[FinancialNote]:
        actor.require(Capability.VIEW_LEDGER, "view notes")
        if actor.is_client:
            client_id = client_id or actor.client_id
            actor.require_owner(client_id, "view notes")

        stmt = select(FinancialNote).order_by(FinancialNote.created_at)
        if client_id:
            stmt = stmt.where(FinancialNote.client_id == client_id)
        if invoice_id:
            stmt = stmt.where(FinancialNote.invoice_id == invoice_id)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())
