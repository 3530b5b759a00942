# ==== INVOICE SERVICE ==== #

"""
Invoice lifecycle: draft, finalize, send, dispute and resolution.

Drafts price a client's closed shipments through the ``RateEngine`` and
claim those shipments with a compare-and-set update, so a concurrent draft
can never bill the same shipment. Finalizing assigns the invoice number and
freezes tax and SLA adjustments; sending opens the receivable. A dispute
freezes the receivable against payments until it is resolved by accepting
the original invoice or voiding it.
"""

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select

from app.business.errors import (
    InvalidStateError,
    LedgerError,
    NoApplicableRateError,
    ValidationError,
)
from app.business.state_machines import InvoiceStatus, NoteStatus, ReceivableStatus, RECEIVABLE_LIFECYCLE
from app.observability.metrics import sla_adjustment_paise
from app.observability.tracing import get_tracer
from app.security.auth import Actor, Capability, SYSTEM_ACTOR
from app.services.compliance import EventType
from app.services.ledger_service import LedgerService, invoice_lock
from app.services.note_service import NotePurpose
from app.services.numbering import next_invoice_number, next_note_number
from app.services.rate_engine import (
    PaymentMode,
    RateCard,
    RateEngine,
    ShipmentCharge,
    ShipmentInput,
    SlaResult,
)
from app.services.receivable_ledger import (
    open_receivable,
    rebalance,
    set_invoice_status,
    settle,
    sync_invoice_status,
)
from app.storage import repositories as repo
from app.storage.models import (
    ClientRateCard,
    FinancialNote,
    Invoice,
    Receivable,
    Shipment,
    new_id,
    utcnow,
)


tracer = get_tracer(__name__)


class DisputeResolution(str, Enum):
    ACCEPT_ORIGINAL = "ACCEPT_ORIGINAL"
    VOID = "VOID"


@dataclass
class BillablePreview:
    client_id: str
    period_start: dt.date
    period_end: dt.date
    shipments: List[Shipment] = field(default_factory=list)
    charges: List[ShipmentCharge] = field(default_factory=list)

    @property
    def subtotal_paise(self) -> int:
        return sum(c.net_paise for c in self.charges)


# ==== INVOICE SERVICE CLASS ==== #


class InvoiceService(LedgerService):
    """Owns invoice creation and every invoice status transition."""

    ok_event = EventType.BILLING_OP
    rejected_event = EventType.BILLING_REJECTED

    def __init__(self, *args, rate_engine: Optional[RateEngine] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rate_engine = rate_engine or RateEngine(self.policy)


    # ==== PRICING HELPERS ==== #


    async def _rate_card(self, session, client_id: str, as_of: dt.date) -> ClientRateCard:
        card = await repo.active_rate_card(session, client_id, as_of)
        if card is None:
            raise NoApplicableRateError(
                f"Client {client_id} has no active rate card on {as_of.isoformat()}",
                client_id=client_id,
            )
        return card

    def _line_items(self, shipments: Sequence[Shipment], charges: Sequence[ShipmentCharge]) -> List[Dict]:
        items = []
        for shipment, charge in zip(shipments, charges):
            item = charge.model_dump()
            item["cod_amount_paise"] = shipment.cod_amount_paise
            item["delivered_on"] = shipment.closed_at.date().isoformat() if shipment.closed_at else None
            items.append(item)
        return items

    async def _sla_pass(self, session, card_row: ClientRateCard, invoice: Invoice) -> SlaResult:
        metrics = await repo.sla_metrics_for_period(
            session, invoice.client_id, invoice.period_start, invoice.period_end
        )
        return self.rate_engine.compute_sla_adjustments(
            RateCard.model_validate(card_row), invoice.subtotal_paise, metrics
        )

    def _apply_amounts(self, invoice: Invoice, sla: SlaResult) -> None:
        invoice.sla_adjustments = [a.model_dump() for a in sla.adjustments]
        invoice.sla_adjustment_paise = sla.net_paise
        invoice.tax_paise = self.rate_engine.compute_tax(invoice.subtotal_paise)
        invoice.total_paise = invoice.subtotal_paise + invoice.tax_paise + invoice.sla_adjustment_paise


    # ==== READS ==== #


    async def get(self, actor: Actor, invoice_id: str) -> Invoice:
        actor.require(Capability.VIEW_LEDGER, "view invoices")
        async with self.session_factory() as session:
            invoice = await repo.get_or_404(session, Invoice, invoice_id)
        actor.require_owner(invoice.client_id, "view invoices")
        return invoice

    async def billable_shipments(
        self,
        actor: Actor,
        client_id: str,
        period_start: dt.date,
        period_end: dt.date
    ) -> BillablePreview:
        """
        Preview the unbilled shipments of a period and their charges.

        Args:
            actor (Actor): Finance user
            client_id (str): Client to bill
            period_start (dt.date): First day of the billing period
            period_end (dt.date): Last day of the billing period

        Returns:
            BillablePreview: Shipments with their charge breakdown
        """
        actor.require(Capability.MANAGE_INVOICES, "preview billable shipments")
        _validate_period(period_start, period_end)

        async with self.session_factory() as session:
            shipments = await repo.billable_shipments(
                session, client_id, period_start, period_end,
                self.policy.billable_shipment_statuses
            )
            preview = BillablePreview(client_id, period_start, period_end, shipments=shipments)
            if shipments:
                card = await self._rate_card(session, client_id, period_end)
                preview.charges = self.rate_engine.price_shipments(
                    RateCard.model_validate(card),
                    [ShipmentInput.model_validate(s) for s in shipments]
                )
        return preview


    # ==== DRAFT CREATION ==== #


    async def create_draft(
        self,
        actor: Actor,
        client_id: str,
        period_start: dt.date,
        period_end: dt.date,
        shipment_ids: Optional[Sequence[str]] = None
    ) -> Invoice:
        """
        Create a DRAFT invoice and claim its shipments.

        Args:
            actor (Actor): Finance user
            client_id (str): Client to bill
            period_start (dt.date): First day of the billing period
            period_end (dt.date): Last day of the billing period
            shipment_ids (Optional[Sequence[str]]): Explicit shipment set;
                defaults to every billable shipment of the period

        Returns:
            Invoice: The persisted draft

        Raises:
            ValidationError: Empty set, foreign or already-billed shipments
            NoApplicableRateError: No active rate card or an unpriced shipment
        """
        with tracer.start_as_current_span("invoice_create_draft") as span:
            span.set_attribute("client_id", client_id)
            try:
                actor.require(Capability.MANAGE_INVOICES, "create invoice drafts")
                _validate_period(period_start, period_end)

                async with self.locks.hold(f"shipments:{client_id}"):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await self._build_draft(
                                session, actor, client_id, period_start, period_end, shipment_ids
                            )
            except LedgerError as e:
                await self._rejected(
                    "create_draft", actor, e,
                    client_id=client_id,
                    period_start=period_start.isoformat(),
                    period_end=period_end.isoformat(),
                )
                raise

            span.set_attribute("invoice_id", invoice.id)
            span.set_attribute("shipment_count", len(invoice.shipment_ids))
            await self._record(
                actor,
                f"Draft invoice created for {client_id}",
                invoice_id=invoice.id,
                client_id=client_id,
                shipment_count=len(invoice.shipment_ids),
                subtotal_paise=invoice.subtotal_paise,
                total_paise=invoice.total_paise,
            )
            return invoice

    async def _build_draft(self, session, actor, client_id, period_start, period_end, shipment_ids) -> Invoice:
        statuses = self.policy.billable_shipment_statuses

        if shipment_ids is None:
            shipments = await repo.billable_shipments(session, client_id, period_start, period_end, statuses)
        else:
            ids = list(dict.fromkeys(shipment_ids))
            rows = (
                await session.execute(select(Shipment).where(Shipment.id.in_(ids)).order_by(Shipment.awb))
            ).scalars().all()
            found = {s.id for s in rows}
            missing = [i for i in ids if i not in found]
            if missing:
                raise ValidationError("Unknown shipments", shipment_ids=missing)
            for shipment in rows:
                if shipment.client_id != client_id:
                    raise ValidationError(
                        f"Shipment {shipment.awb} belongs to another client", shipment_id=shipment.id
                    )
                if shipment.status not in statuses:
                    raise ValidationError(
                        f"Shipment {shipment.awb} is {shipment.status}, not billable", shipment_id=shipment.id
                    )
                if shipment.billed_invoice_id is not None:
                    raise ValidationError(
                        f"Shipment {shipment.awb} is already on invoice {shipment.billed_invoice_id}",
                        shipment_id=shipment.id,
                    )
            shipments = list(rows)

        if not shipments:
            raise ValidationError(
                "No billable shipments for the period",
                client_id=client_id,
            )

        card_row = await self._rate_card(session, client_id, period_end)
        card = RateCard.model_validate(card_row)
        charges = self.rate_engine.price_shipments(
            card, [ShipmentInput.model_validate(s) for s in shipments]
        )

        invoice = Invoice(
            id=new_id(),
            client_id=client_id,
            rate_card_id=card_row.id,
            period_start=period_start,
            period_end=period_end,
            subtotal_paise=sum(c.net_paise for c in charges),
            cod_detected_paise=sum(
                s.cod_amount_paise for s in shipments
                if s.payment_mode == PaymentMode.COD.value and s.status == "DELIVERED"
            ),
            shipment_ids=[s.id for s in shipments],
            line_items=self._line_items(shipments, charges),
            status=InvoiceStatus.DRAFT.value,
            created_by=actor.user_id,
        )
        self._apply_amounts(invoice, await self._sla_pass(session, card_row, invoice))
        session.add(invoice)
        await session.flush()

        claimed = await repo.tag_shipments(session, invoice.shipment_ids, invoice.id)
        if claimed != len(invoice.shipment_ids):
            raise ValidationError(
                "Shipments were claimed by another invoice",
                requested=len(invoice.shipment_ids),
                claimed=claimed,
            )
        return invoice


    # ==== FINALIZE / SEND ==== #


    async def finalize(self, actor: Actor, invoice_id: str) -> Invoice:
        """
        Move DRAFT -> GENERATED: number the invoice and freeze its amounts.

        Raises:
            InvalidStateError: If the invoice is not DRAFT
        """
        with tracer.start_as_current_span("invoice_finalize") as span:
            span.set_attribute("invoice_id", invoice_id)
            try:
                actor.require(Capability.MANAGE_INVOICES, "finalize invoices")
                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            set_invoice_status(invoice, InvoiceStatus.GENERATED)

                            card_row = await repo.get_or_404(session, ClientRateCard, invoice.rate_card_id)
                            sla = await self._sla_pass(session, card_row, invoice)
                            self._apply_amounts(invoice, sla)

                            now = utcnow()
                            invoice.generated_at = now
                            invoice.invoice_number = await next_invoice_number(session, self.policy, now)
            except LedgerError as e:
                await self._rejected("finalize", actor, e, invoice_id=invoice_id)
                raise

            sla_adjustment_paise.labels(capped=str(sla.capped).lower()).observe(sla.net_paise)
            await self._record(
                actor,
                f"Invoice {invoice.invoice_number} generated",
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                subtotal_paise=invoice.subtotal_paise,
                tax_paise=invoice.tax_paise,
                sla_adjustment_paise=invoice.sla_adjustment_paise,
                sla_capped=sla.capped,
                total_paise=invoice.total_paise,
            )
            return invoice

    async def send(self, actor: Actor, invoice_id: str) -> Receivable:
        """
        Move GENERATED -> SENT and open the invoice's receivable.

        Returns:
            Receivable: The newly opened receivable
        """
        with tracer.start_as_current_span("invoice_send") as span:
            span.set_attribute("invoice_id", invoice_id)
            try:
                actor.require(Capability.MANAGE_INVOICES, "send invoices")
                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            set_invoice_status(invoice, InvoiceStatus.SENT)
                            if await repo.receivable_for_invoice(session, invoice.id) is not None:
                                raise InvalidStateError(
                                    f"Invoice {invoice.id} already has a receivable",
                                    entity="Invoice",
                                    entity_id=invoice.id,
                                )
                            now = utcnow()
                            invoice.sent_at = now
                            receivable = open_receivable(invoice, self.policy, now)
                            session.add(receivable)
                            await session.flush()
            except LedgerError as e:
                await self._rejected("send", actor, e, invoice_id=invoice_id)
                raise

            await self._record(
                actor,
                f"Invoice {invoice.invoice_number} sent",
                invoice_id=invoice.id,
                receivable_id=receivable.id,
                total_paise=receivable.total_paise,
                due_date=receivable.due_date.isoformat(),
            )
            return receivable


    # ==== DISPUTES ==== #


    async def raise_dispute(self, actor: Actor, invoice_id: str, reason: str) -> Invoice:
        """
        Put a GENERATED or SENT invoice, and its receivable, into DISPUTED.

        Raises:
            ValidationError: If no reason is given
            InvalidStateError: From any other invoice status
        """
        with tracer.start_as_current_span("invoice_raise_dispute") as span:
            span.set_attribute("invoice_id", invoice_id)
            try:
                actor.require(Capability.RAISE_DISPUTE, "raise disputes")
                if not reason or not reason.strip():
                    raise ValidationError("A dispute needs a reason")

                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            actor.require_owner(invoice.client_id, "dispute invoices")

                            previous = invoice.status
                            set_invoice_status(invoice, InvoiceStatus.DISPUTED)
                            invoice.status_before_dispute = previous
                            invoice.dispute_reason = reason.strip()

                            receivable = await repo.receivable_for_invoice(session, invoice.id, for_update=True)
                            if receivable is not None:
                                receivable.status = RECEIVABLE_LIFECYCLE.ensure(
                                    receivable.status, ReceivableStatus.DISPUTED, receivable.id
                                )
            except LedgerError as e:
                await self._rejected("raise_dispute", actor, e, invoice_id=invoice_id)
                raise

            await self._record(
                actor,
                f"Invoice {invoice.invoice_number} disputed",
                invoice_id=invoice.id,
                previous_status=previous,
                reason=invoice.dispute_reason,
                receivable_id=receivable.id if receivable else None,
            )
            return invoice

    async def resolve_dispute(
        self,
        actor: Actor,
        invoice_id: str,
        resolution: DisputeResolution,
        note: Optional[str] = None
    ) -> Invoice:
        """
        Resolve a disputed invoice.

        ``ACCEPT_ORIGINAL`` restores the pre-dispute invoice status and
        re-opens the receivable with the status its amounts imply.
        ``VOID`` forgives the remaining balance with a system credit note,
        voids invoice and receivable, and releases the shipments.
        """
        resolution = DisputeResolution(resolution)
        with tracer.start_as_current_span("invoice_resolve_dispute") as span:
            span.set_attribute("invoice_id", invoice_id)
            span.set_attribute("resolution", resolution.value)
            forgiven = 0
            try:
                actor.require(Capability.RESOLVE_DISPUTE, "resolve disputes")
                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            if invoice.status != InvoiceStatus.DISPUTED.value:
                                raise InvalidStateError(
                                    f"Invoice {invoice.id} is not disputed",
                                    entity="Invoice",
                                    current=invoice.status,
                                    target=resolution.value,
                                )
                            receivable = await repo.receivable_for_invoice(session, invoice.id, for_update=True)

                            if resolution == DisputeResolution.ACCEPT_ORIGINAL:
                                self._accept_original(invoice, receivable)
                            else:
                                forgiven = await self._void(session, invoice, receivable, note)
            except LedgerError as e:
                await self._rejected(
                    "resolve_dispute", actor, e, invoice_id=invoice_id, resolution=resolution.value
                )
                raise

            await self._record(
                actor,
                f"Dispute on invoice {invoice.invoice_number} resolved: {resolution.value}",
                invoice_id=invoice.id,
                resolution=resolution.value,
                status=invoice.status,
                forgiven_paise=forgiven,
                resolution_note=note,
            )
            return invoice

    def _accept_original(self, invoice: Invoice, receivable: Optional[Receivable]) -> None:
        set_invoice_status(invoice, InvoiceStatus(invoice.status_before_dispute or InvoiceStatus.GENERATED))
        invoice.status_before_dispute = None
        if receivable is not None:
            settle(receivable)
            sync_invoice_status(invoice, receivable)

    async def _void(
        self,
        session,
        invoice: Invoice,
        receivable: Optional[Receivable],
        note: Optional[str]
    ) -> int:
        forgiven = 0
        if receivable is not None:
            forgiven = max(receivable.balance_paise, 0)
            if forgiven:
                now = utcnow()
                session.add(FinancialNote(
                    note_number=await next_note_number(session, self.policy, "CREDIT"),
                    note_type="CREDIT",
                    invoice_id=invoice.id,
                    client_id=invoice.client_id,
                    amount_paise=forgiven,
                    applied_amount_paise=forgiven,
                    reason=f"Balance forgiven on dispute resolution (VOID){': ' + note if note else ''}",
                    status=NoteStatus.APPLIED.value,
                    purpose=NotePurpose.VOID_FORGIVENESS.value,
                    created_by=SYSTEM_ACTOR.user_id,
                    approved_by=SYSTEM_ACTOR.user_id,
                    approved_at=now,
                    applied_by=SYSTEM_ACTOR.user_id,
                    applied_at=now,
                ))
                receivable.credit_applied_paise += forgiven
                rebalance(receivable)
            receivable.status = RECEIVABLE_LIFECYCLE.ensure(
                receivable.status, ReceivableStatus.VOID, receivable.id
            )

        set_invoice_status(invoice, InvoiceStatus.VOID)
        invoice.voided_at = utcnow()
        await repo.release_shipments(session, invoice.id)
        return forgiven


def _validate_period(period_start: dt.date, period_end: dt.date) -> None:
    if period_start > period_end:
        raise ValidationError(
            "Billing period start is after its end",
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
        )
