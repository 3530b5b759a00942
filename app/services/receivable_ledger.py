# ==== RECEIVABLE LEDGER ==== #

"""
Receivable balance ledger.

One receivable exists per sent invoice. Its balance is always

    balance = total - amount_paid + debit_applied - credit_applied

and every mutation goes through the helpers below, which recompute the
balance, derive the settlement status and keep the invoice status in step
(PAID when the balance reaches zero, back to SENT when it re-opens).

OVERDUE is never stored: ``effective_status`` derives it at read time from
the due date.
"""

import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.business.errors import InvalidStateError, NotFoundError
from app.business.state_machines import (
    INVOICE_LIFECYCLE,
    RECEIVABLE_LIFECYCLE,
    InvoiceStatus,
    ReceivableStatus,
)
from app.observability.logging import get_logger
from app.observability.metrics import invoice_transitions_total, ledger_invariant_violations
from app.observability.tracing import get_tracer
from app.security.auth import Actor, Capability
from app.services.policy_loader import BillingPolicy
from app.storage.models import CollectionRecord, Invoice, Receivable


tracer = get_tracer(__name__)
logger = get_logger(__name__)


# ==== BALANCE ARITHMETIC ==== #


def expected_balance(receivable: Receivable) -> int:
    return (
        receivable.total_paise
        - receivable.amount_paid_paise
        + receivable.debit_applied_paise
        - receivable.credit_applied_paise
    )


def derive_settlement_status(receivable: Receivable) -> ReceivableStatus:
    """Settlement status implied by the amounts alone."""
    if receivable.balance_paise == 0:
        return ReceivableStatus.PAID
    if receivable.amount_paid_paise + receivable.credit_applied_paise > 0:
        return ReceivableStatus.PARTIALLY_PAID
    return ReceivableStatus.OPEN


def effective_status(receivable: Receivable, as_of: Optional[dt.date] = None) -> ReceivableStatus:
    """Stored status, with OVERDUE derived for unpaid receivables past due."""
    status = ReceivableStatus(receivable.status)
    as_of = as_of or dt.date.today()
    if (
        status in (ReceivableStatus.OPEN, ReceivableStatus.PARTIALLY_PAID)
        and receivable.balance_paise > 0
        and receivable.due_date < as_of
    ):
        return ReceivableStatus.OVERDUE
    return status


def days_past_due(receivable: Receivable, as_of: dt.date) -> int:
    return max((as_of - receivable.due_date).days, 0)


# ==== MUTATIONS (caller holds the lock and the transaction) ==== #


def open_receivable(invoice: Invoice, policy: BillingPolicy, opened_at: dt.datetime) -> Receivable:
    """Build the receivable of an invoice being sent."""
    generated = invoice.generated_at or opened_at
    return Receivable(
        invoice_id=invoice.id,
        client_id=invoice.client_id,
        total_paise=invoice.total_paise,
        amount_paid_paise=0,
        credit_applied_paise=0,
        debit_applied_paise=0,
        balance_paise=invoice.total_paise,
        unapplied_credit_paise=0,
        due_date=generated.date() + dt.timedelta(days=policy.payment_terms_days),
        status=ReceivableStatus.OPEN.value,
    )


def rebalance(receivable: Receivable) -> None:
    """
    Recompute the balance and settle the status.

    A disputed receivable keeps its DISPUTED status; the settlement status is
    restored when the dispute is resolved.
    """
    receivable.balance_paise = expected_balance(receivable)
    if receivable.balance_paise < 0 and receivable.status != ReceivableStatus.DISPUTED.value:
        raise InvalidStateError(
            f"Receivable {receivable.id} balance would become negative",
            entity="Receivable",
            entity_id=receivable.id,
            balance_paise=receivable.balance_paise,
        )
    if receivable.status in (ReceivableStatus.DISPUTED.value, ReceivableStatus.VOID.value):
        return
    settle(receivable)


def settle(receivable: Receivable) -> None:
    target = derive_settlement_status(receivable)
    if receivable.status != target.value:
        receivable.status = RECEIVABLE_LIFECYCLE.ensure(receivable.status, target, receivable.id)


def set_invoice_status(invoice: Invoice, target: InvoiceStatus) -> None:
    previous = invoice.status
    invoice.status = INVOICE_LIFECYCLE.ensure(previous, target, invoice.id)
    invoice_transitions_total.labels(from_status=previous, to_status=invoice.status).inc()


def sync_invoice_status(invoice: Invoice, receivable: Receivable) -> None:
    """Mirror receivable settlement onto the invoice."""
    if receivable.status == ReceivableStatus.PAID.value and invoice.status == InvoiceStatus.SENT.value:
        set_invoice_status(invoice, InvoiceStatus.PAID)
    elif receivable.status != ReceivableStatus.PAID.value and invoice.status == InvoiceStatus.PAID.value:
        set_invoice_status(invoice, InvoiceStatus.SENT)


def ensure_mutable(receivable: Receivable) -> None:
    if receivable.status == ReceivableStatus.VOID.value:
        raise InvalidStateError(
            f"Receivable {receivable.id} is void",
            entity="Receivable",
            current=receivable.status,
            entity_id=receivable.id,
        )


# ==== LEDGER QUERIES ==== #


@dataclass
class InvariantViolation:
    receivable_id: str
    client_id: str
    stored_balance_paise: int
    expected_balance_paise: int
    status: str


class ReceivableLedger:
    """
    Read side of the receivable ledger.

    Args:
        session_factory (async_sessionmaker): Source of database sessions
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, actor: Actor, receivable_id: str) -> Receivable:
        actor.require(Capability.VIEW_LEDGER, "view receivables")
        async with self.session_factory() as session:
            receivable = await session.get(Receivable, receivable_id)
            if receivable is None:
                raise NotFoundError(f"Receivable {receivable_id} not found", entity_id=receivable_id)
            actor.require_owner(receivable.client_id, "view receivables")
            return receivable

    async def for_invoice(self, actor: Actor, invoice_id: str) -> Receivable:
        actor.require(Capability.VIEW_LEDGER, "view receivables")
        async with self.session_factory() as session:
            receivable = (
                await session.execute(select(Receivable).where(Receivable.invoice_id == invoice_id))
            ).scalar_one_or_none()
            if receivable is None:
                raise NotFoundError(f"Invoice {invoice_id} has no receivable", invoice_id=invoice_id)
            actor.require_owner(receivable.client_id, "view receivables")
            return receivable

    async def list_for_client(
        self,
        actor: Actor,
        client_id: Optional[str] = None,
        status: Optional[ReceivableStatus] = None,
        as_of: Optional[dt.date] = None
    ) -> List[Receivable]:
        """
        List receivables, newest first.

        Client actors are always scoped to their own client. Filtering by
        OVERDUE applies the read-time derivation.
        """
        actor.require(Capability.VIEW_LEDGER, "view receivables")
        if actor.is_client:
            client_id = client_id or actor.client_id
            actor.require_owner(client_id, "view receivables")

        stmt = select(Receivable).order_by(Receivable.created_at.desc())
        if client_id:
            stmt = stmt.where(Receivable.client_id == client_id)
        if status and status != ReceivableStatus.OVERDUE:
            stmt = stmt.where(Receivable.status == ReceivableStatus(status).value)

        async with self.session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())

        if status == ReceivableStatus.OVERDUE:
            rows = [r for r in rows if effective_status(r, as_of) == ReceivableStatus.OVERDUE]
        return rows

    async def collections(self, actor: Actor, receivable_id: str) -> List[CollectionRecord]:
        receivable = await self.get(actor, receivable_id)
        async with self.session_factory() as session:
            stmt = (
                select(CollectionRecord)
                .where(CollectionRecord.receivable_id == receivable.id)
                .order_by(CollectionRecord.recorded_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def find_invariant_violations(self) -> List[InvariantViolation]:
        """
        Recompute every receivable's balance from its components.

        Returns:
            List[InvariantViolation]: Receivables whose stored balance differs
            from the components, or whose balance is negative outside a dispute
        """
        with tracer.start_as_current_span("ledger_find_invariant_violations") as span:
            violations: List[InvariantViolation] = []
            async with self.session_factory() as session:
                rows = (await session.execute(select(Receivable))).scalars().all()
                for receivable in rows:
                    expected = expected_balance(receivable)
                    negative = (
                        receivable.balance_paise < 0
                        and receivable.status != ReceivableStatus.DISPUTED.value
                    )
                    if receivable.balance_paise != expected or negative:
                        violations.append(InvariantViolation(
                            receivable_id=receivable.id,
                            client_id=receivable.client_id,
                            stored_balance_paise=receivable.balance_paise,
                            expected_balance_paise=expected,
                            status=receivable.status,
                        ))

            ledger_invariant_violations.set(len(violations))
            span.set_attribute("violations", len(violations))
            if violations:
                logger.error(
                    "Receivable balance invariant violated",
                    count=len(violations),
                    receivable_ids=[v.receivable_id for v in violations][:50]
                )
            return violations
