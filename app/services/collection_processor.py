# ==== COLLECTION PROCESSOR ==== #

"""
Payment intake and reversal against receivables.

A payment attempt either succeeds and moves the ledger, or is rejected
before anything is persisted. The payment reference is the idempotency key:
it is checked under the receivable's lock and reserved by a partial unique
index on successful collections, so a duplicate that slips past the check
still cannot produce a second monetary effect.

Repeating a reference is a no-op success for the owning client paying
through the gateway, and a ``DuplicateReferenceError`` for internal staff.
"""

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError

from app.business.errors import (
    DisputedReceivableError,
    DuplicateReferenceError,
    LedgerError,
    OverpaymentError,
    UnauthorizedError,
    ValidationError,
)
from app.business.state_machines import COLLECTION_LIFECYCLE, CollectionStatus, ReceivableStatus
from app.observability.logging import get_logger
from app.observability.metrics import (
    payment_reversals_total,
    payments_amount_paise_total,
    payments_total,
)
from app.observability.tracing import get_tracer
from app.security.auth import Actor, Capability
from app.services.compliance import EventType
from app.services.ledger_service import LedgerService, invoice_lock
from app.services.receivable_ledger import ensure_mutable, rebalance, sync_invoice_status
from app.storage import repositories as repo
from app.storage.models import CollectionRecord, Invoice, Receivable, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)


def _validate_payment_input(amount_paise: int, reference: str) -> None:
    if not isinstance(amount_paise, int) or amount_paise <= 0:
        raise ValidationError("Payment amount must be positive", amount_paise=amount_paise)
    if not reference:
        raise ValidationError("Payment reference is required")


class CollectionMode(str, Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"
    CASH = "CASH"
    GATEWAY = "GATEWAY"


@dataclass
class PaymentOutcome:
    record: CollectionRecord
    receivable: Receivable
    duplicate: bool = False


# ==== COLLECTION PROCESSOR CLASS ==== #


class CollectionProcessor(LedgerService):
    """Accepts, records and reverses payments."""

    ok_event = EventType.COLLECTION_OP
    rejected_event = EventType.COLLECTION_REJECTED


    # ==== AUTHORIZATION ==== #


    def _authorize_payment(self, actor: Actor, mode: CollectionMode) -> bool:
        """
        Return True for client self-service, False for internal recording.

        Raises:
            UnauthorizedError: For any other actor/mode combination
        """
        if actor.can(Capability.RECORD_PAYMENT):
            return False
        if actor.can(Capability.PAY_VIA_GATEWAY) and mode == CollectionMode.GATEWAY:
            return True
        raise UnauthorizedError(
            f"{actor.role.value} may not record {mode.value} payments",
            actor_id=actor.user_id,
            mode=mode.value,
        )


    # ==== PAYMENTS ==== #


    async def process_payment(
        self,
        actor: Actor,
        receivable_id: str,
        amount_paise: int,
        mode: CollectionMode,
        reference: str,
        payment_date: Optional[dt.date] = None,
        gateway_payment_id: Optional[str] = None
    ) -> PaymentOutcome:
        """
        Apply one payment to a receivable.

        Args:
            actor (Actor): Finance user, or the owning client via the gateway
            receivable_id (str): Receivable being paid
            amount_paise (int): Amount in paise, 0 < amount <= balance
            mode (CollectionMode): Payment channel
            reference (str): External reference, the idempotency key
            payment_date (Optional[dt.date]): Value date (defaults to today)
            gateway_payment_id (Optional[str]): Provider payment id

        Returns:
            PaymentOutcome: The collection record, the updated receivable and
            whether the call was an idempotent repeat

        Raises:
            UnauthorizedError: Wrong role/mode, or paying another client's receivable
            DisputedReceivableError: Receivable is DISPUTED
            ValidationError: Non-positive amount or missing reference
            DuplicateReferenceError: Internal actor repeating a reference
            OverpaymentError: Amount exceeds the balance
        """
        mode = CollectionMode(mode)
        reference = (reference or "").strip()
        with tracer.start_as_current_span("collection_process_payment") as span:
            span.set_attribute("receivable_id", receivable_id)
            span.set_attribute("mode", mode.value)
            span.set_attribute("amount_paise", amount_paise)
            self_service = False
            try:
                self_service = self._authorize_payment(actor, mode)
                try:
                    outcome = await self._apply_payment(
                        actor, receivable_id, amount_paise, mode, reference,
                        payment_date or dt.date.today(), gateway_payment_id, self_service
                    )
                except IntegrityError:
                    # A concurrent writer reserved the reference first
                    outcome = await self._resolve_reference_race(actor, receivable_id, reference, self_service)
            except LedgerError as e:
                payments_total.labels(mode=mode.value, outcome="rejected").inc()
                await self._rejected(
                    "process_payment", actor, e,
                    receivable_id=receivable_id,
                    amount_paise=amount_paise,
                    mode=mode.value,
                    reference=reference,
                    self_service=self_service,
                )
                raise

            span.set_attribute("duplicate", outcome.duplicate)
            if outcome.duplicate:
                payments_total.labels(mode=mode.value, outcome="duplicate_noop").inc()
                await self._record(
                    actor,
                    f"Repeated payment reference {reference} acknowledged without change",
                    receivable_id=receivable_id,
                    collection_id=outcome.record.id,
                    reference=reference,
                    self_service=self_service,
                    duplicate=True,
                )
                return outcome

            payments_total.labels(mode=mode.value, outcome="success").inc()
            payments_amount_paise_total.labels(mode=mode.value).inc(amount_paise)
            await self._record(
                actor,
                f"Payment of {amount_paise} paise recorded against receivable {receivable_id}",
                receivable_id=receivable_id,
                invoice_id=outcome.receivable.invoice_id,
                collection_id=outcome.record.id,
                amount_paise=amount_paise,
                mode=mode.value,
                reference=reference,
                self_service=self_service,
                balance_paise=outcome.receivable.balance_paise,
                status=outcome.receivable.status,
            )
            return outcome

    async def _invoice_id_of(self, receivable_id: str) -> str:
        async with self.session_factory() as session:
            receivable = await repo.get_or_404(session, Receivable, receivable_id)
            return receivable.invoice_id

    async def _apply_payment(
        self,
        actor: Actor,
        receivable_id: str,
        amount_paise: int,
        mode: CollectionMode,
        reference: str,
        payment_date: dt.date,
        gateway_payment_id: Optional[str],
        self_service: bool
    ) -> PaymentOutcome:
        invoice_id = await self._invoice_id_of(receivable_id)

        async with self.locks.hold(invoice_lock(invoice_id)):
            async with self.session_factory() as session:
                async with session.begin():
                    invoice = await repo.get_for_update(session, Invoice, invoice_id)
                    receivable = await repo.get_for_update(session, Receivable, receivable_id)

                    if receivable.status == ReceivableStatus.DISPUTED.value:
                        raise DisputedReceivableError(
                            f"Receivable {receivable.id} is disputed",
                            receivable_id=receivable.id,
                        )
                    ensure_mutable(receivable)

                    if self_service:
                        actor.require_owner(receivable.client_id, "pay receivables")

                    _validate_payment_input(amount_paise, reference)

                    existing = await repo.successful_collection(session, reference)
                    if existing is not None:
                        if self_service and existing.receivable_id == receivable.id:
                            return PaymentOutcome(existing, receivable, duplicate=True)
                        raise DuplicateReferenceError(
                            f"Reference {reference} already backs collection {existing.id}",
                            reference=reference,
                            collection_id=existing.id,
                        )

                    if amount_paise > receivable.balance_paise:
                        raise OverpaymentError(
                            f"Payment of {amount_paise} exceeds balance {receivable.balance_paise}",
                            amount_paise=amount_paise,
                            balance_paise=receivable.balance_paise,
                        )

                    record = CollectionRecord(
                        receivable_id=receivable.id,
                        invoice_id=invoice.id,
                        client_id=receivable.client_id,
                        amount_paise=amount_paise,
                        mode=mode.value,
                        reference=reference,
                        payment_date=payment_date,
                        status=CollectionStatus.SUCCESS.value,
                        gateway_payment_id=gateway_payment_id,
                        self_service=self_service,
                        recorded_by=actor.user_id,
                    )
                    session.add(record)
                    await session.flush()

                    receivable.amount_paid_paise += amount_paise
                    rebalance(receivable)
                    sync_invoice_status(invoice, receivable)

        return PaymentOutcome(record, receivable)

    async def _resolve_reference_race(
        self,
        actor: Actor,
        receivable_id: str,
        reference: str,
        self_service: bool
    ) -> PaymentOutcome:
        async with self.session_factory() as session:
            existing = await repo.successful_collection(session, reference)
            receivable = await repo.get_or_404(session, Receivable, receivable_id)
        if existing is not None and self_service and existing.receivable_id == receivable_id:
            return PaymentOutcome(existing, receivable, duplicate=True)
        raise DuplicateReferenceError(
            f"Reference {reference} already backs a successful collection",
            reference=reference,
        )

    async def record_failed_payment(
        self,
        actor: Actor,
        receivable_id: str,
        amount_paise: int,
        reference: str,
        failure_reason: str,
        gateway_payment_id: Optional[str] = None
    ) -> CollectionRecord:
        """Log a gateway-reported failure; the ledger does not move."""
        reference = (reference or "").strip()
        with tracer.start_as_current_span("collection_record_failure") as span:
            span.set_attribute("receivable_id", receivable_id)
            try:
                self_service = self._authorize_payment(actor, CollectionMode.GATEWAY)
                _validate_payment_input(amount_paise, reference)
                async with self.session_factory() as session:
                    async with session.begin():
                        receivable = await repo.get_or_404(session, Receivable, receivable_id)
                        if self_service:
                            actor.require_owner(receivable.client_id, "pay receivables")
                        record = CollectionRecord(
                            receivable_id=receivable.id,
                            invoice_id=receivable.invoice_id,
                            client_id=receivable.client_id,
                            amount_paise=amount_paise,
                            mode=CollectionMode.GATEWAY.value,
                            reference=reference,
                            payment_date=dt.date.today(),
                            status=CollectionStatus.FAILED.value,
                            gateway_payment_id=gateway_payment_id,
                            self_service=self_service,
                            failure_reason=failure_reason,
                            recorded_by=actor.user_id,
                        )
                        session.add(record)
            except LedgerError as e:
                await self._rejected("record_failed_payment", actor, e, receivable_id=receivable_id)
                raise

            payments_total.labels(mode=CollectionMode.GATEWAY.value, outcome="failed").inc()
            await self._record(
                actor,
                f"Gateway payment failure recorded against receivable {receivable_id}",
                receivable_id=receivable_id,
                collection_id=record.id,
                reference=reference,
                failure_reason=failure_reason,
            )
            return record


    # ==== REVERSALS ==== #


    async def reverse_payment(self, actor: Actor, collection_id: str, reason: str) -> PaymentOutcome:
        """
        Reverse a successful collection, restoring the prior balance and status.

        Raises:
            UnauthorizedError: Actor lacks the reversal capability
            InvalidStateError: Collection is not SUCCESS, or the receivable is void
        """
        with tracer.start_as_current_span("collection_reverse_payment") as span:
            span.set_attribute("collection_id", collection_id)
            try:
                actor.require(Capability.REVERSE_PAYMENT, "reverse payments")
                if not reason or not reason.strip():
                    raise ValidationError("A reversal needs a reason")

                async with self.session_factory() as session:
                    invoice_id = (await repo.get_or_404(session, CollectionRecord, collection_id)).invoice_id

                async with self.locks.hold(invoice_lock(invoice_id)):
                    async with self.session_factory() as session:
                        async with session.begin():
                            invoice = await repo.get_for_update(session, Invoice, invoice_id)
                            record = await repo.get_for_update(session, CollectionRecord, collection_id)
                            receivable = await repo.get_for_update(session, Receivable, record.receivable_id)
                            ensure_mutable(receivable)

                            record.status = COLLECTION_LIFECYCLE.ensure(
                                record.status, CollectionStatus.REVERSED, record.id
                            )
                            record.reversed_by = actor.user_id
                            record.reversed_at = utcnow()
                            record.reversal_reason = reason.strip()

                            receivable.amount_paid_paise -= record.amount_paise
                            rebalance(receivable)
                            sync_invoice_status(invoice, receivable)
            except LedgerError as e:
                await self._rejected("reverse_payment", actor, e, collection_id=collection_id)
                raise

            payment_reversals_total.inc()
            await self._record(
                actor,
                f"Collection {collection_id} reversed",
                collection_id=collection_id,
                receivable_id=receivable.id,
                amount_paise=record.amount_paise,
                reason=record.reversal_reason,
                balance_paise=receivable.balance_paise,
                status=receivable.status,
            )
            return PaymentOutcome(record, receivable)
