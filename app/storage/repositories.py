# ==== LEDGER REPOSITORIES ==== #

"""
Entity-keyed data access for the ledger.

Every mutation path reads its row with ``SELECT ... FOR UPDATE`` inside the
caller's transaction; nothing here loads or rewrites whole collections.
"""

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.errors import NotFoundError
from app.storage.models import (
    ClientRateCard,
    ClientSlaMetric,
    CollectionRecord,
    DocumentSequence,
    Receivable,
    Shipment,
)


ModelT = TypeVar("ModelT")


# ==== GENERIC ROW ACCESS ==== #


async def get_for_update(
    session: AsyncSession,
    model: Type[ModelT],
    entity_id: str,
    label: Optional[str] = None
) -> ModelT:
    """
    Fetch one row by primary key and lock it for the transaction.

    Raises:
        NotFoundError: If no row has ``entity_id``
    """
    row = (
        await session.execute(
            select(model).where(model.id == entity_id).with_for_update()
        )
    ).scalar_one_or_none()
    if row is None:
        name = label or model.__name__
        raise NotFoundError(f"{name} {entity_id} not found", entity=name, entity_id=entity_id)
    return row


async def get_or_404(session: AsyncSession, model: Type[ModelT], entity_id: str) -> ModelT:
    row = await session.get(model, entity_id)
    if row is None:
        raise NotFoundError(
            f"{model.__name__} {entity_id} not found",
            entity=model.__name__,
            entity_id=entity_id
        )
    return row


async def receivable_for_invoice(
    session: AsyncSession,
    invoice_id: str,
    for_update: bool = False
) -> Optional[Receivable]:
    stmt = select(Receivable).where(Receivable.invoice_id == invoice_id)
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


# ==== DOCUMENT NUMBERING ==== #


async def next_sequence_value(session: AsyncSession, scope: str) -> int:
    """
    Increment and return the counter for ``scope``.

    The sequence row stays locked until the caller's transaction ends, so
    two finalizations can never draw the same number.
    """
    seq = (
        await session.execute(
            select(DocumentSequence)
            .where(DocumentSequence.scope == scope)
            .with_for_update()
        )
    ).scalar_one_or_none()

    if seq is None:
        seq = DocumentSequence(scope=scope, last_value=0)
        session.add(seq)

    seq.last_value += 1
    await session.flush()
    return seq.last_value


# ==== PRICING INPUTS ==== #


async def active_rate_card(
    session: AsyncSession,
    client_id: str,
    as_of: dt.date
) -> Optional[ClientRateCard]:
    """Latest ACTIVE rate card whose validity window contains ``as_of``."""
    stmt = (
        select(ClientRateCard)
        .where(
            ClientRateCard.client_id == client_id,
            ClientRateCard.status == "ACTIVE",
            ClientRateCard.effective_from <= as_of,
            or_(ClientRateCard.expires_on.is_(None), ClientRateCard.expires_on >= as_of),
        )
        .order_by(ClientRateCard.effective_from.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def sla_metrics_for_period(
    session: AsyncSession,
    client_id: str,
    start: dt.date,
    end: dt.date
) -> Dict[str, Decimal]:
    """Latest observed value per metric among windows overlapping the period."""
    rows = (
        await session.execute(
            select(ClientSlaMetric)
            .where(
                ClientSlaMetric.client_id == client_id,
                ClientSlaMetric.period_start <= end,
                ClientSlaMetric.period_end >= start,
            )
            .order_by(ClientSlaMetric.recorded_at)
        )
    ).scalars().all()
    return {row.metric: row.value for row in rows}


# ==== SHIPMENTS ==== #


async def billable_shipments(
    session: AsyncSession,
    client_id: str,
    start: dt.date,
    end: dt.date,
    statuses: Sequence[str]
) -> List[Shipment]:
    """Closed, unbilled shipments of a client whose closure falls in the period."""
    period_start = dt.datetime.combine(start, dt.time.min)
    period_end = dt.datetime.combine(end + dt.timedelta(days=1), dt.time.min)
    stmt = (
        select(Shipment)
        .where(
            Shipment.client_id == client_id,
            Shipment.status.in_(list(statuses)),
            Shipment.closed_at >= period_start,
            Shipment.closed_at < period_end,
            Shipment.billed_invoice_id.is_(None),
        )
        .order_by(Shipment.awb)
    )
    return list((await session.execute(stmt)).scalars().all())


async def tag_shipments(session: AsyncSession, shipment_ids: Sequence[str], invoice_id: str) -> int:
    """Attach unbilled shipments to an invoice; returns how many rows were claimed."""
    result = await session.execute(
        update(Shipment)
        .where(
            and_(
                Shipment.id.in_(list(shipment_ids)),
                Shipment.billed_invoice_id.is_(None),
            )
        )
        .values(billed_invoice_id=invoice_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def release_shipments(session: AsyncSession, invoice_id: str) -> int:
    result = await session.execute(
        update(Shipment)
        .where(Shipment.billed_invoice_id == invoice_id)
        .values(billed_invoice_id=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ==== COLLECTIONS ==== #


async def successful_collection(session: AsyncSession, reference: str) -> Optional[CollectionRecord]:
    return (
        await session.execute(
            select(CollectionRecord).where(
                CollectionRecord.reference == reference,
                CollectionRecord.status == "SUCCESS",
            )
        )
    ).scalar_one_or_none()

