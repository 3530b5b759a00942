"""SQLAlchemy models for the billing, receivables and collections ledger."""

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, JSON, Numeric,
    String, Text, text
)
from sqlalchemy.orm import Mapped, mapped_column

from app.storage.db import Base


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# ==== EXTERNAL FEED MIRRORS ==== #


class ClientRateCard(Base):
    """Versioned pricing policy for one client."""

    __tablename__ = "client_rate_cards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", nullable=False)
    effective_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    expires_on: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    # [{geo_type, shipment_type, base_rate_paise, rto_rate_paise, cod_fee_type, cod_fee_value, platform_fee_paise}]
    base_rules: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    # [{id, metric, condition, threshold, effect, adjustment_type, value, description}]
    sla_rules: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    sla_cap_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_rate_cards_client_effective", "client_id", "status", "effective_from"),
    )


class Shipment(Base):
    """Local mirror of the shipment feed; ``billed_invoice_id`` locks a shipment to one invoice."""

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    awb: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    geo_type: Mapped[str] = mapped_column(String(32), nullable=False)
    shipment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(16), default="PREPAID", nullable=False)
    cod_amount_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    closed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    billed_invoice_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("invoices.id"), nullable=True, index=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_shipments_client_status_closed", "client_id", "status", "closed_at"),
    )


class ClientSlaMetric(Base):
    """Observed SLA metric value for a client over a measurement window."""

    __tablename__ = "client_sla_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    period_end: Mapped[dt.date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ==== INVOICING ==== #


class Invoice(Base):
    """One invoice per client per billing period."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    rate_card_id: Mapped[str] = mapped_column(String(36), ForeignKey("client_rate_cards.id"), nullable=False)
    period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    period_end: Mapped[dt.date] = mapped_column(Date, nullable=False)

    # Amounts in paise
    subtotal_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sla_adjustment_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    cod_detected_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    shipment_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    sla_adjustments: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(16), default="DRAFT", nullable=False, index=True)
    status_before_dispute: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    generated_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    voided_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_invoices_client_period", "client_id", "period_start", "period_end"),
    )


class DocumentSequence(Base):
    """Monotonic counters for invoice and note numbers, one row per scope."""

    __tablename__ = "document_sequences"

    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# ==== RECEIVABLES AND COLLECTIONS ==== #


class Receivable(Base):
    """The money-owed record of one sent invoice."""

    __tablename__ = "receivables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    total_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credit_applied_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    debit_applied_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    balance_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    unapplied_credit_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    due_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="OPEN", nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_receivables_client_status", "client_id", "status"),
    )


class CollectionRecord(Base):
    """Append-only outcome of one payment attempt."""

    __tablename__ = "collection_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    receivable_id: Mapped[str] = mapped_column(String(36), ForeignKey("receivables.id"), nullable=False, index=True)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    reference: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    self_service: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    recorded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    reversed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reversed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    reversal_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # A reference backs at most one successful collection
        Index(
            "uq_collection_records_success_reference",
            "reference",
            unique=True,
            postgresql_where=text("status = 'SUCCESS'"),
            sqlite_where=text("status = 'SUCCESS'"),
        ),
        Index("ix_collection_records_reference", "reference"),
    )


# ==== CREDIT / DEBIT NOTES ==== #


class FinancialNote(Base):
    """Credit or debit note correcting a receivable's balance."""

    __tablename__ = "financial_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    note_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    note_type: Mapped[str] = mapped_column(String(8), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount_paise: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_amount_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unapplied_amount_paise: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    # Set on system-issued notes; each purpose occurs at most once per invoice
    purpose: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    applied_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("uq_financial_notes_invoice_purpose", "invoice_id", "purpose", unique=True),
    )


# ==== COMPLIANCE ==== #


class ComplianceEvent(Base):
    """Append-only audit trail of ledger operations."""

    __tablename__ = "compliance_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
