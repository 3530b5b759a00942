"""Pydantic schemas for the billing, receivables and collections API."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.business.state_machines import ReceivableStatus
from app.services.collection_processor import CollectionMode
from app.services.invoice_service import DisputeResolution
from app.services.note_service import NoteType
from app.services.receivable_ledger import effective_status


# ==== REQUESTS ==== #


class DraftInvoiceRequest(BaseModel):
    """Create a draft invoice for a client and period."""

    client_id: str
    period_start: date
    period_end: date
    shipment_ids: Optional[List[str]] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "client_id": "client-acme",
            "period_start": "2025-01-01",
            "period_end": "2025-01-31",
        }
    })


class DisputeRequest(BaseModel):
    reason: str


class ResolveDisputeRequest(BaseModel):
    resolution: DisputeResolution
    note: Optional[str] = None


class PaymentRequest(BaseModel):
    """Payment submission; amounts are integer paise."""

    receivable_id: str
    amount_paise: int
    mode: CollectionMode
    reference: str
    payment_date: Optional[date] = None
    gateway_payment_id: Optional[str] = None


class ReversalRequest(BaseModel):
    reason: str


class NoteCreateRequest(BaseModel):
    note_type: NoteType
    invoice_id: str
    amount_paise: int
    reason: str
    submit: bool = True


class NoteRejectRequest(BaseModel):
    reason: Optional[str] = None


class GatewayPaymentPayload(BaseModel):
    receivable_id: str
    client_id: str
    amount_paise: int
    reference: str
    gateway_payment_id: str
    customer_ref: Optional[str] = None
    failure_reason: Optional[str] = None


class GatewayWebhookEvent(BaseModel):
    """Payment provider callback (``payment.captured`` or ``payment.failed``)."""

    event: str
    payload: GatewayPaymentPayload


# ==== RESPONSES ==== #


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_number: Optional[str] = None
    client_id: str
    rate_card_id: str
    period_start: date
    period_end: date
    subtotal_paise: int
    tax_paise: int
    sla_adjustment_paise: int
    total_paise: int
    cod_detected_paise: int
    shipment_ids: List[str]
    sla_adjustments: List[Dict[str, Any]]
    status: str
    status_before_dispute: Optional[str] = None
    dispute_reason: Optional[str] = None
    created_at: datetime
    generated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None


class ReceivableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_id: str
    client_id: str
    total_paise: int
    amount_paid_paise: int
    credit_applied_paise: int
    debit_applied_paise: int
    balance_paise: int
    unapplied_credit_paise: int
    due_date: date
    status: ReceivableStatus
    created_at: datetime

    @classmethod
    def build(cls, receivable, as_of: Optional[date] = None) -> "ReceivableResponse":
        """Serialize with OVERDUE derived as of ``as_of``."""
        response = cls.model_validate(receivable)
        response.status = effective_status(receivable, as_of)
        return response


class CollectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    receivable_id: str
    invoice_id: str
    client_id: str
    amount_paise: int
    mode: str
    reference: str
    payment_date: date
    status: str
    gateway_payment_id: Optional[str] = None
    self_service: bool
    failure_reason: Optional[str] = None
    recorded_by: str
    recorded_at: datetime
    reversed_by: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None


class PaymentResponse(BaseModel):
    collection: CollectionResponse
    receivable: ReceivableResponse
    duplicate: bool = False


class NoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    note_number: str
    note_type: str
    invoice_id: str
    client_id: str
    amount_paise: int
    applied_amount_paise: int
    unapplied_amount_paise: int
    reason: str
    status: str
    purpose: Optional[str] = None
    created_by: str
    created_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None


class NoteApplicationResponse(BaseModel):
    note: NoteResponse
    receivable: ReceivableResponse
    already_applied: bool = False


class BillableShipmentResponse(BaseModel):
    shipment_id: str
    awb: str
    status: str
    closed_at: Optional[datetime] = None
    freight_paise: int
    fees_paise: int
    net_paise: int


class BillablePreviewResponse(BaseModel):
    client_id: str
    period_start: date
    period_end: date
    shipments: List[BillableShipmentResponse] = Field(default_factory=list)
    subtotal_paise: int = 0
