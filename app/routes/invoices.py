# ==== INVOICE ROUTES ==== #

"""
Invoice endpoints: billable preview, drafts, lifecycle transitions,
disputes and CSV export.
"""

import datetime as dt

from fastapi import APIRouter, Depends, Query, Response

from app.observability.tracing import get_tracer
from app.routes.deps import get_invoice_service, get_receivable_ledger
from app.schemas.ledger import (
    BillablePreviewResponse,
    BillableShipmentResponse,
    DisputeRequest,
    DraftInvoiceRequest,
    InvoiceResponse,
    ReceivableResponse,
    ResolveDisputeRequest,
)
from app.security.auth import Actor, get_current_actor
from app.services.invoice_export import export_filename, export_invoice_csv
from app.services.invoice_service import InvoiceService
from app.services.receivable_ledger import ReceivableLedger


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)


# ==== DRAFTING ==== #


@router.get("/billable-shipments", response_model=BillablePreviewResponse)
async def preview_billable_shipments(
    client_id: str = Query(..., description="Client to bill"),
    period_start: dt.date = Query(..., description="First day of the period"),
    period_end: dt.date = Query(..., description="Last day of the period"),
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> BillablePreviewResponse:
    """
    List unbilled shipments of a period with their computed charges.

    Returns:
        BillablePreviewResponse: Shipments, per-shipment charges and subtotal
    """
    preview = await service.billable_shipments(actor, client_id, period_start, period_end)
    return BillablePreviewResponse(
        client_id=preview.client_id,
        period_start=preview.period_start,
        period_end=preview.period_end,
        shipments=[
            BillableShipmentResponse(
                shipment_id=shipment.id,
                awb=shipment.awb,
                status=shipment.status,
                closed_at=shipment.closed_at,
                freight_paise=charge.freight_paise,
                fees_paise=charge.fees_paise,
                net_paise=charge.net_paise,
            )
            for shipment, charge in zip(preview.shipments, preview.charges)
        ],
        subtotal_paise=preview.subtotal_paise,
    )


@router.post("/drafts", response_model=InvoiceResponse, status_code=201)
async def create_draft(
    request: DraftInvoiceRequest,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> InvoiceResponse:
    """
    Create a draft invoice from a client's closed shipments.

    Args:
        request (DraftInvoiceRequest): Client, period and optional shipment set

    Returns:
        InvoiceResponse: The draft with computed amounts
    """
    with tracer.start_as_current_span("api_create_draft") as span:
        span.set_attribute("client_id", request.client_id)
        invoice = await service.create_draft(
            actor,
            request.client_id,
            request.period_start,
            request.period_end,
            request.shipment_ids,
        )
        return InvoiceResponse.model_validate(invoice)


# ==== LIFECYCLE ==== #


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> InvoiceResponse:
    return InvoiceResponse.model_validate(await service.get(actor, invoice_id))


@router.post("/{invoice_id}/finalize", response_model=InvoiceResponse)
async def finalize_invoice(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> InvoiceResponse:
    return InvoiceResponse.model_validate(await service.finalize(actor, invoice_id))


@router.post("/{invoice_id}/send", response_model=ReceivableResponse)
async def send_invoice(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> ReceivableResponse:
    """Send a generated invoice; responds with the receivable it opens."""
    return ReceivableResponse.build(await service.send(actor, invoice_id))


@router.get("/{invoice_id}/receivable", response_model=ReceivableResponse)
async def get_invoice_receivable(
    invoice_id: str,
    as_of: dt.date = Query(None, description="Date overdue is judged at"),
    actor: Actor = Depends(get_current_actor),
    ledger: ReceivableLedger = Depends(get_receivable_ledger)
) -> ReceivableResponse:
    return ReceivableResponse.build(await ledger.for_invoice(actor, invoice_id), as_of)


# ==== DISPUTES ==== #


@router.post("/{invoice_id}/dispute", response_model=InvoiceResponse)
async def raise_dispute(
    invoice_id: str,
    request: DisputeRequest,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> InvoiceResponse:
    return InvoiceResponse.model_validate(
        await service.raise_dispute(actor, invoice_id, request.reason)
    )


@router.post("/{invoice_id}/resolve-dispute", response_model=InvoiceResponse)
async def resolve_dispute(
    invoice_id: str,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> InvoiceResponse:
    """
    Resolve a dispute by accepting the original invoice or voiding it.

    Args:
        invoice_id (str): Disputed invoice
        request (ResolveDisputeRequest): Resolution and optional note

    Returns:
        InvoiceResponse: Invoice after resolution
    """
    invoice = await service.resolve_dispute(actor, invoice_id, request.resolution, request.note)
    return InvoiceResponse.model_validate(invoice)


# ==== EXPORT ==== #


@router.get("/{invoice_id}/export.csv")
async def export_invoice(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    service: InvoiceService = Depends(get_invoice_service)
) -> Response:
    invoice = await service.get(actor, invoice_id)
    return Response(
        content=export_invoice_csv(invoice),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(invoice)}"'},
    )
