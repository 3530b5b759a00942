# ==== NOTE ROUTES ==== #

"""
Credit and debit note endpoints: creation, approval flow and application.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.observability.tracing import get_tracer
from app.routes.deps import get_note_service
from app.schemas.ledger import (
    NoteApplicationResponse,
    NoteCreateRequest,
    NoteRejectRequest,
    NoteResponse,
    ReceivableResponse,
)
from app.security.auth import Actor, get_current_actor
from app.services.note_service import NoteService


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)


# ==== NOTE ENDPOINTS ==== #


@router.get("", response_model=List[NoteResponse])
async def list_notes(
    client_id: Optional[str] = Query(None, description="Filter by client"),
    invoice_id: Optional[str] = Query(None, description="Filter by invoice"),
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> List[NoteResponse]:
    notes = await service.list_notes(actor, client_id, invoice_id)
    return [NoteResponse.model_validate(n) for n in notes]


@router.post("", response_model=NoteResponse, status_code=201)
async def create_note(
    request: NoteCreateRequest,
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> NoteResponse:
    """
    Raise a credit or debit note against a sent invoice.

    Args:
        request (NoteCreateRequest): Type, invoice, amount and reason

    Returns:
        NoteResponse: The note, pending approval unless ``submit`` is false
    """
    with tracer.start_as_current_span("api_create_note") as span:
        span.set_attribute("invoice_id", request.invoice_id)
        note = await service.create(
            actor,
            request.note_type,
            request.invoice_id,
            request.amount_paise,
            request.reason,
            submit=request.submit,
        )
        return NoteResponse.model_validate(note)


@router.post("/{note_id}/submit", response_model=NoteResponse)
async def submit_note(
    note_id: str,
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> NoteResponse:
    return NoteResponse.model_validate(await service.submit(actor, note_id))


@router.post("/{note_id}/approve", response_model=NoteResponse)
async def approve_note(
    note_id: str,
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> NoteResponse:
    return NoteResponse.model_validate(await service.approve(actor, note_id))


@router.post("/{note_id}/reject", response_model=NoteResponse)
async def reject_note(
    note_id: str,
    request: NoteRejectRequest,
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> NoteResponse:
    return NoteResponse.model_validate(await service.reject(actor, note_id, request.reason))


@router.post("/{note_id}/apply", response_model=NoteApplicationResponse)
async def apply_note(
    note_id: str,
    actor: Actor = Depends(get_current_actor),
    service: NoteService = Depends(get_note_service)
) -> NoteApplicationResponse:
    """Apply an issued note to its receivable; repeating the call is a no-op."""
    application = await service.apply(actor, note_id)
    return NoteApplicationResponse(
        note=NoteResponse.model_validate(application.note),
        receivable=ReceivableResponse.build(application.receivable),
        already_applied=application.already_applied,
    )
