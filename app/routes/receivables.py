# ==== RECEIVABLE ROUTES ==== #

"""
Read-only receivable endpoints: listings, period summary, detail and
collection history.
"""

import datetime as dt
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.business.state_machines import ReceivableStatus
from app.observability.tracing import get_tracer
from app.routes.deps import get_receivable_ledger, get_receivables_report
from app.schemas.ledger import CollectionResponse, ReceivableResponse
from app.security.auth import Actor, get_current_actor
from app.services.receivable_ledger import ReceivableLedger
from app.services.reporting import ReceivablesReport, ReceivablesSummary


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)


# ==== LISTINGS ==== #


@router.get("", response_model=List[ReceivableResponse])
async def list_receivables(
    client_id: Optional[str] = Query(None, description="Filter by client"),
    status: Optional[ReceivableStatus] = Query(None, description="Filter by status, OVERDUE included"),
    as_of: Optional[dt.date] = Query(None, description="Date overdue is judged at"),
    actor: Actor = Depends(get_current_actor),
    ledger: ReceivableLedger = Depends(get_receivable_ledger)
) -> List[ReceivableResponse]:
    """
    List receivables, newest first.

    Args:
        client_id (Optional[str]): Client filter; clients only see their own
        status (Optional[ReceivableStatus]): Status filter
        as_of (Optional[dt.date]): Reference date for the OVERDUE derivation

    Returns:
        List[ReceivableResponse]: Matching receivables
    """
    with tracer.start_as_current_span("api_list_receivables") as span:
        rows = await ledger.list_for_client(actor, client_id, status, as_of)
        span.set_attribute("result_count", len(rows))
        return [ReceivableResponse.build(r, as_of) for r in rows]


@router.get("/summary", response_model=ReceivablesSummary)
async def receivables_summary(
    period_start: dt.date = Query(..., description="First day of the period"),
    period_end: dt.date = Query(..., description="Last day of the period"),
    client_id: Optional[str] = Query(None, description="Restrict to one client"),
    as_of: Optional[dt.date] = Query(None, description="Date overdue and aging are judged at"),
    actor: Actor = Depends(get_current_actor),
    report: ReceivablesReport = Depends(get_receivables_report)
) -> ReceivablesSummary:
    return await report.summary(actor, period_start, period_end, client_id, as_of)


# ==== DETAIL ==== #


@router.get("/{receivable_id}", response_model=ReceivableResponse)
async def get_receivable(
    receivable_id: str,
    as_of: Optional[dt.date] = Query(None, description="Date overdue is judged at"),
    actor: Actor = Depends(get_current_actor),
    ledger: ReceivableLedger = Depends(get_receivable_ledger)
) -> ReceivableResponse:
    return ReceivableResponse.build(await ledger.get(actor, receivable_id), as_of)


@router.get("/{receivable_id}/collections", response_model=List[CollectionResponse])
async def list_collections(
    receivable_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: ReceivableLedger = Depends(get_receivable_ledger)
) -> List[CollectionResponse]:
    """Every collection attempt on a receivable, oldest first."""
    records = await ledger.collections(actor, receivable_id)
    return [CollectionResponse.model_validate(r) for r in records]
