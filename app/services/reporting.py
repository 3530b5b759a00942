# ==== RECEIVABLES REPORTING ==== #

"""
Receivables summary for finance dashboards.

Two figures that are easy to conflate are reported under separate names:

- ``invoiced_in_period_paise``: total of receivables opened within the
  requested period (what was billed in that window)
- ``outstanding_balance_paise``: current balance of every non-void
  receivable, regardless of when it was opened (what is owed today)

Overdue balance and aging buckets are computed against ``as_of``.
"""

import datetime as dt
from typing import Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.business.errors import ValidationError
from app.business.state_machines import ReceivableStatus
from app.observability.tracing import get_tracer
from app.security.auth import Actor, Capability
from app.services.receivable_ledger import days_past_due, effective_status
from app.storage.models import Receivable


tracer = get_tracer(__name__)

AGING_BUCKETS = ("current", "1_30", "31_60", "61_90", "90_plus")


class ReceivablesSummary(BaseModel):
    client_id: Optional[str] = None
    period_start: dt.date
    period_end: dt.date
    as_of: dt.date
    invoiced_in_period_paise: int = 0
    outstanding_balance_paise: int = 0
    overdue_balance_paise: int = 0
    collected_paise: int = 0
    unapplied_credit_paise: int = 0
    receivable_count: int = 0
    aging_paise: Dict[str, int] = Field(default_factory=lambda: {b: 0 for b in AGING_BUCKETS})


def aging_bucket(days: int) -> str:
    if days <= 0:
        return "current"
    if days <= 30:
        return "1_30"
    if days <= 60:
        return "31_60"
    if days <= 90:
        return "61_90"
    return "90_plus"


class ReceivablesReport:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def summary(
        self,
        actor: Actor,
        period_start: dt.date,
        period_end: dt.date,
        client_id: Optional[str] = None,
        as_of: Optional[dt.date] = None
    ) -> ReceivablesSummary:
        """
        Summarize receivables for a period.

        Args:
            actor (Actor): Viewer; clients only see their own figures
            period_start (dt.date): First day counted as invoiced in period
            period_end (dt.date): Last day counted as invoiced in period
            client_id (Optional[str]): Restrict to one client
            as_of (Optional[dt.date]): Date overdue and aging are judged at

        Returns:
            ReceivablesSummary: Period and point-in-time figures
        """
        actor.require(Capability.VIEW_LEDGER, "view receivables")
        if actor.is_client:
            client_id = client_id or actor.client_id
            actor.require_owner(client_id, "view receivables")
        if period_start > period_end:
            raise ValidationError("Reporting period start is after its end")

        as_of = as_of or dt.date.today()
        with tracer.start_as_current_span("receivables_summary") as span:
            stmt = select(Receivable)
            if client_id:
                stmt = stmt.where(Receivable.client_id == client_id)
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()

            summary = ReceivablesSummary(
                client_id=client_id,
                period_start=period_start,
                period_end=period_end,
                as_of=as_of,
            )
            for receivable in rows:
                opened_on = receivable.created_at.date()
                if period_start <= opened_on <= period_end:
                    summary.invoiced_in_period_paise += receivable.total_paise

                if receivable.status == ReceivableStatus.VOID.value:
                    continue

                summary.receivable_count += 1
                summary.collected_paise += receivable.amount_paid_paise
                summary.unapplied_credit_paise += receivable.unapplied_credit_paise
                summary.outstanding_balance_paise += receivable.balance_paise
                if receivable.balance_paise > 0:
                    bucket = aging_bucket(days_past_due(receivable, as_of))
                    summary.aging_paise[bucket] += receivable.balance_paise
                if effective_status(receivable, as_of) == ReceivableStatus.OVERDUE:
                    summary.overdue_balance_paise += receivable.balance_paise

            span.set_attribute("receivable_count", summary.receivable_count)
            return summary
