"""Human-readable document numbers drawn from locked sequence rows."""

import datetime as dt

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.policy_loader import BillingPolicy
from app.storage.repositories import next_sequence_value


async def next_invoice_number(session: AsyncSession, policy: BillingPolicy, at: dt.datetime) -> str:
    """``INV/<year>/<seq>``; the counter restarts every calendar year."""
    scope = f"{policy.invoice_prefix}/{at.year}"
    seq = await next_sequence_value(session, scope)
    return f"{scope}/{seq:0{policy.invoice_padding}d}"


async def next_note_number(session: AsyncSession, policy: BillingPolicy, note_type: str) -> str:
    """``CN-000001`` for credit notes, ``DN-000001`` for debit notes."""
    prefix = policy.credit_note_prefix if note_type == "CREDIT" else policy.debit_note_prefix
    seq = await next_sequence_value(session, prefix)
    return f"{prefix}-{seq:0{policy.note_padding}d}"
