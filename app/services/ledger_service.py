# ==== LEDGER SERVICE BASE ==== #

"""
Shared plumbing of the mutating ledger services.

Each operation is one unit of work: take the entity lock, open a
transaction, re-read rows ``FOR UPDATE``, validate, write, commit, and only
then report to the compliance sink. Rejections are reported and counted
before the error is re-raised to the caller.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.business.errors import LedgerError
from app.observability.logging import get_logger
from app.observability.metrics import ledger_errors_total
from app.security.auth import Actor
from app.services.compliance import ComplianceSink, EventType
from app.services.ledger_lock import LedgerLockManager, get_lock_manager
from app.services.policy_loader import BillingPolicy, get_billing_policy


logger = get_logger(__name__)


def invoice_lock(invoice_id: str) -> str:
    """Lock key covering an invoice and its receivable."""
    return f"invoice:{invoice_id}"


class LedgerService:
    """
    Base class wiring sessions, locks, policy and the compliance sink.

    Args:
        session_factory (async_sessionmaker): Source of database sessions
        sink (ComplianceSink): Audit destination
        locks (Optional[LedgerLockManager]): Per-entity lock manager
        policy (Optional[BillingPolicy]): Billing policy
    """

    ok_event: EventType
    rejected_event: EventType

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: ComplianceSink,
        locks: Optional[LedgerLockManager] = None,
        policy: Optional[BillingPolicy] = None,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.locks = locks or get_lock_manager()
        self.policy = policy or get_billing_policy()

    async def _record(self, actor: Actor, message: str, **metadata: Any) -> None:
        logger.info(message, **actor.audit_fields(), **metadata)
        await self.sink.log_event(self.ok_event, actor, message, metadata)

    async def _rejected(self, operation: str, actor: Actor, error: LedgerError, **metadata: Any) -> None:
        ledger_errors_total.labels(operation=operation, code=error.code).inc()
        logger.warning(
            f"{operation} rejected: {error.message}",
            operation=operation,
            error_code=error.code,
            **actor.audit_fields(),
            **metadata
        )
        await self.sink.log_event(
            self.rejected_event,
            actor,
            f"{operation} rejected: {error.message}",
            {"operation": operation, "error_code": error.code, **metadata},
        )
