# ==== COMPLIANCE SINK ==== #

"""
Append-only audit trail for ledger operations.

Every successful mutation and every rejected attempt is reported here after
the business transaction has settled. Reporting is fire-and-forget: a sink
failure is logged and counted but never reaches the caller, and never rolls
back the ledger change it describes.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.correlation import get_correlation_id
from app.observability.logging import get_logger, log_business_event
from app.observability.metrics import compliance_sink_failures_total
from app.security.auth import Actor
from app.storage.models import ComplianceEvent


logger = get_logger(__name__)


class EventType(str, Enum):
    BILLING_OP = "BILLING_OP"
    BILLING_REJECTED = "BILLING_REJECTED"
    COLLECTION_OP = "COLLECTION_OP"
    COLLECTION_REJECTED = "COLLECTION_REJECTED"
    NOTE_OP = "NOTE_OP"
    NOTE_REJECTED = "NOTE_REJECTED"


# ==== SINK INTERFACE ==== #


class ComplianceSink(ABC):
    """Destination for compliance events."""

    name = "abstract"

    async def log_event(
        self,
        event_type: EventType,
        actor: Actor,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record one event without ever raising.

        Args:
            event_type (EventType): Category of the event
            actor (Actor): Who performed the operation
            message (str): Human-readable summary
            metadata (Optional[Dict[str, Any]]): Entity ids, amounts, outcome
        """
        event_type = EventType(event_type)
        try:
            await self._write(event_type, actor, message, metadata or {})
        except Exception as e:
            compliance_sink_failures_total.labels(
                sink=self.name,
                event_type=event_type.value
            ).inc()
            logger.error(
                "Compliance event could not be recorded",
                sink=self.name,
                event_type=event_type.value,
                event_message=message,
                error=str(e),
                **actor.audit_fields()
            )

    @abstractmethod
    async def _write(
        self,
        event_type: EventType,
        actor: Actor,
        message: str,
        metadata: Dict[str, Any]
    ) -> None:
        ...


# ==== IMPLEMENTATIONS ==== #


class DatabaseComplianceSink(ComplianceSink):
    """Appends rows to ``compliance_events`` in a session of its own."""

    name = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _write(self, event_type, actor, message, metadata) -> None:
        async with self.session_factory() as session:
            session.add(ComplianceEvent(
                event_type=event_type.value,
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                message=message,
                event_metadata=_jsonable(metadata),
                correlation_id=get_correlation_id(),
            ))
            await session.commit()


class LoggingComplianceSink(ComplianceSink):
    """Emits structured business events through loguru."""

    name = "logging"

    async def _write(self, event_type, actor, message, metadata) -> None:
        log_business_event(
            event_type.value,
            actor.user_id,
            actor_role=actor.role.value,
            compliance_message=message,
            correlation_id=get_correlation_id(),
            **_jsonable(metadata)
        )



def _jsonable(metadata: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, Enum):
            value = value.value
        elif value is not None and not isinstance(value, (str, int, float, bool, list, dict)):
            value = str(value)
        out[key] = value
    return out
