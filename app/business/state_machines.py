# ==== LIFECYCLE STATE MACHINES ==== #

"""
Explicit status-transition tables for ledger entities.

Every status change in the services goes through ``StateMachine.ensure``;
a transition missing from the table is rejected with ``InvalidStateError``.
"""

from enum import Enum
from typing import Dict, FrozenSet, Mapping

from app.business.errors import InvalidStateError


# ==== STATUS ENUMERATIONS ==== #


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATED = "GENERATED"
    SENT = "SENT"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    VOID = "VOID"


class ReceivableStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"  # derived at read time, never stored
    DISPUTED = "DISPUTED"
    VOID = "VOID"


class NoteStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ISSUED = "ISSUED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


class CollectionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


# ==== STATE MACHINE ==== #


class StateMachine:
    """Transition table for one entity type."""

    def __init__(self, entity: str, transitions: Mapping[Enum, FrozenSet[Enum]]):
        self.entity = entity
        self._transitions: Dict[str, FrozenSet[str]] = {
            source.value: frozenset(target.value for target in targets)
            for source, targets in transitions.items()
        }

    def can(self, current: str, target: str) -> bool:
        return target in self._transitions.get(_value(current), frozenset())

    def ensure(self, current: str, target: str, entity_id: object = None) -> str:
        """
        Validate a transition and return the target status value.

        Raises:
            InvalidStateError: If ``current -> target`` is not in the table
        """
        current, target = _value(current), _value(target)
        if not self.can(current, target):
            label = f"{self.entity} {entity_id}" if entity_id is not None else self.entity
            raise InvalidStateError(
                f"{label} cannot move from {current} to {target}",
                entity=self.entity,
                current=current,
                target=target,
                entity_id=entity_id,
            )
        return target

    def is_terminal(self, status: str) -> bool:
        return not self._transitions.get(_value(status))


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


# ==== TRANSITION TABLES ==== #


INVOICE_LIFECYCLE = StateMachine("Invoice", {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.GENERATED}),
    InvoiceStatus.GENERATED: frozenset({InvoiceStatus.SENT, InvoiceStatus.DISPUTED}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.DISPUTED}),
    # a reversed payment re-opens the balance
    InvoiceStatus.PAID: frozenset({InvoiceStatus.SENT}),
    InvoiceStatus.DISPUTED: frozenset({
        InvoiceStatus.GENERATED,
        InvoiceStatus.SENT,
        InvoiceStatus.VOID,
    }),
    InvoiceStatus.VOID: frozenset(),
})

_SETTLEMENT = frozenset({
    ReceivableStatus.OPEN,
    ReceivableStatus.PARTIALLY_PAID,
    ReceivableStatus.PAID,
})

RECEIVABLE_LIFECYCLE = StateMachine("Receivable", {
    ReceivableStatus.OPEN: _SETTLEMENT | {ReceivableStatus.DISPUTED},
    ReceivableStatus.PARTIALLY_PAID: _SETTLEMENT | {ReceivableStatus.DISPUTED},
    ReceivableStatus.PAID: _SETTLEMENT,
    ReceivableStatus.DISPUTED: _SETTLEMENT | {ReceivableStatus.VOID},
    ReceivableStatus.VOID: frozenset(),
})

NOTE_LIFECYCLE = StateMachine("FinancialNote", {
    NoteStatus.DRAFT: frozenset({NoteStatus.PENDING_APPROVAL, NoteStatus.REJECTED}),
    NoteStatus.PENDING_APPROVAL: frozenset({NoteStatus.ISSUED, NoteStatus.REJECTED}),
    NoteStatus.ISSUED: frozenset({NoteStatus.APPLIED}),
    NoteStatus.APPLIED: frozenset(),
    NoteStatus.REJECTED: frozenset(),
})

COLLECTION_LIFECYCLE = StateMachine("CollectionRecord", {
    CollectionStatus.SUCCESS: frozenset({CollectionStatus.REVERSED}),
    CollectionStatus.FAILED: frozenset(),
    CollectionStatus.REVERSED: frozenset(),
})
