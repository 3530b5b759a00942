# ==== LEDGER ERROR TAXONOMY ==== #

"""
Error taxonomy for billing, receivables and collections.

Every error is terminal for the current request. Each class carries a stable
machine-readable ``code`` and the HTTP status the API layer renders it with.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger business errors."""

    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(LedgerError):
    """Malformed input: zero/negative amount, missing reason, bad period."""

    code = "VALIDATION_ERROR"
    status_code = 400


class UnauthorizedError(LedgerError):
    """Wrong role for the operation, or acting on another client's records."""

    code = "UNAUTHORIZED"
    status_code = 403


class InvalidStateError(LedgerError):
    """Illegal lifecycle transition."""

    code = "INVALID_STATE"
    status_code = 409

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **context: Any
    ):
        super().__init__(message, **context)
        self.entity = entity
        self.current = current
        self.target = target


class DuplicateReferenceError(LedgerError):
    """A payment reference already backs a successful collection."""

    code = "DUPLICATE_REFERENCE"
    status_code = 409


class OverpaymentError(LedgerError):
    """Payment amount exceeds the receivable balance."""

    code = "OVERPAYMENT"
    status_code = 422


class DisputedReceivableError(LedgerError):
    """Payment attempted against a disputed receivable."""

    code = "DISPUTED_RECEIVABLE"
    status_code = 409


class NoApplicableRateError(LedgerError):
    """No rate card rule prices the shipment."""

    code = "NO_APPLICABLE_RATE"
    status_code = 422


class NotFoundError(LedgerError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class LedgerLockTimeout(LedgerError):
    """The per-entity ledger lock could not be acquired in time."""

    code = "LEDGER_BUSY"
    status_code = 503
