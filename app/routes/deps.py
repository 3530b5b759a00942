# ==== ROUTE DEPENDENCIES ==== #

"""
FastAPI dependencies that wire ledger services to the shared session
factory, lock manager and compliance sink.
"""

from fastapi import Depends

from app.services.collection_processor import CollectionProcessor
from app.services.compliance import ComplianceSink, DatabaseComplianceSink
from app.services.invoice_service import InvoiceService
from app.services.ledger_lock import LedgerLockManager, get_lock_manager
from app.services.note_service import NoteService
from app.services.receivable_ledger import ReceivableLedger
from app.services.reporting import ReceivablesReport
from app.storage.db import get_session_factory


def get_compliance_sink() -> ComplianceSink:
    return DatabaseComplianceSink(get_session_factory())


def get_locks() -> LedgerLockManager:
    return get_lock_manager()


def get_invoice_service(
    sink: ComplianceSink = Depends(get_compliance_sink),
    locks: LedgerLockManager = Depends(get_locks)
) -> InvoiceService:
    return InvoiceService(get_session_factory(), sink, locks=locks)


def get_collection_processor(
    sink: ComplianceSink = Depends(get_compliance_sink),
    locks: LedgerLockManager = Depends(get_locks)
) -> CollectionProcessor:
    return CollectionProcessor(get_session_factory(), sink, locks=locks)


def get_note_service(
    sink: ComplianceSink = Depends(get_compliance_sink),
    locks: LedgerLockManager = Depends(get_locks)
) -> NoteService:
    return NoteService(get_session_factory(), sink, locks=locks)


def get_receivable_ledger() -> ReceivableLedger:
    return ReceivableLedger(get_session_factory())


def get_receivables_report() -> ReceivablesReport:
    return ReceivablesReport(get_session_factory())
