# ==== PREFECT NIGHTLY LEDGER INTEGRITY FLOW ==== #

"""
Prefect flow for the nightly receivables integrity check.

Recomputes every receivable balance from its components
(``total - paid - credits + debits``), raises an alert for any mismatch or
out-of-dispute negative balance, and logs the day's receivables position
with its aging breakdown. Before the check it raises the one-time overdue
penalty on receivables past the policy threshold, when the policy enables it.
"""

import argparse
import asyncio
import datetime as dt
from typing import Any, Dict, List

from prefect import flow, get_run_logger, task

from app.observability.logging import log_business_event
from app.security.auth import SYSTEM_ACTOR
from app.services.compliance import DatabaseComplianceSink
from app.services.note_service import NoteService
from app.services.receivable_ledger import ReceivableLedger
from app.services.reporting import ReceivablesReport
from app.settings import settings
from app.storage.db import close_database, get_session_factory


# ==== TASK DEFINITIONS ==== #


@task
async def check_balance_invariants() -> List[Dict[str, Any]]:
    """
    Find receivables whose stored balance disagrees with their components.

    Returns:
        List[Dict[str, Any]]: One entry per offending receivable
    """
    logger = get_run_logger()

    violations = await ReceivableLedger(get_session_factory()).find_invariant_violations()
    for v in violations:
        logger.error(
            f"Receivable {v.receivable_id} ({v.client_id}, {v.status}): "
            f"stored {v.stored_balance_paise} paise, expected {v.expected_balance_paise} paise"
        )

    logger.info(f"Integrity check found {len(violations)} violation(s)")
    return [
        {
            "receivable_id": v.receivable_id,
            "client_id": v.client_id,
            "stored_balance_paise": v.stored_balance_paise,
            "expected_balance_paise": v.expected_balance_paise,
            "status": v.status,
        }
        for v in violations
    ]


@task
async def issue_overdue_penalties(as_of: dt.date) -> List[Dict[str, Any]]:
    """
    Raise the one-time overdue penalty on receivables past the policy threshold.

    Args:
        as_of (dt.date): Date days overdue are counted at

    Returns:
        List[Dict[str, Any]]: One entry per penalty note raised
    """
    logger = get_run_logger()

    session_factory = get_session_factory()
    service = NoteService(session_factory, DatabaseComplianceSink(session_factory))
    if not service.policy.overdue_penalty_enabled:
        logger.info("Overdue penalties are disabled by policy")
        return []

    notes = await service.issue_overdue_penalties(SYSTEM_ACTOR, as_of)
    for note in notes:
        logger.info(f"Penalty {note.note_number} of {note.amount_paise} paise on invoice {note.invoice_id} ({note.status})")

    logger.info(f"Raised {len(notes)} overdue penalty note(s)")
    return [
        {
            "note_id": note.id,
            "note_number": note.note_number,
            "invoice_id": note.invoice_id,
            "client_id": note.client_id,
            "amount_paise": note.amount_paise,
            "status": note.status,
        }
        for note in notes
    ]


@task
async def snapshot_receivables(as_of: dt.date) -> Dict[str, Any]:
    """
    Summarize the month-to-date receivables position.

    Args:
        as_of (dt.date): Date overdue and aging are judged at

    Returns:
        Dict[str, Any]: Serialized ``ReceivablesSummary``
    """
    logger = get_run_logger()

    report = ReceivablesReport(get_session_factory())
    summary = await report.summary(SYSTEM_ACTOR, as_of.replace(day=1), as_of, as_of=as_of)

    logger.info(
        f"Outstanding {summary.outstanding_balance_paise} paise, "
        f"overdue {summary.overdue_balance_paise} paise across {summary.receivable_count} receivables"
    )
    return summary.model_dump(mode="json")


# ==== MAIN INTEGRITY FLOW ==== #


@flow(name="ledger-integrity-nightly", log_prints=True)
async def ledger_integrity_nightly(as_of: str | None = None) -> Dict[str, Any]:
    """
    Main flow for the nightly ledger integrity check.

    Args:
        as_of (str | None): ISO date to judge overdue balances at (defaults to today)

    Returns:
        Dict[str, Any]: Penalties raised, violations found and the receivables snapshot
    """
    logger = get_run_logger()
    as_of_date = dt.date.fromisoformat(as_of) if as_of else dt.date.today()
    logger.info(f"Starting ledger integrity check as of {as_of_date.isoformat()}")

    try:
        penalties = await issue_overdue_penalties(as_of_date)
        violations = await check_balance_invariants()
        snapshot = await snapshot_receivables(as_of_date)
    finally:
        await close_database()

    status = "violations_found" if violations else "clean"
    log_business_event(
        "ledger_integrity_check",
        SYSTEM_ACTOR.user_id,
        status=status,
        violation_count=len(violations),
        penalty_count=len(penalties),
        outstanding_balance_paise=snapshot["outstanding_balance_paise"],
        overdue_balance_paise=snapshot["overdue_balance_paise"],
    )
    if violations:
        logger.error(f"🚨 {len(violations)} receivable(s) fail the balance invariant")
    else:
        logger.info("✅ All receivable balances reconcile")

    return {
        "status": status,
        "as_of": as_of_date.isoformat(),
        "violations": violations,
        "penalties": penalties,
        "snapshot": snapshot,
    }


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ledger integrity flow")
    parser.add_argument("--run", action="store_true", help="Run flow locally")
    parser.add_argument("--serve", action="store_true", help="Serve flow on the nightly schedule")
    parser.add_argument("--as-of", help="Reference date (YYYY-MM-DD)")

    args = parser.parse_args()

    if args.serve:
        print("Serving ledger integrity flow...")
        ledger_integrity_nightly.serve(
            name="ledger-integrity-nightly",
            tags=["ledger", "integrity"],
            cron=settings.PREFECT_SCHEDULE_CRON
        )

    elif args.run:
        print("Running ledger integrity flow locally...")
        result = asyncio.run(ledger_integrity_nightly(as_of=args.as_of))
        print(f"Flow completed: {result['status']}")

    else:
        print("Usage: python flows/ledger_integrity_nightly.py [--run|--serve] [--as-of YYYY-MM-DD]")
