"""CLI commands for ledger operations."""

import asyncio
import datetime as dt
import sys
from typing import Optional

import click
from tabulate import tabulate

from app.business.errors import LedgerError
from app.security.auth import Actor, Role, SYSTEM_ACTOR
from app.services.compliance import DatabaseComplianceSink
from app.services.invoice_service import InvoiceService
from app.services.note_service import NoteService
from app.services.receivable_ledger import ReceivableLedger, effective_status
from app.services.reporting import AGING_BUCKETS, ReceivablesReport
from app.storage.db import close_database, create_schema, get_session_factory
from app.storage.seed import seed_demo_data


CLI_ACTOR = Actor(user_id="cli", role=Role.FINANCE_ADMIN)


def _rupees(paise: int) -> str:
    return f"{paise / 100:,.2f}"


def _run(coro):
    async def wrapper():
        try:
            return await coro
        finally:
            await close_database()

    return asyncio.run(wrapper())


@click.group()
def ledger():
    """Receivables ledger management commands."""
    pass


@ledger.command()
def init_db():
    """Create all ledger tables from the ORM metadata."""
    _run(create_schema())
    click.echo("✅ Schema created")


@ledger.command()
@click.option('--shipments', default=24, show_default=True, help='Number of demo shipments')
def seed(shipments: int):
    """Seed a demo client, rate card, shipments and SLA metrics."""
    async def run():
        await create_schema()
        await seed_demo_data(shipment_count=shipments)

    _run(run())
    click.echo("✅ Demo data seeded")


@ledger.command()
@click.option('--client', 'client_id', help='Client ID (optional)')
@click.option('--status', help='Receivable status, OVERDUE included (optional)')
@click.option('--as-of', type=click.DateTime(formats=["%Y-%m-%d"]), help='Reference date for overdue')
def receivables(client_id: Optional[str], status: Optional[str], as_of: Optional[dt.datetime]):
    """List receivables with balances."""
    as_of_date = as_of.date() if as_of else None

    async def run():
        ledger_view = ReceivableLedger(get_session_factory())
        rows = await ledger_view.list_for_client(CLI_ACTOR, client_id, status, as_of_date)

        if not rows:
            click.echo("No receivables found")
            return

        table_data = [
            [
                r.id[:8],
                r.client_id,
                _rupees(r.total_paise),
                _rupees(r.amount_paid_paise),
                _rupees(r.balance_paise),
                r.due_date.isoformat(),
                effective_status(r, as_of_date).value,
            ]
            for r in rows
        ]
        headers = ["ID", "Client", "Total", "Paid", "Balance", "Due", "Status"]
        click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))

    _run(run())


@ledger.command()
@click.option('--start', required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help='Period start')
@click.option('--end', required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help='Period end')
@click.option('--client', 'client_id', help='Client ID (optional)')
@click.option('--as-of', type=click.DateTime(formats=["%Y-%m-%d"]), help='Reference date for aging')
def summary(start: dt.datetime, end: dt.datetime, client_id: Optional[str], as_of: Optional[dt.datetime]):
    """Show period and point-in-time receivable figures with aging."""
    async def run():
        report = ReceivablesReport(get_session_factory())
        result = await report.summary(
            CLI_ACTOR, start.date(), end.date(), client_id, as_of.date() if as_of else None
        )

        click.echo(f"📊 Receivables summary {result.period_start} .. {result.period_end} (as of {result.as_of})")
        click.echo(tabulate([
            ["Invoiced in period", _rupees(result.invoiced_in_period_paise)],
            ["Outstanding balance", _rupees(result.outstanding_balance_paise)],
            ["Overdue balance", _rupees(result.overdue_balance_paise)],
            ["Collected", _rupees(result.collected_paise)],
            ["Unapplied credit", _rupees(result.unapplied_credit_paise)],
            ["Receivables", result.receivable_count],
        ], tablefmt="simple"))

        click.echo("\nAging:")
        click.echo(tabulate(
            [[bucket, _rupees(result.aging_paise[bucket])] for bucket in AGING_BUCKETS],
            headers=["Bucket", "Balance"],
            tablefmt="grid"
        ))

    _run(run())


@ledger.command()
@click.option('--client', 'client_id', required=True, help='Client ID')
@click.option('--start', required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help='Period start')
@click.option('--end', required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help='Period end')
def draft(client_id: str, start: dt.datetime, end: dt.datetime):
    """Create a draft invoice from the client's billable shipments."""
    async def run():
        session_factory = get_session_factory()
        service = InvoiceService(session_factory, DatabaseComplianceSink(session_factory))
        return await service.create_draft(CLI_ACTOR, client_id, start.date(), end.date())

    try:
        invoice = _run(run())
    except LedgerError as e:
        click.echo(f"❌ {e.code}: {e.message}")
        sys.exit(1)

    click.echo(f"✅ Draft invoice {invoice.id} created for {client_id}")
    click.echo(tabulate([
        ["Shipments", len(invoice.shipment_ids)],
        ["Subtotal", _rupees(invoice.subtotal_paise)],
        ["Tax", _rupees(invoice.tax_paise)],
        ["SLA adjustment", _rupees(invoice.sla_adjustment_paise)],
        ["Total", _rupees(invoice.total_paise)],
        ["COD detected", _rupees(invoice.cod_detected_paise)],
    ], tablefmt="simple"))


@ledger.command()
@click.option('--as-of', type=click.DateTime(formats=["%Y-%m-%d"]), help='Reference date for days overdue')
def penalties(as_of: Optional[dt.datetime]):
    """Raise the one-time overdue penalty on qualifying receivables."""
    async def run():
        session_factory = get_session_factory()
        service = NoteService(session_factory, DatabaseComplianceSink(session_factory))
        if not service.policy.overdue_penalty_enabled:
            return None
        return await service.issue_overdue_penalties(SYSTEM_ACTOR, as_of.date() if as_of else None)

    notes = _run(run())
    if notes is None:
        click.echo("Overdue penalties are disabled by policy")
        return
    if not notes:
        click.echo("No receivables due a penalty")
        return

    table_data = [
        [n.note_number, n.invoice_id[:8], n.client_id, _rupees(n.amount_paise), n.status]
        for n in notes
    ]
    click.echo(tabulate(table_data, headers=["Note", "Invoice", "Client", "Amount", "Status"], tablefmt="grid"))


@ledger.command()
def check_integrity():
    """Recompute every receivable balance; exits non-zero on any violation."""
    async def run():
        return await ReceivableLedger(get_session_factory()).find_invariant_violations()

    violations = _run(run())
    if not violations:
        click.echo("✅ All receivable balances reconcile")
        return

    table_data = [
        [v.receivable_id[:8], v.client_id, v.stored_balance_paise, v.expected_balance_paise, v.status]
        for v in violations
    ]
    headers = ["Receivable", "Client", "Stored", "Expected", "Status"]
    click.echo(f"❌ {len(violations)} receivable(s) fail the balance invariant")
    click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))
    sys.exit(1)


if __name__ == '__main__':
    ledger()
