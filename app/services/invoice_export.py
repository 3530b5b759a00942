"""CSV line-item export of a generated invoice."""

import csv
import io
from decimal import Decimal

from app.business.errors import InvalidStateError
from app.business.state_machines import InvoiceStatus
from app.storage.models import Invoice


CSV_COLUMNS = ["AWB", "Delivery Date", "COD Amount", "Freight", "Fees", "Net Amount", "SLA Adjustments"]


def rupees(paise: int) -> str:
    return f"{Decimal(paise) / Decimal(100):.2f}"


def export_invoice_csv(invoice: Invoice) -> str:
    """
    Render an invoice as CSV.

    One row per shipment ordered by AWB, then one row per SLA adjustment
    (AWB ``SLA:<rule_id>``, amount in the last column). Amounts are rupees
    with two decimals, so the same invoice always exports byte-identically.

    Raises:
        InvalidStateError: For drafts, whose amounts are not frozen yet
    """
    if invoice.status == InvoiceStatus.DRAFT.value:
        raise InvalidStateError(
            f"Invoice {invoice.id} is a draft and cannot be exported",
            entity="Invoice",
            current=invoice.status,
        )

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)

    for item in sorted(invoice.line_items, key=lambda i: i["awb"]):
        writer.writerow([
            item["awb"],
            item.get("delivered_on") or "",
            rupees(item.get("cod_amount_paise", 0)),
            rupees(item["freight_paise"]),
            rupees(item["fees_paise"]),
            rupees(item["net_paise"]),
            "",
        ])

    for adjustment in invoice.sla_adjustments:
        writer.writerow([f"SLA:{adjustment['rule_id']}", "", "", "", "", "", rupees(adjustment["amount_paise"])])

    return buffer.getvalue()


def export_filename(invoice: Invoice) -> str:
    number = (invoice.invoice_number or invoice.id).replace("/", "-")
    return f"{number}.csv"
