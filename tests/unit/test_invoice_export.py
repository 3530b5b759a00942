"""Unit tests for the invoice CSV export."""

import pytest

from app.business.errors import InvalidStateError
from app.services.invoice_export import export_filename, export_invoice_csv, rupees
from app.storage.models import Invoice


def make_invoice(**overrides) -> Invoice:
    fields = {
        "id": "inv-1",
        "invoice_number": "INV/2025/0007",
        "status": "GENERATED",
        "line_items": [
            {
                "awb": "AWB000002", "delivered_on": "2025-01-11", "cod_amount_paise": 0,
                "freight_paise": 4500, "fees_paise": 300, "net_paise": 4800,
            },
            {
                "awb": "AWB000001", "delivered_on": "2025-01-10", "cod_amount_paise": 12_525,
                "freight_paise": 4500, "fees_paise": 551, "net_paise": 5051,
            },
        ],
        "sla_adjustments": [
            {"rule_id": "d0-penalty", "description": "D0 below 90%", "amount_paise": -985},
        ],
    }
    fields.update(overrides)
    return Invoice(**fields)


@pytest.mark.unit
class TestInvoiceExport:

    def test_rows_sorted_by_awb_with_sla_rows_last(self):
        lines = export_invoice_csv(make_invoice()).splitlines()

        assert lines == [
            "AWB,Delivery Date,COD Amount,Freight,Fees,Net Amount,SLA Adjustments",
            "AWB000001,2025-01-10,125.25,45.00,5.51,50.51,",
            "AWB000002,2025-01-11,0.00,45.00,3.00,48.00,",
            "SLA:d0-penalty,,,,,,-9.85",
        ]

    def test_export_is_byte_stable(self):
        assert export_invoice_csv(make_invoice()) == export_invoice_csv(make_invoice())

    def test_draft_cannot_be_exported(self):
        with pytest.raises(InvalidStateError):
            export_invoice_csv(make_invoice(status="DRAFT"))

    def test_filename_has_no_slashes(self):
        assert export_filename(make_invoice()) == "INV-2025-0007.csv"

    def test_rupees(self):
        assert rupees(0) == "0.00"
        assert rupees(-5) == "-0.05"
        assert rupees(108_000_000) == "1080000.00"
