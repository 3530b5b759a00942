# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for monitoring the receivables ledger.

This module provides request latency, invoice lifecycle, collection,
credit/debit note and ledger health metrics with a scrape endpoint.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== REQUEST METRICS ==== #

http_request_latency_seconds = Histogram(
    "ledger_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"]
)


# ==== INVOICE METRICS ==== #

invoice_transitions_total = Counter(
    "ledger_invoice_transitions_total",
    "Invoice lifecycle transitions",
    ["from_status", "to_status"]
)

sla_adjustment_paise = Histogram(
    "ledger_sla_adjustment_paise",
    "Net SLA adjustment applied per invoice in paise",
    ["capped"],
    buckets=[-1_000_000, -100_000, -10_000, 0, 10_000, 100_000, 1_000_000]
)


# ==== COLLECTION METRICS ==== #

payments_total = Counter(
    "ledger_payments_total",
    "Payment attempts by mode and outcome",
    ["mode", "outcome"]  # outcome: success, duplicate_noop, rejected
)

payments_amount_paise_total = Counter(
    "ledger_payments_amount_paise_total",
    "Total paise collected by mode",
    ["mode"]
)

payment_reversals_total = Counter(
    "ledger_payment_reversals_total",
    "Total payment reversals"
)


# ==== NOTE METRICS ==== #

notes_applied_total = Counter(
    "ledger_notes_applied_total",
    "Credit/debit notes applied to receivables",
    ["note_type"]
)

unapplied_credit_paise_total = Counter(
    "ledger_unapplied_credit_paise_total",
    "Credit note value exceeding the receivable balance"
)

overdue_penalties_total = Counter(
    "ledger_overdue_penalties_total",
    "Overdue penalty debit notes raised",
    ["status"]
)


# ==== LEDGER HEALTH METRICS ==== #

ledger_errors_total = Counter(
    "ledger_errors_total",
    "Rejected ledger operations by operation and error code",
    ["operation", "code"]
)

ledger_lock_wait_seconds = Histogram(
    "ledger_lock_wait_seconds",
    "Time spent waiting for a per-entity ledger lock",
    ["backend"]
)

compliance_sink_failures_total = Counter(
    "ledger_compliance_sink_failures_total",
    "Compliance events that could not be recorded",
    ["sink", "event_type"]
)

ledger_invariant_violations = Gauge(
    "ledger_invariant_violations",
    "Receivables failing the balance invariant at the last integrity check"
)

app_info = Gauge(
    "ledger_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from app.settings import settings
    app_info.labels(
        version="0.1.0",
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
