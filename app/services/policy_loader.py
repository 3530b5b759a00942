# ==== POLICY LOADER SERVICE ==== #

"""
Policy loader for billing configuration.

This module loads the YAML billing policy (tax rate, payment terms, SLA cap
default, document numbering, overdue penalty) into a typed
``BillingPolicy`` with caching and fallback defaults.
"""

import functools
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import yaml

from app.observability.tracing import get_tracer
from app.settings import settings


tracer = get_tracer(__name__)


DEFAULT_POLICY_PATH = os.path.join(
    os.path.dirname(__file__),
    "..",
    "business",
    "policies",
    "billing_policy.yaml"
)


# ==== POLICY MODEL ==== #


@dataclass(frozen=True)
class BillingPolicy:
    """Typed view over the billing policy file."""

    tax_rate_percent: Decimal = Decimal("18")
    payment_terms_days: int = 15
    default_sla_cap_percent: Decimal = Decimal("20")
    invoice_prefix: str = "INV"
    invoice_padding: int = 4
    credit_note_prefix: str = "CN"
    debit_note_prefix: str = "DN"
    note_padding: int = 6
    billable_shipment_statuses: Tuple[str, ...] = ("DELIVERED", "RTO")
    overdue_penalty_enabled: bool = False
    overdue_penalty_days: int = 7
    overdue_penalty_type: str = "FLAT"
    overdue_penalty_value: Decimal = Decimal("50000")
    overdue_penalty_requires_approval: bool = True

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "BillingPolicy":
        tax = config.get("tax") or {}
        terms = config.get("terms") or {}
        sla = config.get("sla") or {}
        numbering = config.get("numbering") or {}
        penalty = config.get("overdue_penalty") or {}
        defaults = cls()
        return cls(
            tax_rate_percent=Decimal(str(tax.get("rate_percent", defaults.tax_rate_percent))),
            payment_terms_days=int(terms.get("payment_days", defaults.payment_terms_days)),
            default_sla_cap_percent=Decimal(
                str(sla.get("default_cap_percent", defaults.default_sla_cap_percent))
            ),
            invoice_prefix=numbering.get("invoice_prefix", defaults.invoice_prefix),
            invoice_padding=int(numbering.get("invoice_padding", defaults.invoice_padding)),
            credit_note_prefix=numbering.get("credit_note_prefix", defaults.credit_note_prefix),
            debit_note_prefix=numbering.get("debit_note_prefix", defaults.debit_note_prefix),
            note_padding=int(numbering.get("note_padding", defaults.note_padding)),
            billable_shipment_statuses=tuple(
                config.get("billable_shipment_statuses", defaults.billable_shipment_statuses)
            ),
            overdue_penalty_enabled=bool(penalty.get("enabled", defaults.overdue_penalty_enabled)),
            overdue_penalty_days=int(penalty.get("days_overdue", defaults.overdue_penalty_days)),
            overdue_penalty_type=str(penalty.get("type", defaults.overdue_penalty_type)).upper(),
            overdue_penalty_value=Decimal(str(penalty.get("value", defaults.overdue_penalty_value))),
            overdue_penalty_requires_approval=bool(
                penalty.get("require_approval", defaults.overdue_penalty_requires_approval)
            ),
        )


# ==== BILLING POLICY LOADING ==== #


@functools.lru_cache(maxsize=8)
def get_billing_policy(path: Optional[str] = None) -> BillingPolicy:
    """
    Get the billing policy.

    Loads the YAML policy from ``path``, ``BILLING_POLICY_PATH`` or the
    bundled default, falling back to built-in defaults when no file exists.

    Args:
        path (Optional[str]): Explicit policy file path

    Returns:
        BillingPolicy: Parsed billing policy
    """
    config_path = path or settings.BILLING_POLICY_PATH or DEFAULT_POLICY_PATH

    with tracer.start_as_current_span("load_billing_policy") as span:
        span.set_attribute("config_path", config_path)

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f) or {}

            span.set_attribute("config_loaded", True)
            policy = BillingPolicy.from_dict(config)

        except FileNotFoundError:
            span.set_attribute("config_loaded", False)
            span.set_attribute("fallback_used", True)
            policy = BillingPolicy()

    if not validate_billing_policy(policy):
        raise ValueError(f"Invalid billing policy in {config_path}")
    return policy


# ==== CONFIGURATION VALIDATION ==== #


def validate_billing_policy(policy: BillingPolicy) -> bool:
    """
    Validate billing policy values.

    Args:
        policy (BillingPolicy): Policy to validate

    Returns:
        bool: True if valid, False otherwise
    """
    if policy.tax_rate_percent < 0:
        return False
    if policy.payment_terms_days < 0:
        return False
    if not (Decimal("0") <= policy.default_sla_cap_percent <= Decimal("100")):
        return False
    if policy.invoice_padding < 0 or policy.note_padding < 0:
        return False
    if policy.overdue_penalty_type not in ("FLAT", "PERCENTAGE"):
        return False
    if policy.overdue_penalty_days < 0 or policy.overdue_penalty_value < 0:
        return False
    if policy.overdue_penalty_type == "PERCENTAGE" and policy.overdue_penalty_value > 100:
        return False
    return bool(policy.billable_shipment_statuses)


# ==== CACHE MANAGEMENT ==== #


def clear_cache() -> None:
    """Clear policy configuration cache."""
    get_billing_policy.cache_clear()
