# ==== RATE ENGINE ==== #

"""
Shipment pricing and SLA adjustments.

The engine is pure: it takes a client's rate card, shipments and observed
SLA metrics and returns charges, without touching storage. All amounts are
integer paise; percentages are applied with ``Decimal`` and rounded half-up
to a whole paisa.

Pricing of one shipment:

- freight is the matched rule's base rate
- a COD fee applies only to delivered COD shipments, as a flat amount or a
  percentage of the COD value
- an RTO shipment carries the RTO rate and no COD fee
- the platform fee comes from the rule (zero unless configured)

The SLA pass runs once per invoice on the subtotal. Triggered rules yield
signed adjustments (PREMIUM positive, PENALTY negative). Their summed
magnitude is capped at ``sla_cap_percent`` of the subtotal; when the raw
magnitude exceeds the cap every adjustment is scaled down by the same
factor, and leftover paise from the scaling go to the largest remainders so
the capped magnitude equals the cap exactly.
"""

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from app.business.errors import NoApplicableRateError, ValidationError
from app.observability.logging import get_logger
from app.observability.tracing import get_tracer
from app.services.policy_loader import BillingPolicy, get_billing_policy


tracer = get_tracer(__name__)
logger = get_logger(__name__)


# ==== ENUMERATIONS ==== #


class GeoType(str, Enum):
    CITY = "City"
    RURAL = "Rural"
    METRO = "Metro"
    TIER_1 = "Tier 1"


class ShipmentType(str, Enum):
    DELIVERY = "Delivery"
    FIRST_MILE = "First Mile"
    REVERSE_PICKUP = "Reverse Pickup"


class PaymentMode(str, Enum):
    COD = "COD"
    PREPAID = "PREPAID"


class FeeType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT = "FLAT"


class SlaMetric(str, Enum):
    D0 = "D0"
    D1 = "D1"
    RTO = "RTO"
    FAD = "FAD"
    COD_TAT = "COD_TAT"


class SlaCondition(str, Enum):
    LESS_THAN = "LESS_THAN"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"

    def holds(self, observed: Decimal, threshold: Decimal) -> bool:
        if self is SlaCondition.LESS_THAN:
            return observed < threshold
        if self is SlaCondition.GREATER_THAN:
            return observed > threshold
        if self is SlaCondition.LESS_THAN_OR_EQUAL:
            return observed <= threshold
        return observed >= threshold


class SlaEffect(str, Enum):
    PREMIUM = "PREMIUM"
    PENALTY = "PENALTY"


class AdjustmentType(str, Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


# ==== RATE CARD MODELS ==== #


class BaseRateRule(BaseModel):
    """Price of one (geography type, shipment type) combination."""

    geo_type: GeoType
    shipment_type: ShipmentType
    base_rate_paise: int = Field(ge=0)
    rto_rate_paise: int = Field(default=0, ge=0)
    cod_fee_type: FeeType = FeeType.PERCENTAGE
    cod_fee_value: Decimal = Field(default=Decimal("0"), ge=0)
    platform_fee_paise: int = Field(default=0, ge=0)


class SlaPricingRule(BaseModel):
    """
    SLA-driven premium or penalty.

    ``value`` is paise for FLAT rules and a percent of the subtotal for
    PERCENTAGE rules.
    """

    id: str
    metric: SlaMetric
    condition: SlaCondition
    threshold: Decimal
    effect: SlaEffect
    adjustment_type: AdjustmentType
    value: Decimal = Field(ge=0)
    description: Optional[str] = None


class RateCard(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    base_rules: List[BaseRateRule]
    sla_rules: List[SlaPricingRule] = Field(default_factory=list)
    sla_cap_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)


class ShipmentInput(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    awb: str
    geo_type: GeoType
    shipment_type: ShipmentType
    payment_mode: PaymentMode = PaymentMode.PREPAID
    cod_amount_paise: int = Field(default=0, ge=0)
    status: str


# ==== RESULT MODELS ==== #


class ShipmentCharge(BaseModel):
    shipment_id: str
    awb: str
    freight_paise: int
    cod_fee_paise: int = 0
    rto_fee_paise: int = 0
    platform_fee_paise: int = 0

    @computed_field
    @property
    def fees_paise(self) -> int:
        return self.cod_fee_paise + self.rto_fee_paise + self.platform_fee_paise

    @computed_field
    @property
    def net_paise(self) -> int:
        return self.freight_paise + self.fees_paise


class SlaAdjustment(BaseModel):
    rule_id: str
    description: str
    amount_paise: int  # signed: premium > 0, penalty < 0


class SlaResult(BaseModel):
    adjustments: List[SlaAdjustment] = Field(default_factory=list)
    raw_magnitude_paise: int = 0
    cap_paise: int = 0
    capped: bool = False

    @computed_field
    @property
    def net_paise(self) -> int:
        return sum(a.amount_paise for a in self.adjustments)


# ==== ARITHMETIC ==== #


def percent_of(amount_paise: int, percent: Decimal) -> int:
    """``percent`` % of an amount, rounded half-up to a whole paisa."""
    value = Decimal(amount_paise) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def scale_to_cap(amounts: List[int], cap: int) -> List[int]:
    """
    Scale signed amounts so their absolute sum equals ``cap``.

    Uses floor division plus largest-remainder distribution; signs are kept.
    Amounts whose absolute sum is already within the cap are returned as is.
    """
    magnitudes = [abs(a) for a in amounts]
    total = sum(magnitudes)
    if total <= cap:
        return list(amounts)

    scaled = [m * cap // total for m in magnitudes]
    leftover = cap - sum(scaled)
    by_remainder = sorted(
        range(len(magnitudes)),
        key=lambda i: (-(magnitudes[i] * cap % total), i)
    )
    for i in by_remainder[:leftover]:
        scaled[i] += 1

    return [s if a >= 0 else -s for s, a in zip(scaled, amounts)]


# ==== RATE ENGINE ==== #


class RateEngine:
    """
    Prices shipments and evaluates SLA rules against a rate card.

    Args:
        policy (Optional[BillingPolicy]): Billing policy (tax rate, default
            SLA cap); loaded from YAML when omitted
    """

    def __init__(self, policy: Optional[BillingPolicy] = None):
        self.policy = policy or get_billing_policy()

    def find_rule(self, card: RateCard, shipment: ShipmentInput) -> BaseRateRule:
        for rule in card.base_rules:
            if rule.geo_type == shipment.geo_type and rule.shipment_type == shipment.shipment_type:
                return rule
        raise NoApplicableRateError(
            f"No rate for {shipment.geo_type.value}/{shipment.shipment_type.value} "
            f"on rate card {card.id}",
            shipment_id=shipment.id,
            awb=shipment.awb,
            rate_card_id=card.id,
        )

    def price_shipment(self, card: RateCard, shipment: ShipmentInput) -> ShipmentCharge:
        """
        Compute the charge breakdown of one shipment.

        Raises:
            NoApplicableRateError: If no base rule matches the shipment
        """
        rule = self.find_rule(card, shipment)

        cod_fee = 0
        rto_fee = 0
        if shipment.status == "RTO":
            rto_fee = rule.rto_rate_paise
        elif shipment.payment_mode == PaymentMode.COD and shipment.status == "DELIVERED":
            if rule.cod_fee_type == FeeType.PERCENTAGE:
                cod_fee = percent_of(shipment.cod_amount_paise, rule.cod_fee_value)
            else:
                cod_fee = int(rule.cod_fee_value)

        return ShipmentCharge(
            shipment_id=shipment.id,
            awb=shipment.awb,
            freight_paise=rule.base_rate_paise,
            cod_fee_paise=cod_fee,
            rto_fee_paise=rto_fee,
            platform_fee_paise=rule.platform_fee_paise,
        )

    def price_shipments(
        self,
        card: RateCard,
        shipments: Iterable[ShipmentInput]
    ) -> List[ShipmentCharge]:
        with tracer.start_as_current_span("rate_engine_price_shipments") as span:
            charges = [self.price_shipment(card, s) for s in shipments]
            span.set_attribute("rate_card_id", card.id)
            span.set_attribute("shipment_count", len(charges))
            return charges

    def compute_tax(self, subtotal_paise: int) -> int:
        return percent_of(subtotal_paise, self.policy.tax_rate_percent)

    def compute_sla_adjustments(
        self,
        card: RateCard,
        subtotal_paise: int,
        metrics: Mapping[str, Decimal]
    ) -> SlaResult:
        """
        Evaluate the card's SLA rules against observed metrics.

        Args:
            card (RateCard): Rate card holding the SLA rules and cap
            subtotal_paise (int): Invoice subtotal the percentages and cap apply to
            metrics (Mapping[str, Decimal]): Observed value per metric name

        Returns:
            SlaResult: Signed, capped adjustment line items
        """
        if subtotal_paise < 0:
            raise ValidationError("Subtotal cannot be negative", subtotal_paise=subtotal_paise)

        with tracer.start_as_current_span("rate_engine_sla_adjustments") as span:
            span.set_attribute("rate_card_id", card.id)
            span.set_attribute("rule_count", len(card.sla_rules))

            triggered: List[SlaPricingRule] = []
            raw: List[int] = []
            for rule in card.sla_rules:
                observed = metrics.get(rule.metric.value)
                if observed is None:
                    logger.warning(
                        "SLA metric missing, rule skipped",
                        rate_card_id=card.id,
                        rule_id=rule.id,
                        metric=rule.metric.value
                    )
                    continue
                if not rule.condition.holds(Decimal(str(observed)), rule.threshold):
                    continue

                if rule.adjustment_type == AdjustmentType.PERCENTAGE:
                    magnitude = percent_of(subtotal_paise, rule.value)
                else:
                    magnitude = int(rule.value.quantize(Decimal("1"), rounding=ROUND_FLOOR))
                triggered.append(rule)
                raw.append(magnitude if rule.effect == SlaEffect.PREMIUM else -magnitude)

            cap_percent = (
                card.sla_cap_percent if card.sla_cap_percent is not None
                else self.policy.default_sla_cap_percent
            )
            cap = percent_of(subtotal_paise, cap_percent)
            magnitude = sum(abs(a) for a in raw)
            applied = scale_to_cap(raw, cap)

            result = SlaResult(
                adjustments=[
                    SlaAdjustment(
                        rule_id=rule.id,
                        description=rule.description or _describe(rule),
                        amount_paise=amount,
                    )
                    for rule, amount in zip(triggered, applied)
                ],
                raw_magnitude_paise=magnitude,
                cap_paise=cap,
                capped=magnitude > cap,
            )

            span.set_attribute("triggered", len(triggered))
            span.set_attribute("capped", result.capped)
            if result.capped:
                logger.info(
                    "SLA adjustments scaled to cap",
                    rate_card_id=card.id,
                    raw_magnitude_paise=magnitude,
                    cap_paise=cap
                )
            return result


def _describe(rule: SlaPricingRule) -> str:
    unit = "%" if rule.adjustment_type == AdjustmentType.PERCENTAGE else " paise"
    return (
        f"{rule.effect.value.title()}: {rule.metric.value} "
        f"{rule.condition.value.replace('_', ' ').lower()} {rule.threshold} ({rule.value}{unit})"
    )

