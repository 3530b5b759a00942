"""Database seeder for demo data."""

import asyncio
import datetime as dt
import random
from decimal import Decimal

from sqlalchemy import select

from app.observability.logging import ContextualLogger
from app.storage.db import create_schema, get_session, init_database
from app.storage.models import ClientRateCard, ClientSlaMetric, Shipment


logger = ContextualLogger(__name__)

DEMO_CLIENT_ID = "client-demo"

DEMO_BASE_RULES = [
    {
        "geo_type": "City", "shipment_type": "Delivery",
        "base_rate_paise": 4500, "rto_rate_paise": 2000,
        "cod_fee_type": "PERCENTAGE", "cod_fee_value": "2", "platform_fee_paise": 300,
    },
    {
        "geo_type": "Metro", "shipment_type": "Delivery",
        "base_rate_paise": 5500, "rto_rate_paise": 2500,
        "cod_fee_type": "PERCENTAGE", "cod_fee_value": "2", "platform_fee_paise": 300,
    },
    {
        "geo_type": "Rural", "shipment_type": "Delivery",
        "base_rate_paise": 8000, "rto_rate_paise": 3500,
        "cod_fee_type": "FLAT", "cod_fee_value": "3000", "platform_fee_paise": 300,
    },
    {
        "geo_type": "Tier 1", "shipment_type": "Reverse Pickup",
        "base_rate_paise": 6000, "rto_rate_paise": 0,
        "cod_fee_type": "FLAT", "cod_fee_value": "0", "platform_fee_paise": 0,
    },
]

DEMO_SLA_RULES = [
    {
        "id": "d0-penalty", "metric": "D0", "condition": "LESS_THAN", "threshold": "90",
        "effect": "PENALTY", "adjustment_type": "PERCENTAGE", "value": "5",
        "description": "Same-day delivery below 90%",
    },
    {
        "id": "fad-premium", "metric": "FAD", "condition": "GREATER_THAN_OR_EQUAL", "threshold": "95",
        "effect": "PREMIUM", "adjustment_type": "FLAT", "value": "50000",
        "description": "First attempt delivery at or above 95%",
    },
]


async def seed_demo_data(shipment_count: int = 24) -> None:
    """Seed a demo client with a rate card, closed shipments and SLA metrics."""
    logger.info("Starting database seeding")

    async with get_session() as db:
        existing = await db.execute(select(ClientRateCard).where(ClientRateCard.client_id == DEMO_CLIENT_ID))
        if existing.scalars().first():
            logger.info("Demo data already exists, skipping seeding")
            return

        today = dt.date.today()
        period_end = today.replace(day=1) - dt.timedelta(days=1)
        period_start = period_end.replace(day=1)

        _create_demo_rate_card(db, period_start)
        _create_demo_shipments(db, period_start, period_end, shipment_count)
        _create_demo_metrics(db, period_start, period_end)

        await db.commit()

        logger.info(
            "Database seeding completed successfully",
            client_id=DEMO_CLIENT_ID,
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
        )


def _create_demo_rate_card(db, effective_from: dt.date) -> None:
    logger.info("Creating demo rate card")
    db.add(ClientRateCard(
        client_id=DEMO_CLIENT_ID,
        name="Demo standard card",
        effective_from=effective_from,
        base_rules=DEMO_BASE_RULES,
        sla_rules=DEMO_SLA_RULES,
        sla_cap_percent=Decimal("10"),
    ))


def _create_demo_shipments(db, period_start: dt.date, period_end: dt.date, count: int) -> None:
    """Closed shipments spread over the period, mixing COD, prepaid and RTO."""
    logger.info(f"Creating {count} demo shipments")
    rng = random.Random(42)
    lanes = [
        ("City", "Delivery"),
        ("Metro", "Delivery"),
        ("Rural", "Delivery"),
        ("Tier 1", "Reverse Pickup"),
    ]
    days = (period_end - period_start).days + 1

    for i in range(count):
        geo_type, shipment_type = lanes[i % len(lanes)]
        is_cod = shipment_type == "Delivery" and rng.random() < 0.5
        status = "RTO" if shipment_type == "Delivery" and rng.random() < 0.15 else "DELIVERED"
        closed_on = period_start + dt.timedelta(days=rng.randrange(days))
        db.add(Shipment(
            id=f"shp-demo-{i + 1:04d}",
            awb=f"AWB{period_start:%Y%m}{i + 1:05d}",
            client_id=DEMO_CLIENT_ID,
            geo_type=geo_type,
            shipment_type=shipment_type,
            payment_mode="COD" if is_cod else "PREPAID",
            cod_amount_paise=rng.randrange(50000, 500000, 100) if is_cod else 0,
            status=status,
            closed_at=dt.datetime.combine(closed_on, dt.time(hour=rng.randrange(9, 20))),
        ))


def _create_demo_metrics(db, period_start: dt.date, period_end: dt.date) -> None:
    logger.info("Creating demo SLA metrics")
    for metric, value in (("D0", "86.5"), ("D1", "97.2"), ("FAD", "95.4"), ("RTO", "6.1")):
        db.add(ClientSlaMetric(
            client_id=DEMO_CLIENT_ID,
            metric=metric,
            value=Decimal(value),
            period_start=period_start,
            period_end=period_end,
        ))


async def _main() -> None:
    init_database()
    await create_schema()
    await seed_demo_data()


if __name__ == "__main__":
    asyncio.run(_main())
