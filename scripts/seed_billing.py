"""Seed the demo billing plans used in local development."""

from dotenv import load_dotenv
from sqlalchemy import select

from app.db import SessionLocal
from app.models.billing import Plan
from app.schemas.billing import PlanCreate
from app.services.billing.plans import plans

DEMO_PLANS = [
    PlanCreate(
        name="Starter",
        base_price_cents=9900,
        included_allowances={"api_calls": 10_000},
        overage_rules={
            "api_calls": {
                "mode": "tiered",
                "tiers": [
                    {"up_to": 50_000, "unit_cents": "1"},
                    {"up_to": None, "unit_cents": "0.5"},
                ],
            }
        },
    ),
    PlanCreate(
        name="AI Pro",
        base_price_cents=29900,
        included_allowances={"llm_tokens": 0},
        overage_rules={
            "llm_tokens": {"mode": "cost_plus", "markup_percent": "30"},
            "storage_gb": {"mode": "fixed_rate", "rate_cents": "25"},
        },
        min_usage_cents=1000,
        max_usage_cents=500_000,
    ),
]


def main() -> None:
    load_dotenv()
    db = SessionLocal()
    try:
        existing = set(db.scalars(select(Plan.name)).all())
        created = 0
        for payload in DEMO_PLANS:
            if payload.name in existing:
                continue
            plans.create(db, payload)
            created += 1
        print(f"Billing seed complete: {created} plan(s) created.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
