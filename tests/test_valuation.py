"""Tests for the pure pricing functions."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from app.errors import ValidationFailedError
from app.schemas.billing import (
    CostPlusRule,
    FixedRateRule,
    PlanPricing,
    Tier,
    TieredRule,
    UsageAggregate,
    ValuationContext,
)
from app.services.billing.valuation import (
    line_items_total,
    price_cost_plus,
    price_fixed_rate,
    price_tiered,
    valuate,
)


@pytest.fixture()
def context():
    return ValuationContext(
        subscription_id=uuid.uuid4(),
        plan_name="AI Pro",
        period_start=datetime(2026, 1, 1, tzinfo=UTC),
        period_end=datetime(2026, 2, 1, tzinfo=UTC),
    )


def _usage(metric_key, quantity, vendor_cost="0"):
    return UsageAggregate(
        metric_key=metric_key,
        total_quantity=quantity,
        vendor_cost_cents=Decimal(vendor_cost),
        event_count=1,
    )


# ── Individual rules ─────────────────────────────────────


def test_tiered_pricing_walks_tiers_in_order():
    rule = TieredRule(
        tiers=[
            Tier(up_to=5_000_000, unit_cents=Decimal("1")),
            Tier(up_to=10_000_000, unit_cents=Decimal("0.5")),
            Tier(up_to=None, unit_cents=Decimal("0.25")),
        ]
    )
    total, metadata = price_tiered(rule, 12_000_000)
    assert total == 80_000
    assert metadata["tiers_consumed"] == 3


def test_tiered_pricing_within_first_tier():
    rule = TieredRule(
        tiers=[Tier(up_to=100, unit_cents=Decimal("2")), Tier(unit_cents=Decimal("1"))]
    )
    total, _ = price_tiered(rule, 40)
    assert total == 80


def test_tiered_pricing_bounded_last_tier_prices_excess_at_last_rate():
    rule = TieredRule(
        tiers=[Tier(up_to=10, unit_cents=Decimal("3")), Tier(up_to=20, unit_cents=Decimal("2"))]
    )
    total, _ = price_tiered(rule, 25)
    assert total == 10 * 3 + 10 * 2 + 5 * 2


def test_tier_bounds_must_ascend():
    with pytest.raises(ValueError):
        TieredRule(
            tiers=[Tier(up_to=10, unit_cents=Decimal("1")), Tier(up_to=5, unit_cents=Decimal("1"))]
        )


def test_only_last_tier_may_be_unbounded():
    with pytest.raises(ValueError):
        TieredRule(tiers=[Tier(unit_cents=Decimal("1")), Tier(up_to=5, unit_cents=Decimal("1"))])


def test_fixed_rate_rounds_up_fractional_cents():
    total, metadata = price_fixed_rate(FixedRateRule(rate_cents=Decimal("0.3")), 7)
    assert total == 3  # 2.1 -> 3
    assert metadata["pricing_mode"] == "fixed_rate"


def test_cost_plus_uses_average_cost_over_all_units():
    rule = CostPlusRule(markup_percent=Decimal("25"))
    total, metadata = price_cost_plus(rule, _usage("llm_tokens", 1_500_000, "1200"), 500_000)
    assert total == 500
    assert metadata["markup_percent"] == "25"


def test_cost_plus_fixed_markup_is_per_unit():
    rule = CostPlusRule(markup_percent=Decimal("0"), markup_fixed_cents=Decimal("0.01"))
    total, _ = price_cost_plus(rule, _usage("llm_tokens", 1000, "0"), 1000)
    assert total == 10


def test_cost_plus_with_no_usage_is_free():
    rule = CostPlusRule(markup_percent=Decimal("50"))
    total, _ = price_cost_plus(rule, _usage("llm_tokens", 0), 0)
    assert total == 0


# ── valuate ──────────────────────────────────────────────


def test_end_to_end_cost_plus_invoice(context):
    plan = PlanPricing(
        base_price_cents=9900,
        included_allowances={"llm_tokens": 1_000_000},
        overage_rules={"llm_tokens": CostPlusRule(markup_percent=Decimal("25"))},
    )
    items = valuate(context, plan, [_usage("llm_tokens", 1_500_000, "1200")])

    assert [item.type for item in items] == ["subscription", "usage"]
    assert items[1].quantity == 500_000
    assert items[1].amount_cents == 500
    assert line_items_total(items) == 10_400


def test_usage_within_allowance_has_no_usage_line(context):
    plan = PlanPricing(
        base_price_cents=9900,
        included_allowances={"api_calls": 10_000},
        overage_rules={"api_calls": FixedRateRule(rate_cents=Decimal("1"))},
    )
    items = valuate(context, plan, [_usage("api_calls", 9_999)])
    assert len(items) == 1
    assert line_items_total(items) == 9900


def test_usage_lines_sorted_by_metric_key(context):
    plan = PlanPricing(
        base_price_cents=0,
        overage_rules={
            "storage_gb": FixedRateRule(rate_cents=Decimal("10")),
            "api_calls": FixedRateRule(rate_cents=Decimal("1")),
        },
    )
    items = valuate(context, plan, [_usage("storage_gb", 3), _usage("api_calls", 5)])
    assert [item.metric_key for item in items[1:]] == ["api_calls", "storage_gb"]


def test_valuation_is_deterministic(context):
    plan = PlanPricing(
        base_price_cents=500,
        overage_rules={
            "api_calls": FixedRateRule(rate_cents=Decimal("0.7")),
            "llm_tokens": CostPlusRule(markup_percent=Decimal("12.5")),
        },
        max_usage_cents=1000,
    )
    usage = [_usage("llm_tokens", 33_333, "777"), _usage("api_calls", 4_321)]
    first = valuate(context, plan, usage)
    second = valuate(context, plan, list(reversed(usage)))
    assert first == second


def test_missing_overage_rule_is_rejected(context):
    plan = PlanPricing(base_price_cents=100)
    with pytest.raises(ValidationFailedError) as exc_info:
        valuate(context, plan, [_usage("api_calls", 10)])
    assert exc_info.value.details["metric_key"] == "api_calls"


def test_max_cap_scales_every_usage_line(context):
    plan = PlanPricing(
        base_price_cents=9900,
        overage_rules={
            "api_calls": FixedRateRule(rate_cents=Decimal("1")),
            "storage_gb": FixedRateRule(rate_cents=Decimal("1")),
        },
        max_usage_cents=50_000,
    )
    items = valuate(context, plan, [_usage("api_calls", 40_000), _usage("storage_gb", 20_000)])
    usage_items = [item for item in items if item.type == "usage"]

    assert all(item.capped for item in usage_items)
    assert [item.metadata["original_amount_cents"] for item in usage_items] == [40_000, 20_000]
    subtotal = sum(item.amount_cents for item in usage_items)
    # Each line rounds up, so the subtotal may exceed the cap by one cent per line.
    assert 50_000 <= subtotal <= 50_000 + len(usage_items)
    assert items[0].amount_cents == 9900


def test_min_cap_appends_adjustment(context):
    plan = PlanPricing(
        base_price_cents=1000,
        overage_rules={"api_calls": FixedRateRule(rate_cents=Decimal("1"))},
        min_usage_cents=2500,
    )
    items = valuate(context, plan, [_usage("api_calls", 1000)])
    assert items[-1].type == "adjustment"
    assert items[-1].amount_cents == 1500
    assert line_items_total(items) == 3500


def test_min_cap_applies_with_no_usage(context):
    plan = PlanPricing(base_price_cents=0, min_usage_cents=700)
    items = valuate(context, plan, [])
    assert line_items_total(items) == 700


def test_caps_must_be_ordered():
    with pytest.raises(ValueError):
        PlanPricing(base_price_cents=0, min_usage_cents=10, max_usage_cents=5)
