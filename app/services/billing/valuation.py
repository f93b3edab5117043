"""Deterministic pricing: usage aggregates + plan pricing -> invoice line items.

Nothing in this module touches the database or the clock. Arithmetic is done
with ``Fraction`` so the same inputs always produce the same cents, and line
items come out in a fixed order (subscription, usage by metric key, adjustment).
"""
from __future__ import annotations

import math
from decimal import Decimal
from fractions import Fraction

from app.errors import ValidationFailedError
from app.schemas.billing import (
    CostPlusRule,
    FixedRateRule,
    LineItem,
    PlanPricing,
    PricingRule,
    TieredRule,
    UsageAggregate,
    ValuationContext,
)


def _fraction(value: Decimal | int) -> Fraction:
    return Fraction(value)


def _ceil(value: Fraction) -> int:
    return math.ceil(value)


def _fraction_str(value: Fraction) -> str:
    if value.denominator == 1:
        return str(value.numerator)
    return f"{value.numerator}/{value.denominator}"


def price_cost_plus(
    rule: CostPlusRule, usage: UsageAggregate, billable: int
) -> tuple[int, dict[str, str | int | bool]]:
    """Vendor cost of the billable share, marked up.

    The average vendor cost per unit is taken over all units in the period,
    so the overage carries its proportional share of the vendor bill.
    """
    if usage.total_quantity == 0:
        avg_cost = Fraction(0)
    else:
        avg_cost = _fraction(usage.vendor_cost_cents) / usage.total_quantity
    factor = 1 + _fraction(rule.markup_percent) / 100
    unit_price = avg_cost * factor + _fraction(rule.markup_fixed_cents)
    total = _ceil(unit_price * billable)
    return total, {
        "pricing_mode": "cost_plus",
        "avg_vendor_cost_per_unit": _fraction_str(avg_cost),
        "exact_unit_price": _fraction_str(unit_price),
        "markup_percent": str(rule.markup_percent),
    }


def price_fixed_rate(
    rule: FixedRateRule, billable: int
) -> tuple[int, dict[str, str | int | bool]]:
    total = _ceil(_fraction(rule.rate_cents) * billable)
    return total, {"pricing_mode": "fixed_rate", "rate_cents": str(rule.rate_cents)}


def price_tiered(
    rule: TieredRule, billable: int
) -> tuple[int, dict[str, str | int | bool]]:
    """Consume ``billable`` against the tiers from the lowest tier upward."""
    remaining = billable
    lower = 0
    exact_total = Fraction(0)
    consumed_tiers = 0
    for tier in rule.tiers:
        if remaining <= 0:
            break
        capacity = remaining if tier.up_to is None else max(0, tier.up_to - lower)
        consumed = min(remaining, capacity)
        exact_total += consumed * _fraction(tier.unit_cents)
        remaining -= consumed
        consumed_tiers += 1
        if tier.up_to is not None:
            lower = tier.up_to
    if remaining > 0:
        # Bounded last tier: price the excess at the last tier's rate.
        exact_total += remaining * _fraction(rule.tiers[-1].unit_cents)
    return _ceil(exact_total), {"pricing_mode": "tiered", "tiers_consumed": consumed_tiers}


def price_metric(
    rule: PricingRule, usage: UsageAggregate, billable: int
) -> tuple[int, dict[str, str | int | bool]]:
    match rule:
        case CostPlusRule():
            return price_cost_plus(rule, usage, billable)
        case FixedRateRule():
            return price_fixed_rate(rule, billable)
        case TieredRule():
            return price_tiered(rule, billable)
    raise ValidationFailedError(f"Unsupported pricing rule: {rule!r}")


def apply_caps(items: list[LineItem], pricing: PlanPricing) -> list[LineItem]:
    """Scale usage lines down to the max cap, or top up to the min cap."""
    usage_items = [item for item in items if item.type == "usage"]
    usage_total = sum(item.amount_cents for item in usage_items)

    cap = pricing.max_usage_cents
    if cap is not None and usage_total > cap:
        scale = Fraction(cap, usage_total)
        capped: list[LineItem] = []
        for item in items:
            if item.type != "usage":
                capped.append(item)
                continue
            amount = _ceil(item.amount_cents * scale)
            capped.append(
                item.model_copy(
                    update={
                        "amount_cents": amount,
                        "unit_amount_cents": _ceil(Fraction(amount, item.quantity)),
                        "capped": True,
                        "metadata": {
                            **item.metadata,
                            "original_amount_cents": item.amount_cents,
                            "cap_cents": cap,
                        },
                    }
                )
            )
        return capped

    floor = pricing.min_usage_cents
    if floor is not None and usage_total < floor:
        shortfall = floor - usage_total
        return [
            *items,
            LineItem(
                type="adjustment",
                description="Minimum usage charge",
                quantity=1,
                unit_amount_cents=shortfall,
                amount_cents=shortfall,
                metadata={"min_usage_cents": floor, "usage_cents": usage_total},
            ),
        ]
    return items


def valuate(
    subscription: ValuationContext,
    plan: PlanPricing,
    aggregated_usage: list[UsageAggregate],
) -> list[LineItem]:
    """Turn one period's aggregated usage into priced line items."""
    items = [
        LineItem(
            type="subscription",
            description=f"{subscription.plan_name} subscription",
            quantity=1,
            unit_amount_cents=plan.base_price_cents,
            amount_cents=plan.base_price_cents,
            metadata={
                "period_start": subscription.period_start.isoformat(),
                "period_end": subscription.period_end.isoformat(),
            },
        )
    ]

    for usage in sorted(aggregated_usage, key=lambda aggregate: aggregate.metric_key):
        included = plan.included_allowances.get(usage.metric_key, 0)
        billable = max(0, usage.total_quantity - included)
        if billable == 0:
            continue
        rule = plan.overage_rules.get(usage.metric_key)
        if rule is None:
            raise ValidationFailedError(
                f"No overage rule for metric '{usage.metric_key}'",
                details={"metric_key": usage.metric_key, "billable": billable},
            )
        total, metadata = price_metric(rule, usage, billable)
        items.append(
            LineItem(
                type="usage",
                metric_key=usage.metric_key,
                description=f"{usage.metric_key} overage ({billable} units)",
                quantity=billable,
                unit_amount_cents=_ceil(Fraction(total, billable)),
                amount_cents=total,
                metadata={
                    **metadata,
                    "total_quantity": usage.total_quantity,
                    "included_quantity": included,
                    "event_count": usage.event_count,
                },
            )
        )

    return apply_caps(items, plan)


def line_items_total(items: list[LineItem]) -> int:
    return sum(item.amount_cents for item in items)
