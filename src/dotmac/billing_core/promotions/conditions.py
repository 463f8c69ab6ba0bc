"""
Promo code condition evaluation.

Each checker returns ``None`` when the condition passes, otherwise a
human-readable failure reason. Conditions are evaluated in list order and
the first failure wins.
"""

from collections.abc import Callable, Sequence
from typing import Any

from dotmac.billing_core.promotions.models import (
    CustomerTagCondition,
    DateRangeCondition,
    DiscountContext,
    FirstPurchaseCondition,
    MinAmountCondition,
    MinQuantityCondition,
    SpecificPlansCondition,
    SpecificProductsCondition,
)


def _first_purchase(condition: FirstPurchaseCondition, context: DiscountContext) -> str | None:
    if condition.value and not context.is_new_customer:
        return "Promo code is only valid for first-time customers"
    return None


def _min_amount(condition: MinAmountCondition, context: DiscountContext) -> str | None:
    if context.amount < condition.value:
        return f"Minimum purchase amount of {condition.value} required"
    return None


def _min_quantity(condition: MinQuantityCondition, context: DiscountContext) -> str | None:
    if context.quantity < condition.value:
        return f"Minimum quantity of {condition.value} items required"
    return None


def _specific_plans(condition: SpecificPlansCondition, context: DiscountContext) -> str | None:
    if condition.value and context.plan_id and context.plan_id not in condition.value:
        return "Promo code is not valid for this plan"
    return None


def _specific_products(
    condition: SpecificProductsCondition, context: DiscountContext
) -> str | None:
    if condition.value and context.product_ids:
        if not any(product_id in condition.value for product_id in context.product_ids):
            return "Promo code is not valid for these products"
    return None


def _date_range(condition: DateRangeCondition, context: DiscountContext) -> str | None:
    if condition.start is not None and context.now < condition.start:
        return "Promo code is not yet valid"
    if condition.end is not None and context.now > condition.end:
        return "Promo code has expired"
    return None


def _customer_tag(condition: CustomerTagCondition, context: DiscountContext) -> str | None:
    if condition.value not in context.customer_tags:
        return "Promo code is not valid for your account type"
    return None


CONDITION_CHECKS: dict[str, Callable[[Any, DiscountContext], str | None]] = {
    "first_purchase": _first_purchase,
    "min_amount": _min_amount,
    "min_quantity": _min_quantity,
    "specific_plans": _specific_plans,
    "specific_products": _specific_products,
    "date_range": _date_range,
    "customer_tag": _customer_tag,
}


def evaluate_condition(condition: Any, context: DiscountContext) -> str | None:
    """Evaluate one condition. Returns the failure reason or ``None``."""
    check = CONDITION_CHECKS[condition.type]
    return check(condition, context)


def evaluate_conditions(conditions: Sequence[Any], context: DiscountContext) -> str | None:
    """Evaluate conditions in order, stopping at the first failure."""
    for condition in conditions:
        reason = evaluate_condition(condition, context)
        if reason is not None:
            return reason
    return None
