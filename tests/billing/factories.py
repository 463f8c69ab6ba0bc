"""
Factories for billing core test data.

Plain functions building valid records with overridable fields.
"""

from datetime import UTC, datetime
from typing import Any

from dotmac.billing_core.catalog.models import AddOn, BillingInterval, Plan, Price
from dotmac.billing_core.customers import Customer
from dotmac.billing_core.promotions.models import DiscountContext, DiscountType, PromoCode
from dotmac.billing_core.subscriptions.models import Subscription, SubscriptionStatus

NOW = datetime(2024, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2024, 2, 1, tzinfo=UTC)


def make_plan(**overrides: Any) -> Plan:
    data: dict[str, Any] = {
        "plan_id": "plan_basic",
        "name": "Basic",
        "entitlements": ("api_access",),
        "limits": {"seats": 5, "projects": 3},
    }
    data.update(overrides)
    return Plan(**data)


def make_price(**overrides: Any) -> Price:
    data: dict[str, Any] = {
        "price_id": "price_basic_monthly",
        "plan_id": "plan_basic",
        "unit_amount": 10000,
        "currency": "USD",
        "billing_interval": BillingInterval.MONTH,
    }
    data.update(overrides)
    return Price(**data)


def make_addon(**overrides: Any) -> AddOn:
    data: dict[str, Any] = {
        "addon_id": "addon_storage",
        "name": "Extra storage",
        "unit_amount": 500,
        "currency": "USD",
        "entitlements": ("extra_storage",),
        "limits": {"seats": 10},
    }
    data.update(overrides)
    return AddOn(**data)


def make_customer(**overrides: Any) -> Customer:
    data: dict[str, Any] = {
        "customer_id": "cus_123",
        "email": "billing@example.com",
        "tags": ("beta",),
    }
    data.update(overrides)
    return Customer(**data)


def make_promo(**overrides: Any) -> PromoCode:
    data: dict[str, Any] = {
        "promo_code_id": f"promo_{overrides.get('code', 'SAVE20').lower()}",
        "code": "SAVE20",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": 20,
    }
    data.update(overrides)
    return PromoCode(**data)


def make_discount_context(**overrides: Any) -> DiscountContext:
    data: dict[str, Any] = {
        "customer_id": "cus_123",
        "amount": 10000,
        "currency": "USD",
        "plan_id": "plan_basic",
        "now": NOW,
    }
    data.update(overrides)
    return DiscountContext(**data)


def make_subscription(**overrides: Any) -> Subscription:
    data: dict[str, Any] = {
        "subscription_id": "sub_test",
        "customer_id": "cus_123",
        "plan_id": "plan_basic",
        "price_id": "price_basic_monthly",
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": NOW,
        "current_period_end": PERIOD_END,
    }
    data.update(overrides)
    return Subscription(**data)
