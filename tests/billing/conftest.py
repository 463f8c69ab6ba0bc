"""Shared fixtures for billing core tests."""

import pytest

from dotmac.billing_core.adapters.memory import InMemoryStorageAdapter
from dotmac.billing_core.adapters.simulated import SimulatedPaymentAdapter, TestCards
from dotmac.billing_core.catalog.models import BillingInterval
from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.context import BillingContext
from dotmac.billing_core.events import InMemoryEventSink
from dotmac.billing_core.metrics import LifecycleMetrics
from dotmac.billing_core.time_source import SimulatedTimeSource
from tests.billing.factories import (
    NOW,
    make_addon,
    make_customer,
    make_plan,
    make_price,
)


@pytest.fixture
def clock():
    """Simulated clock starting at 2024-01-01 UTC."""
    return SimulatedTimeSource(NOW)


@pytest.fixture
def storage():
    return InMemoryStorageAdapter()


@pytest.fixture
def payments(clock):
    """Simulated payment adapter; cus_123 has a succeeding default card."""
    adapter = SimulatedPaymentAdapter(clock=clock)
    adapter.set_default_payment_method("cus_123", TestCards.SUCCESS)
    return adapter


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def lifecycle_config():
    return LifecycleConfig(grace_period_days=7, retry_intervals=(1, 3, 5))


@pytest.fixture
def billing_context(storage, payments, event_sink, clock, lifecycle_config):
    return BillingContext.create(
        storage,
        payments,
        sinks=[event_sink],
        clock=clock,
        config=lifecycle_config,
        metrics=LifecycleMetrics(enabled=False),
    )


@pytest.fixture
async def catalog(storage):
    """Seed plans, prices, an add-on and a customer."""
    basic = make_plan()
    pro = make_plan(
        plan_id="plan_pro",
        name="Pro",
        entitlements=("api_access", "sso"),
        limits={"seats": 20, "projects": -1},
    )
    prices = {
        "basic": make_price(),
        "pro": make_price(price_id="price_pro_monthly", plan_id="plan_pro", unit_amount=20000),
        "pro_yearly": make_price(
            price_id="price_pro_yearly",
            plan_id="plan_pro",
            unit_amount=200000,
            billing_interval=BillingInterval.YEAR,
        ),
        "trial": make_price(price_id="price_basic_trial", trial_days=14),
    }
    addon = make_addon()
    customer = make_customer()

    await storage.save_plan(basic)
    await storage.save_plan(pro)
    for price in prices.values():
        await storage.save_price(price)
    await storage.save_addon(addon)
    await storage.save_customer(customer)
    return {"plans": {"basic": basic, "pro": pro}, "prices": prices, "addon": addon}
