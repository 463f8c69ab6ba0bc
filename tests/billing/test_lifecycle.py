"""
Tests for the lifecycle processor.

Covers renewals, dunning, trials and the at-least-once guarantees:
repeated and overlapping passes, transport failures, pending payments and
lost compare-and-swap writes.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from dotmac.billing_core.adapters.simulated import SimulatedOutcome
from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.context import BillingContext
from dotmac.billing_core.events import LifecycleEventType
from dotmac.billing_core.exceptions import (
    ConcurrencyConflictError,
    StorageAdapterError,
    SubscriptionNotFoundError,
)
from dotmac.billing_core.invoicing.models import InvoiceStatus, LineItemKind
from dotmac.billing_core.keys import period_invoice_id
from dotmac.billing_core.metrics import LifecycleMetrics
from dotmac.billing_core.subscriptions.lifecycle import (
    ItemResult,
    LifecycleProcessor,
    process_all,
)
from dotmac.billing_core.subscriptions.models import (
    PendingPlanChange,
    SubscriptionStatus,
)
from tests.billing.factories import PERIOD_END, make_subscription


def at(day: int, month: int = 2) -> datetime:
    return datetime(2024, month, day, tzinfo=UTC)


@pytest.mark.unit
class TestRenewal:
    """Test successful renewals."""

    @pytest.mark.asyncio
    async def test_not_due_is_a_noop(self, billing_context, storage, payments, catalog):
        await storage.create_subscription(make_subscription())

        result = await process_all(billing_context)

        assert result.processed == 0
        assert result.as_counts() == {"renewed": 0, "retried": 0, "grace": 0, "canceled": 0}
        assert payments.attempts == []

    @pytest.mark.asyncio
    async def test_renews_and_advances_period(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.as_counts() == {"renewed": 1, "retried": 0, "grace": 0, "canceled": 0}
        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.current_period_start == PERIOD_END
        assert stored.current_period_end == at(1, month=3)
        assert stored.version == 1
        assert payments.charged_total("cus_123") == 10000

        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment_id == payments.charges[0].payment_id
        assert event_sink.types == [
            LifecycleEventType.INVOICE_CREATED.value,
            LifecycleEventType.INVOICE_PAID.value,
            LifecycleEventType.SUBSCRIPTION_RENEWED.value,
        ]

    @pytest.mark.asyncio
    async def test_repeated_pass_charges_once(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)

        first = await process_all(billing_context)
        second = await process_all(billing_context)

        assert first.renewed == 1
        assert second.processed == 0
        assert len(payments.charges) == 1
        assert len(event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWED)) == 1

    @pytest.mark.asyncio
    async def test_overlapping_passes_charge_once(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)

        results = await asyncio.gather(process_all(billing_context), process_all(billing_context))

        assert sum(r.renewed for r in results) == 1
        assert sum(r.conflicts for r in results) == sum(r.processed for r in results) - 1
        assert len(payments.attempts) == 1
        assert len(event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWED)) == 1
        stored = await storage.get_subscription("sub_test")
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_addons_join_renewal_charge(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription(addon_ids=("addon_storage",)))
        clock.set(PERIOD_END)

        await process_all(billing_context)

        assert payments.charged_total() == 10500
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert [line.kind for line in invoice.line_items] == [
            LineItemKind.SUBSCRIPTION,
            LineItemKind.ADDON,
        ]

    @pytest.mark.asyncio
    async def test_credit_balance_reduces_charge(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription(balance=-3000))
        clock.set(PERIOD_END)

        await process_all(billing_context)

        assert payments.charged_total() == 7000
        stored = await storage.get_subscription("sub_test")
        assert stored.balance == 0

    @pytest.mark.asyncio
    async def test_credit_larger_than_charge_carries_forward(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription(balance=-15000))
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.renewed == 1
        assert payments.attempts == []
        stored = await storage.get_subscription("sub_test")
        assert stored.balance == -5000
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.total == 0
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_pending_plan_change_applied_before_charge(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(
            make_subscription(
                pending_plan_change=PendingPlanChange(
                    new_plan_id="plan_pro", new_price_id="price_pro_monthly"
                )
            )
        )
        clock.set(PERIOD_END)

        await process_all(billing_context)

        stored = await storage.get_subscription("sub_test")
        assert stored.plan_id == "plan_pro"
        assert stored.price_id == "price_pro_monthly"
        assert stored.pending_plan_change is None
        assert payments.charged_total() == 20000

    @pytest.mark.asyncio
    async def test_scheduled_cancellation_ends_without_charge(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription(cancel_at_period_end=True))
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.canceled == 1
        assert payments.attempts == []
        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_limit_caps_the_batch(self, billing_context, storage, clock, catalog):
        for index in range(3):
            await storage.create_subscription(make_subscription(subscription_id=f"sub_{index}"))
        clock.set(PERIOD_END)

        result = await process_all(billing_context, limit=2)

        assert result.processed == 2
        assert result.renewed == 2

    @pytest.mark.asyncio
    async def test_concurrent_items(self, storage, payments, event_sink, clock, catalog):
        context = BillingContext.create(
            storage,
            payments,
            sinks=[event_sink],
            clock=clock,
            config=LifecycleConfig(max_concurrency=4),
            metrics=LifecycleMetrics(enabled=False),
        )
        for index in range(10):
            await storage.create_subscription(make_subscription(subscription_id=f"sub_{index}"))
        clock.set(PERIOD_END)

        result = await process_all(context)

        assert result.renewed == 10
        assert len(payments.charges) == 10


@pytest.mark.unit
class TestDunning:
    """Test declines, retries, grace period and cancellation for nonpayment."""

    @pytest.mark.asyncio
    async def test_decline_then_retry_success(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        payments.script("cus_123", SimulatedOutcome.DECLINE)
        clock.set(PERIOD_END)

        first = await process_all(billing_context)

        assert first.retried == 1
        past_due = await storage.get_subscription("sub_test")
        assert past_due.status == SubscriptionStatus.PAST_DUE
        assert past_due.next_retry_at == at(2)
        failed = event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED)
        assert failed[0]["data"]["failure_code"] == "card_declined"

        clock.set(at(2))
        second = await process_all(billing_context)

        assert second.renewed == 1
        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.retry_count == 0
        assert stored.current_period_start == PERIOD_END
        assert len(payments.payments) == 2
        assert payments.charged_total() == 10000
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_exhausted_retries_cancel_for_nonpayment(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        payments.script("cus_123", *[SimulatedOutcome.DECLINE] * 5)

        results = []
        for day in (1, 2, 5, 10, 12):
            clock.set(at(day))
            results.append(await process_all(billing_context))

        assert [r.retried for r in results] == [1, 1, 0, 1, 0]
        assert [r.grace for r in results] == [0, 0, 1, 0, 0]
        assert [r.canceled for r in results] == [0, 0, 0, 0, 1]
        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.CANCELED_NONPAYMENT
        assert stored.cancel_reason == "nonpayment"
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.status == InvoiceStatus.UNCOLLECTIBLE

        clock.set(at(20))
        assert (await process_all(billing_context)).processed == 0

    @pytest.mark.asyncio
    async def test_missing_payment_method_is_a_decline(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        payments.remove_default_payment_method("cus_123")
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.retried == 1
        failed = event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED)
        assert failed[0]["data"]["failure_code"] == "no_payment_method"
        assert payments.attempts == []


@pytest.mark.unit
class TestTrials:
    @pytest.mark.asyncio
    async def test_trial_converts_at_trial_end(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(
            make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)
        )
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.renewed == 1
        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.current_period_start == PERIOD_END
        assert len(event_sink.of_type(LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERTED)) == 1
        assert payments.charged_total() == 10000

    @pytest.mark.asyncio
    async def test_failed_conversion_cancels_and_voids_invoice(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(
            make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)
        )
        payments.script("cus_123", SimulatedOutcome.DECLINE)
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.canceled == 1
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.status == InvoiceStatus.VOID
        assert invoice.metadata["void_reason"] == "trial_conversion_failed"

    @pytest.mark.asyncio
    async def test_trial_expires_without_auto_convert(
        self, storage, payments, event_sink, clock, catalog
    ):
        context = BillingContext.create(
            storage,
            payments,
            sinks=[event_sink],
            clock=clock,
            config=LifecycleConfig(auto_convert_trials=False),
            metrics=LifecycleMetrics(enabled=False),
        )
        await storage.create_subscription(
            make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)
        )
        clock.set(PERIOD_END)

        result = await process_all(context)

        assert result.canceled == 1
        assert payments.attempts == []
        assert len(event_sink.of_type(LifecycleEventType.SUBSCRIPTION_TRIAL_EXPIRED)) == 1


@pytest.mark.unit
class TestFailureIsolation:
    """Test that collaborator failures leave state unchanged and stay per item."""

    @pytest.mark.asyncio
    async def test_transport_error_leaves_state_unchanged(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        await storage.create_subscription(
            make_subscription(subscription_id="sub_other", customer_id="cus_456")
        )
        payments.set_default_payment_method("cus_456", "4242424242424242")
        payments.script("cus_123", SimulatedOutcome.ERROR)
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.renewed == 1
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.subscription_id == "sub_test"
        assert error.error_code == "PAYMENT_ADAPTER_ERROR"
        assert error.retryable

        stored = await storage.get_subscription("sub_test")
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.version == 0
        assert stored.current_period_end == PERIOD_END
        assert event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED) == []

        retry = await process_all(billing_context)
        assert retry.renewed == 1

    @pytest.mark.asyncio
    async def test_pending_payment_leaves_state_unchanged(
        self, billing_context, storage, payments, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        payments.script("cus_123", SimulatedOutcome.PENDING)
        clock.set(PERIOD_END)

        first = await process_all(billing_context)

        assert first.pending == 1
        outcome = first.outcomes[0]
        assert outcome.result == ItemResult.PENDING
        stored = await storage.get_subscription("sub_test")
        assert stored.version == 0

        again = await process_all(billing_context)
        assert again.pending == 1
        assert len(payments.payments) == 1

        payments.settle(outcome.payment_id, "succeeded")
        settled = await process_all(billing_context)

        assert settled.renewed == 1
        assert len(payments.payments) == 1
        assert payments.charged_total() == 10000

    @pytest.mark.asyncio
    async def test_failed_invoice_settlement_leaves_subscription_due(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)
        failure = StorageAdapterError("database unavailable", operation="update_invoice")

        with patch.object(storage, "update_invoice", AsyncMock(side_effect=failure)):
            first = await process_all(billing_context)

        assert first.renewed == 0
        assert [e.error_code for e in first.errors] == ["STORAGE_ADAPTER_ERROR"]
        stored = await storage.get_subscription("sub_test")
        assert stored.version == 0
        assert stored.current_period_end == PERIOD_END
        assert event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWED) == []

        second = await process_all(billing_context)

        assert second.renewed == 1
        assert len(payments.payments) == 1
        assert payments.charged_total() == 10000
        invoice = await storage.get_invoice(period_invoice_id("sub_test", PERIOD_END))
        assert invoice.status == InvoiceStatus.PAID
        assert len(event_sink.of_type(LifecycleEventType.INVOICE_PAID)) == 1

    @pytest.mark.asyncio
    async def test_invoice_paid_by_an_earlier_pass_is_not_charged_again(
        self, billing_context, storage, payments, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)
        conflict = ConcurrencyConflictError("lost", entity_id="sub_test", expected_version=0)

        with patch.object(
            storage, "compare_and_swap_subscription", AsyncMock(side_effect=conflict)
        ):
            await process_all(billing_context)

        result = await process_all(billing_context)

        assert result.renewed == 1
        assert len(payments.attempts) == 1
        assert len(event_sink.of_type(LifecycleEventType.INVOICE_PAID)) == 1
        stored = await storage.get_subscription("sub_test")
        assert stored.current_period_start == PERIOD_END

    @pytest.mark.asyncio
    async def test_lost_compare_and_swap_is_a_conflict(
        self, billing_context, storage, event_sink, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)
        conflict = ConcurrencyConflictError("lost", entity_id="sub_test", expected_version=0)

        with patch.object(
            storage, "compare_and_swap_subscription", AsyncMock(side_effect=conflict)
        ):
            result = await process_all(billing_context)

        assert result.conflicts == 1
        assert result.renewed == 0
        assert result.errors == []
        assert event_sink.of_type(LifecycleEventType.SUBSCRIPTION_RENEWED) == []

    @pytest.mark.asyncio
    async def test_unknown_price_is_reported_per_item(
        self, billing_context, storage, clock, catalog
    ):
        await storage.create_subscription(make_subscription(price_id="price_gone"))
        await storage.create_subscription(make_subscription(subscription_id="sub_ok"))
        clock.set(PERIOD_END)

        result = await process_all(billing_context)

        assert result.renewed == 1
        assert [e.error_code for e in result.errors] == ["UNKNOWN_PRICE"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(
        self, billing_context, storage, clock, catalog
    ):
        await storage.create_subscription(make_subscription())
        clock.set(PERIOD_END)

        with patch.object(storage, "get_price", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await process_all(billing_context)

        assert result.errors[0].error_code == "INTERNAL_ERROR"
        assert not result.errors[0].retryable


@pytest.mark.unit
class TestProcessSubscription:
    @pytest.mark.asyncio
    async def test_single_subscription(self, billing_context, storage, clock, catalog):
        await storage.create_subscription(make_subscription())

        outcome = await LifecycleProcessor(billing_context).process_subscription(
            "sub_test", now=PERIOD_END
        )

        assert outcome.result == ItemResult.RENEWED
        assert outcome.status == SubscriptionStatus.ACTIVE
        assert outcome.invoice_id == period_invoice_id("sub_test", PERIOD_END)

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, billing_context):
        with pytest.raises(SubscriptionNotFoundError):
            await LifecycleProcessor(billing_context).process_subscription("sub_missing")
