"""
Tests for the subscription state machine.

Transitions are pure, so these tests drive them directly without storage.
"""

from datetime import UTC, datetime, timedelta

import pytest

from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.events import LifecycleEventType
from dotmac.billing_core.exceptions import SubscriptionStateError
from dotmac.billing_core.subscriptions.models import (
    ApplyAt,
    PendingPlanChange,
    SubscriptionStatus,
)
from dotmac.billing_core.subscriptions.state_machine import (
    LifecycleAction,
    PaymentOutcome,
    add_addon,
    apply_payment_outcome,
    apply_plan_change,
    cancel,
    end_at_period_end,
    expire_trial,
    next_action,
    pause,
    prepare_charge,
    remove_addon,
    resume,
    schedule_plan_change,
)
from tests.billing.factories import NOW, PERIOD_END, make_price, make_subscription

CONFIG = LifecycleConfig(grace_period_days=7, retry_intervals=(1, 3, 5))
PRICE = make_price()


def fail(subscription, action, now):
    return apply_payment_outcome(
        subscription,
        action,
        PaymentOutcome.FAILED,
        now,
        CONFIG,
        PRICE,
        amount=PRICE.unit_amount,
        failure_code="card_declined",
    )


def succeed(subscription, action, now):
    return apply_payment_outcome(
        subscription,
        action,
        PaymentOutcome.SUCCEEDED,
        now,
        CONFIG,
        PRICE,
        amount=PRICE.unit_amount,
        payment_id="pay_1",
    )


def at(day: int) -> datetime:
    return datetime(2024, 2, day, tzinfo=UTC)


@pytest.mark.unit
class TestNextAction:
    def test_not_due(self):
        assert next_action(make_subscription(), NOW, CONFIG) == LifecycleAction.NONE

    def test_renew_at_period_end(self):
        assert next_action(make_subscription(), PERIOD_END, CONFIG) == LifecycleAction.RENEW

    def test_end_when_cancel_scheduled(self):
        subscription = make_subscription(cancel_at_period_end=True)

        assert next_action(subscription, PERIOD_END, CONFIG) == LifecycleAction.END_AT_PERIOD_END

    def test_trial_converts_or_expires(self):
        trial = make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)
        no_convert = LifecycleConfig(auto_convert_trials=False)

        assert next_action(trial, PERIOD_END, CONFIG) == LifecycleAction.CONVERT_TRIAL
        assert next_action(trial, PERIOD_END, no_convert) == LifecycleAction.EXPIRE_TRIAL

    def test_past_due_waits_for_retry(self):
        subscription = make_subscription(
            status=SubscriptionStatus.PAST_DUE, retry_count=1, next_retry_at=at(2)
        )

        assert next_action(subscription, at(1), CONFIG) == LifecycleAction.NONE
        assert next_action(subscription, at(2), CONFIG) == LifecycleAction.RETRY

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELED]
    )
    def test_paused_and_terminal_never_act(self, status):
        subscription = make_subscription(status=status)

        assert next_action(subscription, at(28), CONFIG) == LifecycleAction.NONE


@pytest.mark.unit
class TestDunningSequence:
    """retry_intervals=[1, 3, 5] with a 7 day grace period."""

    def test_failures_walk_to_canceled_nonpayment(self):
        subscription = make_subscription()

        renewal = fail(subscription, LifecycleAction.RENEW, at(1))
        assert renewal.status == SubscriptionStatus.PAST_DUE
        assert renewal.event.type == LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED
        assert renewal.subscription.retry_count == 1
        assert renewal.subscription.next_retry_at == at(2)

        retry = fail(renewal.subscription, LifecycleAction.RETRY, at(2))
        assert retry.status == SubscriptionStatus.PAST_DUE
        assert retry.event.type == LifecycleEventType.SUBSCRIPTION_RETRY_SCHEDULED
        assert retry.subscription.retry_count == 2
        assert retry.subscription.next_retry_at == at(5)

        grace = fail(retry.subscription, LifecycleAction.RETRY, at(5))
        assert grace.status == SubscriptionStatus.GRACE_PERIOD
        assert grace.event.type == LifecycleEventType.SUBSCRIPTION_GRACE_PERIOD_STARTED
        assert grace.subscription.grace_period_ends_at == at(12)
        assert grace.subscription.next_retry_at == at(10)

        grace_retry = fail(grace.subscription, LifecycleAction.GRACE_RETRY, at(10))
        assert grace_retry.status == SubscriptionStatus.GRACE_PERIOD
        assert grace_retry.event.type == LifecycleEventType.SUBSCRIPTION_RETRY_FAILED
        assert grace_retry.subscription.next_retry_at == at(12)

        canceled = fail(grace_retry.subscription, LifecycleAction.GRACE_RETRY, at(12))
        assert canceled.status == SubscriptionStatus.CANCELED_NONPAYMENT
        assert canceled.event.type == LifecycleEventType.SUBSCRIPTION_CANCELED_NONPAYMENT
        assert canceled.subscription.grace_period_ends_at is None
        assert canceled.subscription.ended_at == at(12)

    def test_success_while_past_due_returns_to_active(self):
        past_due = fail(make_subscription(), LifecycleAction.RENEW, at(1)).subscription

        recovered = succeed(past_due, LifecycleAction.RETRY, at(2))

        assert recovered.status == SubscriptionStatus.ACTIVE
        assert recovered.event.type == LifecycleEventType.SUBSCRIPTION_RETRY_SUCCEEDED
        assert recovered.subscription.retry_count == 0
        assert recovered.subscription.next_retry_at is None
        assert recovered.subscription.current_period_start == PERIOD_END
        assert recovered.subscription.current_period_end == datetime(2024, 3, 1, tzinfo=UTC)

    def test_success_inside_grace_window(self):
        subscription = make_subscription(
            status=SubscriptionStatus.GRACE_PERIOD,
            retry_count=3,
            next_retry_at=at(10),
            grace_period_ends_at=at(12),
        )

        recovered = succeed(subscription, LifecycleAction.GRACE_RETRY, at(10))

        assert recovered.status == SubscriptionStatus.ACTIVE
        assert recovered.event.type == LifecycleEventType.SUBSCRIPTION_RECOVERED
        assert recovered.subscription.grace_period_ends_at is None

    def test_each_transition_bumps_version(self):
        subscription = make_subscription(version=4)

        transition = fail(subscription, LifecycleAction.RENEW, at(1))

        assert transition.subscription.version == 5
        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_action_requires_matching_status(self):
        with pytest.raises(SubscriptionStateError):
            fail(make_subscription(), LifecycleAction.RETRY, at(1))


@pytest.mark.unit
class TestTrials:
    def test_conversion_success_starts_first_period_at_trial_end(self):
        trial = make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)

        converted = succeed(trial, LifecycleAction.CONVERT_TRIAL, PERIOD_END + timedelta(hours=3))

        assert converted.status == SubscriptionStatus.ACTIVE
        assert converted.event.type == LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERTED
        assert converted.subscription.current_period_start == PERIOD_END

    def test_conversion_failure_cancels(self):
        trial = make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)

        failed = fail(trial, LifecycleAction.CONVERT_TRIAL, PERIOD_END)

        assert failed.status == SubscriptionStatus.CANCELED
        assert failed.subscription.cancel_reason == "trial_conversion_failed"

    def test_expire_trial(self):
        trial = make_subscription(status=SubscriptionStatus.TRIALING, trial_end=PERIOD_END)

        expired = expire_trial(trial, PERIOD_END)

        assert expired.status == SubscriptionStatus.CANCELED
        assert expired.event.type == LifecycleEventType.SUBSCRIPTION_TRIAL_EXPIRED


@pytest.mark.unit
class TestActivation:
    """Signups whose first payment was pending."""

    def test_incomplete_is_due_for_activation(self):
        subscription = make_subscription(status=SubscriptionStatus.INCOMPLETE)

        assert next_action(subscription, NOW, CONFIG) == LifecycleAction.ACTIVATE
        assert not subscription.is_entitled

    def test_success_keeps_the_billed_period(self):
        subscription = make_subscription(status=SubscriptionStatus.INCOMPLETE)

        activated = succeed(subscription, LifecycleAction.ACTIVATE, NOW + timedelta(hours=2))

        assert activated.status == SubscriptionStatus.ACTIVE
        assert activated.event.type == LifecycleEventType.SUBSCRIPTION_ACTIVATED
        assert activated.subscription.current_period_start == NOW
        assert activated.subscription.current_period_end == PERIOD_END

    def test_failure_cancels(self):
        subscription = make_subscription(status=SubscriptionStatus.INCOMPLETE)

        failed = fail(subscription, LifecycleAction.ACTIVATE, NOW + timedelta(hours=2))

        assert failed.status == SubscriptionStatus.CANCELED
        assert failed.event.type == LifecycleEventType.SUBSCRIPTION_ACTIVATION_FAILED
        assert failed.subscription.cancel_reason == "initial_payment_failed"
        assert failed.subscription.retry_count == 0


@pytest.mark.unit
class TestVoluntaryTransitions:
    def test_cancel_immediately(self):
        transition = cancel(make_subscription(), NOW, reason="too_expensive")

        assert transition.status == SubscriptionStatus.CANCELED
        assert transition.event.data["immediate"] is True
        assert transition.subscription.cancel_reason == "too_expensive"

    def test_cancel_at_period_end_then_end(self):
        scheduled = cancel(make_subscription(), NOW, at_period_end=True)
        assert scheduled.status == SubscriptionStatus.ACTIVE
        assert scheduled.event.type == LifecycleEventType.SUBSCRIPTION_CANCEL_SCHEDULED

        ended = end_at_period_end(scheduled.subscription, PERIOD_END)
        assert ended.status == SubscriptionStatus.CANCELED
        assert ended.subscription.ended_at == PERIOD_END

    def test_cannot_cancel_twice(self):
        canceled = cancel(make_subscription(), NOW).subscription

        with pytest.raises(SubscriptionStateError):
            cancel(canceled, NOW)

    def test_pause_and_resume(self):
        paused = pause(make_subscription(), NOW)
        assert paused.status == SubscriptionStatus.PAUSED

        resumed = resume(paused.subscription, NOW + timedelta(days=3))
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.subscription.paused_at is None

    def test_only_active_can_pause(self):
        with pytest.raises(SubscriptionStateError):
            pause(make_subscription(status=SubscriptionStatus.PAST_DUE, retry_count=1), NOW)

    def test_plan_change_keeps_status(self):
        past_due = make_subscription(status=SubscriptionStatus.PAST_DUE, retry_count=1)

        changed = apply_plan_change(
            past_due, NOW, "plan_pro", "price_pro_monthly", balance_delta=2500
        )

        assert changed.status == SubscriptionStatus.PAST_DUE
        assert changed.subscription.price_id == "price_pro_monthly"
        assert changed.subscription.balance == 2500
        assert changed.event.type == LifecycleEventType.SUBSCRIPTION_PLAN_CHANGED

    def test_paused_subscription_cannot_change_plan(self):
        paused = make_subscription(status=SubscriptionStatus.PAUSED)

        with pytest.raises(SubscriptionStateError):
            schedule_plan_change(paused, NOW, "plan_pro", "price_pro_monthly")

    def test_scheduled_change_applied_before_renewal_charge(self):
        scheduled = schedule_plan_change(
            make_subscription(), NOW, "plan_pro", "price_pro_monthly"
        ).subscription
        assert scheduled.pending_plan_change == PendingPlanChange(
            new_plan_id="plan_pro",
            new_price_id="price_pro_monthly",
            apply_at=ApplyAt.PERIOD_END,
            requested_at=NOW,
        )

        charged = prepare_charge(scheduled, LifecycleAction.RENEW)

        assert charged.plan_id == "plan_pro"
        assert charged.price_id == "price_pro_monthly"
        assert charged.pending_plan_change is None
        assert charged.version == scheduled.version

    def test_addons(self):
        with_addon = add_addon(make_subscription(), NOW, "addon_storage").subscription
        assert with_addon.addon_ids == ("addon_storage",)

        with pytest.raises(SubscriptionStateError):
            add_addon(with_addon, NOW, "addon_storage")

        removed = remove_addon(with_addon, NOW, "addon_storage").subscription
        assert removed.addon_ids == ()
