"""
Subscription state machine.

Owns the status of one subscription and its transition rules:

    trialing -> active -> past_due -> grace_period -> canceled_nonpayment
    incomplete -> active | canceled     (first payment still pending at signup)
    trialing | active -> canceled       (voluntary, immediate or at period end)
    active <-> paused

All functions are pure: given a subscription, the current instant, a payment
outcome and the lifecycle configuration they return a ``Transition`` holding
the new subscription (version bumped) and exactly one event. Nothing here
performs I/O; the lifecycle processor and the subscription service persist
the result and publish the event.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from dotmac.billing_core.catalog.models import Price
from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.dates import add_days, add_interval, min_datetime
from dotmac.billing_core.events import LifecycleEvent, LifecycleEventType, build_event
from dotmac.billing_core.exceptions import SubscriptionStateError
from dotmac.billing_core.subscriptions.models import (
    ApplyAt,
    PendingPlanChange,
    Subscription,
    SubscriptionStatus,
)


class LifecycleAction(str, Enum):
    """What the lifecycle processor must do for a subscription right now."""

    NONE = "none"
    ACTIVATE = "activate"
    CONVERT_TRIAL = "convert_trial"
    EXPIRE_TRIAL = "expire_trial"
    RENEW = "renew"
    END_AT_PERIOD_END = "end_at_period_end"
    RETRY = "retry"
    GRACE_RETRY = "grace_retry"


CHARGING_ACTIONS = frozenset(
    {
        LifecycleAction.ACTIVATE,
        LifecycleAction.CONVERT_TRIAL,
        LifecycleAction.RENEW,
        LifecycleAction.RETRY,
        LifecycleAction.GRACE_RETRY,
    }
)

_REQUIRED_STATUS = {
    LifecycleAction.ACTIVATE: SubscriptionStatus.INCOMPLETE,
    LifecycleAction.CONVERT_TRIAL: SubscriptionStatus.TRIALING,
    LifecycleAction.EXPIRE_TRIAL: SubscriptionStatus.TRIALING,
    LifecycleAction.RENEW: SubscriptionStatus.ACTIVE,
    LifecycleAction.END_AT_PERIOD_END: SubscriptionStatus.ACTIVE,
    LifecycleAction.RETRY: SubscriptionStatus.PAST_DUE,
    LifecycleAction.GRACE_RETRY: SubscriptionStatus.GRACE_PERIOD,
}

_SUCCESS_EVENTS = {
    LifecycleAction.ACTIVATE: LifecycleEventType.SUBSCRIPTION_ACTIVATED,
    LifecycleAction.CONVERT_TRIAL: LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERTED,
    LifecycleAction.RENEW: LifecycleEventType.SUBSCRIPTION_RENEWED,
    LifecycleAction.RETRY: LifecycleEventType.SUBSCRIPTION_RETRY_SUCCEEDED,
    LifecycleAction.GRACE_RETRY: LifecycleEventType.SUBSCRIPTION_RECOVERED,
}


class PaymentOutcome(str, Enum):
    """Definitive payment outcome fed back into the state machine."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Transition:
    """Result of one state machine transition."""

    subscription: Subscription
    event: LifecycleEvent
    previous_status: SubscriptionStatus

    @property
    def status(self) -> SubscriptionStatus:
        return self.subscription.status

    @property
    def status_changed(self) -> bool:
        return self.subscription.status != self.previous_status


def _transition(
    before: Subscription,
    after: Subscription,
    event_type: LifecycleEventType,
    now: datetime,
    **data: Any,
) -> Transition:
    event = build_event(
        event_type,
        occurred_at=now,
        subscription_id=after.subscription_id,
        customer_id=after.customer_id,
        status=after.status.value,
        previous_status=before.status.value,
        plan_id=after.plan_id,
        price_id=after.price_id,
        **data,
    )
    return Transition(subscription=after, event=event, previous_status=before.status)


def _require_not_terminal(subscription: Subscription, requested: str) -> None:
    if subscription.is_terminal:
        raise SubscriptionStateError(
            f"Subscription {subscription.subscription_id} is {subscription.status.value}",
            current_state=subscription.status.value,
            requested=requested,
        )


# ============================================================================
# Scheduled actions
# ============================================================================


def next_action(
    subscription: Subscription, now: datetime, config: LifecycleConfig
) -> LifecycleAction:
    """Derive the action due for ``subscription`` at ``now``."""
    status = subscription.status

    if status == SubscriptionStatus.INCOMPLETE:
        return LifecycleAction.ACTIVATE

    if status == SubscriptionStatus.TRIALING:
        trial_end = subscription.trial_end or subscription.current_period_end
        if now < trial_end:
            return LifecycleAction.NONE
        if subscription.cancel_at_period_end or not config.auto_convert_trials:
            return LifecycleAction.EXPIRE_TRIAL
        return LifecycleAction.CONVERT_TRIAL

    if status == SubscriptionStatus.ACTIVE:
        if now < subscription.current_period_end:
            return LifecycleAction.NONE
        if subscription.cancel_at_period_end:
            return LifecycleAction.END_AT_PERIOD_END
        return LifecycleAction.RENEW

    if status == SubscriptionStatus.PAST_DUE:
        retry_at = subscription.next_retry_at or subscription.current_period_end
        return LifecycleAction.RETRY if now >= retry_at else LifecycleAction.NONE

    if status == SubscriptionStatus.GRACE_PERIOD:
        deadline = min_datetime(subscription.next_retry_at, subscription.grace_period_ends_at)
        if deadline is not None and now >= deadline:
            return LifecycleAction.GRACE_RETRY
        return LifecycleAction.NONE

    # paused and terminal statuses never act on their own
    return LifecycleAction.NONE


def prepare_charge(subscription: Subscription, action: LifecycleAction) -> Subscription:
    """Apply a period-end plan change before a renewal or trial charge is computed.

    The returned subscription is not a persisted state of its own; it becomes
    part of the transition produced by ``apply_payment_outcome``.
    """
    pending = subscription.pending_plan_change
    if (
        action in (LifecycleAction.RENEW, LifecycleAction.CONVERT_TRIAL)
        and pending is not None
        and pending.apply_at == ApplyAt.PERIOD_END
    ):
        return subscription.model_copy(
            update={
                "plan_id": pending.new_plan_id,
                "price_id": pending.new_price_id,
                "pending_plan_change": None,
            }
        )
    return subscription


def apply_payment_outcome(
    subscription: Subscription,
    action: LifecycleAction,
    outcome: PaymentOutcome,
    now: datetime,
    config: LifecycleConfig,
    price: Price,
    amount: int = 0,
    payment_id: str | None = None,
    failure_code: str | None = None,
    failure_message: str | None = None,
    remaining_balance: int = 0,
    **extra: Any,
) -> Transition:
    """Feed a definitive payment outcome for a charging action back into the machine.

    ``subscription`` is the result of ``prepare_charge`` and ``price`` its
    (possibly new) price, which sets the length of the next period.
    ``remaining_balance`` is the credit left unused by this charge; it stays
    on the subscription after a successful payment.
    """
    if action not in CHARGING_ACTIONS:
        raise SubscriptionStateError(
            f"{action.value} does not charge",
            current_state=subscription.status.value,
            requested=action.value,
        )
    required = _REQUIRED_STATUS[action]
    if subscription.status != required:
        raise SubscriptionStateError(
            f"{action.value} requires status {required.value}",
            current_state=subscription.status.value,
            requested=action.value,
        )

    payment_data: dict[str, Any] = {**extra, "amount": amount, "currency": price.currency}
    if payment_id:
        payment_data["payment_id"] = payment_id

    if PaymentOutcome(outcome) == PaymentOutcome.SUCCEEDED:
        return _payment_succeeded(
            subscription, action, now, price, payment_data, remaining_balance
        )

    if failure_code:
        payment_data["failure_code"] = failure_code
    if failure_message:
        payment_data["failure_message"] = failure_message
    return _payment_failed(subscription, action, now, config, payment_data)


def _payment_succeeded(
    subscription: Subscription,
    action: LifecycleAction,
    now: datetime,
    price: Price,
    payment_data: dict[str, Any],
    remaining_balance: int = 0,
) -> Transition:
    if action == LifecycleAction.ACTIVATE:
        # The first period was billed at signup.
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        remaining_balance = subscription.balance
    else:
        if action == LifecycleAction.CONVERT_TRIAL:
            period_start = subscription.trial_end or subscription.current_period_end
        else:
            period_start = subscription.current_period_end
        period_end = add_interval(period_start, price.billing_interval, price.interval_count)

    after = subscription.evolve(
        status=SubscriptionStatus.ACTIVE,
        current_period_start=period_start,
        current_period_end=period_end,
        retry_count=0,
        next_retry_at=None,
        grace_period_ends_at=None,
        balance=remaining_balance,
        updated_at=now,
    )
    data = dict(payment_data)
    data["retry_count"] = subscription.retry_count
    return _transition(
        subscription,
        after,
        _SUCCESS_EVENTS[action],
        now,
        current_period_start=period_start,
        current_period_end=period_end,
        **data,
    )


def _payment_failed(
    subscription: Subscription,
    action: LifecycleAction,
    now: datetime,
    config: LifecycleConfig,
    payment_data: dict[str, Any],
) -> Transition:
    offsets = config.retry_intervals

    if action == LifecycleAction.ACTIVATE:
        after = subscription.evolve(
            status=SubscriptionStatus.CANCELED,
            canceled_at=now,
            ended_at=now,
            cancel_reason="initial_payment_failed",
            pending_plan_change=None,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_ACTIVATION_FAILED,
            now,
            **payment_data,
        )

    if action == LifecycleAction.CONVERT_TRIAL:
        after = subscription.evolve(
            status=SubscriptionStatus.CANCELED,
            canceled_at=now,
            ended_at=now,
            cancel_reason="trial_conversion_failed",
            pending_plan_change=None,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERSION_FAILED,
            now,
            **payment_data,
        )

    if action == LifecycleAction.RENEW:
        next_retry_at = add_days(now, offsets[0])
        after = subscription.evolve(
            status=SubscriptionStatus.PAST_DUE,
            retry_count=1,
            next_retry_at=next_retry_at,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED,
            now,
            retry_count=1,
            next_retry_at=next_retry_at,
            **payment_data,
        )

    retry_count = subscription.retry_count + 1

    if action == LifecycleAction.RETRY:
        if retry_count >= config.max_retries:
            grace_ends_at = add_days(now, config.grace_period_days)
            next_retry_at = min(add_days(now, offsets[-1]), grace_ends_at)
            after = subscription.evolve(
                status=SubscriptionStatus.GRACE_PERIOD,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                grace_period_ends_at=grace_ends_at,
                updated_at=now,
            )
            return _transition(
                subscription,
                after,
                LifecycleEventType.SUBSCRIPTION_GRACE_PERIOD_STARTED,
                now,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                grace_period_ends_at=grace_ends_at,
                **payment_data,
            )

        next_retry_at = add_days(now, offsets[retry_count - 1])
        after = subscription.evolve(
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_RETRY_SCHEDULED,
            now,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            **payment_data,
        )

    # GRACE_RETRY
    grace_ends_at = subscription.grace_period_ends_at or now
    if now >= grace_ends_at:
        after = subscription.evolve(
            status=SubscriptionStatus.CANCELED_NONPAYMENT,
            retry_count=retry_count,
            next_retry_at=None,
            grace_period_ends_at=None,
            canceled_at=now,
            ended_at=now,
            cancel_reason="nonpayment",
            pending_plan_change=None,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_CANCELED_NONPAYMENT,
            now,
            retry_count=retry_count,
            grace_period_ended_at=grace_ends_at,
            **payment_data,
        )

    next_retry_at = min(add_days(now, offsets[-1]), grace_ends_at)
    after = subscription.evolve(
        retry_count=retry_count,
        next_retry_at=next_retry_at,
        updated_at=now,
    )
    return _transition(
        subscription,
        after,
        LifecycleEventType.SUBSCRIPTION_RETRY_FAILED,
        now,
        retry_count=retry_count,
        next_retry_at=next_retry_at,
        grace_period_ends_at=grace_ends_at,
        **payment_data,
    )


def expire_trial(subscription: Subscription, now: datetime) -> Transition:
    """End a trial that will not convert (auto-convert off or cancellation requested)."""
    if subscription.status != SubscriptionStatus.TRIALING:
        raise SubscriptionStateError(
            "Only trialing subscriptions can expire",
            current_state=subscription.status.value,
            requested=LifecycleAction.EXPIRE_TRIAL.value,
        )
    after = subscription.evolve(
        status=SubscriptionStatus.CANCELED,
        canceled_at=subscription.canceled_at or now,
        ended_at=now,
        cancel_reason=subscription.cancel_reason or "trial_expired",
        pending_plan_change=None,
        updated_at=now,
    )
    return _transition(
        subscription,
        after,
        LifecycleEventType.SUBSCRIPTION_TRIAL_EXPIRED,
        now,
        trial_end=subscription.trial_end or subscription.current_period_end,
    )


def end_at_period_end(subscription: Subscription, now: datetime) -> Transition:
    """Carry out a cancellation scheduled for the end of the current period."""
    if subscription.status != SubscriptionStatus.ACTIVE or not subscription.cancel_at_period_end:
        raise SubscriptionStateError(
            "No cancellation is scheduled for this subscription",
            current_state=subscription.status.value,
            requested=LifecycleAction.END_AT_PERIOD_END.value,
        )
    after = subscription.evolve(
        status=SubscriptionStatus.CANCELED,
        canceled_at=subscription.canceled_at or now,
        ended_at=subscription.current_period_end,
        pending_plan_change=None,
        updated_at=now,
    )
    return _transition(
        subscription,
        after,
        LifecycleEventType.SUBSCRIPTION_CANCELED,
        now,
        immediate=False,
        reason=subscription.cancel_reason,
        ended_at=subscription.current_period_end,
    )


# ============================================================================
# Voluntary operations
# ============================================================================


def cancel(
    subscription: Subscription,
    now: datetime,
    at_period_end: bool = False,
    reason: str | None = None,
) -> Transition:
    """Cancel immediately, or schedule cancellation for the end of the period."""
    _require_not_terminal(subscription, "cancel")

    if at_period_end:
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise SubscriptionStateError(
                "Only active or trialing subscriptions can cancel at period end",
                current_state=subscription.status.value,
                requested="cancel_at_period_end",
            )
        if subscription.cancel_at_period_end:
            raise SubscriptionStateError(
                "Cancellation is already scheduled",
                current_state=subscription.status.value,
                requested="cancel_at_period_end",
            )
        effective_at = (
            subscription.trial_end or subscription.current_period_end
            if subscription.status == SubscriptionStatus.TRIALING
            else subscription.current_period_end
        )
        after = subscription.evolve(
            cancel_at_period_end=True,
            canceled_at=now,
            cancel_reason=reason,
            updated_at=now,
        )
        return _transition(
            subscription,
            after,
            LifecycleEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
            now,
            effective_at=effective_at,
            reason=reason,
        )

    after = subscription.evolve(
        status=SubscriptionStatus.CANCELED,
        canceled_at=now,
        ended_at=now,
        cancel_reason=reason,
        next_retry_at=None,
        grace_period_ends_at=None,
        pending_plan_change=None,
        paused_at=None,
        updated_at=now,
    )
    return _transition(
        subscription,
        after,
        LifecycleEventType.SUBSCRIPTION_CANCELED,
        now,
        immediate=True,
        reason=reason,
    )


def pause(subscription: Subscription, now: datetime) -> Transition:
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise SubscriptionStateError(
            "Only active subscriptions can be paused",
            current_state=subscription.status.value,
            requested="pause",
        )
    after = subscription.evolve(status=SubscriptionStatus.PAUSED, paused_at=now, updated_at=now)
    return _transition(subscription, after, LifecycleEventType.SUBSCRIPTION_PAUSED, now)


def resume(subscription: Subscription, now: datetime) -> Transition:
    """Resume a paused subscription.

    The billing period is kept as it was; if it ended while paused the next
    processing pass renews it.
    """
    if subscription.status != SubscriptionStatus.PAUSED:
        raise SubscriptionStateError(
            "Only paused subscriptions can be resumed",
            current_state=subscription.status.value,
            requested="resume",
        )
    paused_at = subscription.paused_at
    after = subscription.evolve(status=SubscriptionStatus.ACTIVE, paused_at=None, updated_at=now)
    return _transition(
        subscription, after, LifecycleEventType.SUBSCRIPTION_RESUMED, now, paused_at=paused_at
    )


def _require_plan_changeable(subscription: Subscription) -> None:
    _require_not_terminal(subscription, "change_plan")
    if subscription.status == SubscriptionStatus.INCOMPLETE:
        raise SubscriptionStateError(
            "The first payment is still pending",
            current_state=subscription.status.value,
            requested="change_plan",
        )
    if subscription.status == SubscriptionStatus.PAUSED:
        raise SubscriptionStateError(
            "Resume the subscription before changing its plan",
            current_state=subscription.status.value,
            requested="change_plan",
        )


def schedule_plan_change(
    subscription: Subscription,
    now: datetime,
    new_plan_id: str,
    new_price_id: str,
    reason: str | None = None,
) -> Transition:
    """Store a plan change to be applied at the next renewal."""
    _require_plan_changeable(subscription)
    pending = PendingPlanChange(
        new_plan_id=new_plan_id,
        new_price_id=new_price_id,
        apply_at=ApplyAt.PERIOD_END,
        requested_at=now,
    )
    after = subscription.evolve(pending_plan_change=pending, updated_at=now)
    data: dict[str, Any] = {
        "new_plan_id": new_plan_id,
        "new_price_id": new_price_id,
        "effective_at": subscription.current_period_end,
    }
    if reason:
        data["reason"] = reason
    return _transition(
        subscription, after, LifecycleEventType.SUBSCRIPTION_PLAN_CHANGE_SCHEDULED, now, **data
    )


def apply_plan_change(
    subscription: Subscription,
    now: datetime,
    new_plan_id: str,
    new_price_id: str,
    balance_delta: int = 0,
    **data: Any,
) -> Transition:
    """Switch plan and price now. Status does not change."""
    _require_plan_changeable(subscription)
    after = subscription.evolve(
        plan_id=new_plan_id,
        price_id=new_price_id,
        pending_plan_change=None,
        balance=subscription.balance + balance_delta,
        updated_at=now,
    )
    return _transition(
        subscription,
        after,
        LifecycleEventType.SUBSCRIPTION_PLAN_CHANGED,
        now,
        previous_plan_id=subscription.plan_id,
        previous_price_id=subscription.price_id,
        balance_delta=balance_delta,
        balance=after.balance,
        **data,
    )


def add_addon(subscription: Subscription, now: datetime, addon_id: str) -> Transition:
    _require_not_terminal(subscription, "add_addon")
    if addon_id in subscription.addon_ids:
        raise SubscriptionStateError(
            f"Add-on {addon_id} is already attached",
            current_state=subscription.status.value,
            requested="add_addon",
        )
    after = subscription.evolve(addon_ids=(*subscription.addon_ids, addon_id), updated_at=now)
    return _transition(
        subscription, after, LifecycleEventType.SUBSCRIPTION_ADDON_ADDED, now, addon_id=addon_id
    )


def remove_addon(subscription: Subscription, now: datetime, addon_id: str) -> Transition:
    _require_not_terminal(subscription, "remove_addon")
    if addon_id not in subscription.addon_ids:
        raise SubscriptionStateError(
            f"Add-on {addon_id} is not attached",
            current_state=subscription.status.value,
            requested="remove_addon",
        )
    after = subscription.evolve(
        addon_ids=tuple(a for a in subscription.addon_ids if a != addon_id), updated_at=now
    )
    return _transition(
        subscription, after, LifecycleEventType.SUBSCRIPTION_ADDON_REMOVED, now, addon_id=addon_id
    )
