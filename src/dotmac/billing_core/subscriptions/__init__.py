"""Subscription models and the lifecycle state machine.

The processor and service live in ``subscriptions.lifecycle`` and
``subscriptions.service``; both depend on invoicing, which imports these
models, so they are not re-exported here.
"""

from dotmac.billing_core.subscriptions.models import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    ApplyAt,
    ChangePlanRequest,
    PendingPlanChange,
    ProrationBehavior,
    Subscription,
    SubscriptionStatus,
)
from dotmac.billing_core.subscriptions.state_machine import (
    LifecycleAction,
    PaymentOutcome,
    Transition,
    next_action,
)

__all__ = [
    "ENTITLED_STATUSES",
    "TERMINAL_STATUSES",
    "ApplyAt",
    "ChangePlanRequest",
    "PendingPlanChange",
    "ProrationBehavior",
    "Subscription",
    "SubscriptionStatus",
    "LifecycleAction",
    "PaymentOutcome",
    "Transition",
    "next_action",
]
