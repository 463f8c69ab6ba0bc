"""
Subscription models.

A ``Subscription`` is never deleted; it is only moved into a terminal status.
Instances are immutable: every change goes through the state machine, which
returns a new instance with ``version`` bumped. ``version`` is the
compare-and-swap token storage adapters check on write.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dotmac.billing_core.dates import ensure_utc


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    PAUSED = "paused"
    CANCELED = "canceled"
    CANCELED_NONPAYMENT = "canceled_nonpayment"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED_NONPAYMENT})

# Service continues through dunning.
ENTITLED_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.GRACE_PERIOD,
    }
)


class ProrationBehavior(str, Enum):
    """How an immediate plan change settles the price difference."""

    CREATE_PRORATIONS = "create_prorations"
    ALWAYS_INVOICE = "always_invoice"
    NONE = "none"


class ApplyAt(str, Enum):
    """When a plan change takes effect."""

    IMMEDIATELY = "immediately"
    PERIOD_END = "period_end"


class PendingPlanChange(BaseModel):
    """A plan change stored until the next renewal transition."""

    model_config = ConfigDict(frozen=True)

    new_plan_id: str = Field(min_length=1)
    new_price_id: str = Field(min_length=1)
    apply_at: ApplyAt = ApplyAt.PERIOD_END
    requested_at: datetime | None = None


class ChangePlanRequest(BaseModel):
    """Plan change request accepted by ``SubscriptionService.change_plan``."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    new_plan_id: str = Field(min_length=1, description="Target plan")
    new_price_id: str = Field(min_length=1, description="Target price, must belong to the plan")
    proration_behavior: ProrationBehavior = Field(ProrationBehavior.CREATE_PRORATIONS)
    apply_at: ApplyAt = Field(ApplyAt.IMMEDIATELY)


class Subscription(BaseModel):
    """Recurring subscription of one customer to one price."""

    model_config = ConfigDict(frozen=True, validate_default=True)

    subscription_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    price_id: str = Field(min_length=1)
    status: SubscriptionStatus
    quantity: int = Field(1, ge=1)

    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None

    retry_count: int = Field(0, ge=0, description="Failed attempts in the current dunning cycle")
    next_retry_at: datetime | None = None
    grace_period_ends_at: datetime | None = None

    pending_plan_change: PendingPlanChange | None = None
    addon_ids: tuple[str, ...] = ()
    cancel_at_period_end: bool = False
    balance: int = Field(0, description="Carried to next renewal: positive owed, negative credit")

    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    paused_at: datetime | None = None
    cancel_reason: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator(
        "current_period_start",
        "current_period_end",
        "trial_end",
        "next_retry_at",
        "grace_period_ends_at",
        "canceled_at",
        "ended_at",
        "paused_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_invariants(self) -> "Subscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        in_grace = self.status == SubscriptionStatus.GRACE_PERIOD
        if in_grace != (self.grace_period_ends_at is not None):
            raise ValueError("grace_period_ends_at must be set exactly when status is grace_period")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def due_at(self) -> datetime | None:
        """Instant the lifecycle processor next has work for this subscription."""
        if self.status == SubscriptionStatus.INCOMPLETE:
            return self.current_period_start
        if self.status == SubscriptionStatus.TRIALING:
            return self.trial_end or self.current_period_end
        if self.status == SubscriptionStatus.ACTIVE:
            return self.current_period_end
        if self.status == SubscriptionStatus.PAST_DUE:
            return self.next_retry_at or self.current_period_end
        if self.status == SubscriptionStatus.GRACE_PERIOD:
            candidates = [d for d in (self.next_retry_at, self.grace_period_ends_at) if d]
            return min(candidates)
        return None

    def is_due(self, now: datetime) -> bool:
        due = self.due_at
        return due is not None and due <= now

    def evolve(self, **changes: Any) -> "Subscription":
        """Return a validated copy with ``changes`` applied and the version bumped."""
        data = self.model_dump()
        data.update(changes)
        data["version"] = self.version + 1
        return Subscription.model_validate(data)


__all__ = [
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "ENTITLED_STATUSES",
    "ProrationBehavior",
    "ApplyAt",
    "PendingPlanChange",
    "ChangePlanRequest",
    "Subscription",
]
