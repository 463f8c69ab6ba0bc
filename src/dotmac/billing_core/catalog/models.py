"""
Catalog models: plans, prices and add-ons.

Catalog records are immutable once a subscription references them. The only
administrative change is deactivation, which stops new subscriptions and plan
changes to the record but never affects existing renewals.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dotmac.billing_core.money import validate_currency

UNLIMITED = -1


class BillingInterval(str, Enum):
    """Billing interval units."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def _validate_limits(value: dict[str, int]) -> dict[str, int]:
    for key, limit in value.items():
        if limit != UNLIMITED and limit < 0:
            raise ValueError(f"limit '{key}' must be -1 (unlimited) or >= 0, got {limit}")
    return value


class Plan(BaseModel):
    """A plan owns entitlement keys and numeric limits."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    plan_id: str = Field(min_length=1, description="Plan identifier")
    name: str = Field(min_length=1, max_length=255, description="Display name")
    entitlements: tuple[str, ...] = Field(default=(), description="Boolean capability keys")
    limits: dict[str, int] = Field(
        default_factory=dict, description="Quota key to value (-1 = unlimited)"
    )
    active: bool = Field(True, description="Inactive plans cannot be newly subscribed to")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def validate_limits(cls, v: dict[str, int]) -> dict[str, int]:
        return _validate_limits(v)

    def deactivate(self) -> "Plan":
        return self.model_copy(update={"active": False})


class Price(BaseModel):
    """A recurring price belonging to exactly one plan."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    price_id: str = Field(min_length=1, description="Price identifier")
    plan_id: str = Field(min_length=1, description="Owning plan")
    unit_amount: int = Field(ge=0, description="Amount per unit in minor currency units")
    currency: str = Field(min_length=3, max_length=3, description="ISO 4217 currency code")
    billing_interval: BillingInterval = Field(BillingInterval.MONTH)
    interval_count: int = Field(1, ge=1, description="Intervals per billing period")
    trial_days: int | None = Field(None, ge=0, description="Trial length for new subscriptions")
    active: bool = Field(True, description="Inactive prices still renew existing subscriptions")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)

    @property
    def has_trial(self) -> bool:
        return bool(self.trial_days)

    def same_cadence(self, other: "Price") -> bool:
        """True when both prices bill on the same interval and interval count."""
        return (
            self.billing_interval == other.billing_interval
            and self.interval_count == other.interval_count
        )

    def deactivate(self) -> "Price":
        return self.model_copy(update={"active": False})


class AddOn(BaseModel):
    """An optional extra attached to a subscription.

    Its amount joins the renewal charge and its entitlements and limits merge
    into the subscription's effective capabilities.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    addon_id: str = Field(min_length=1, description="Add-on identifier")
    name: str = Field(min_length=1, max_length=255)
    unit_amount: int = Field(0, ge=0, description="Amount per billing period in minor units")
    currency: str = Field(min_length=3, max_length=3)
    billing_interval: BillingInterval = Field(BillingInterval.MONTH)
    entitlements: tuple[str, ...] = Field(default=())
    limits: dict[str, int] = Field(default_factory=dict)
    compatible_plan_ids: tuple[str, ...] = Field(
        default=(), description="Plans this add-on can attach to (empty = all)"
    )
    active: bool = Field(True)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)

    @field_validator("limits")
    @classmethod
    def validate_limits(cls, v: dict[str, int]) -> dict[str, int]:
        return _validate_limits(v)

    def is_compatible_with(self, plan_id: str) -> bool:
        return not self.compatible_plan_ids or plan_id in self.compatible_plan_ids
