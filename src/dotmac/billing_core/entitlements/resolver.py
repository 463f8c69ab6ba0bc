"""
Entitlement and limit resolution.

Effective capabilities are merged from the subscription's plan and every
attached add-on:

- entitlements: union of all boolean keys
- limits: per key, the maximum across the sources defining it, except that
  ``-1`` (unlimited) from any source always wins

A key no source defines is "not granted"; it is never defaulted to zero.

Usage against a limit is counted per subscription in storage. An increment
is one guarded storage step, so concurrent callers can never push a finite
limit over; unlimited keys are counted but never refused.
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

from dotmac.billing_core.catalog.models import UNLIMITED, AddOn, Plan
from dotmac.billing_core.exceptions import (
    BillingValidationError,
    SubscriptionNotFoundError,
    UnknownPlanError,
)

if TYPE_CHECKING:
    from dotmac.billing_core.context import BillingContext

logger = structlog.get_logger(__name__)


class LimitCheck(BaseModel):
    """Answer to "may this customer use ``requested`` more of ``key``?"."""

    model_config = ConfigDict(frozen=True)

    key: str
    granted: bool = Field(description="Whether any source defines the limit")
    allowed: bool
    limit: int | None = None
    current_usage: int = 0
    remaining: int | None = Field(None, description="None when unlimited or not granted")


class EffectiveCapabilities(BaseModel):
    """Merged entitlements and limits for one subscription."""

    model_config = ConfigDict(frozen=True)

    entitlements: tuple[str, ...] = ()
    limits: dict[str, int] = Field(default_factory=dict)

    def has_entitlement(self, key: str) -> bool:
        return key in self.entitlements

    def limit_for(self, key: str) -> int | None:
        """Effective limit, ``-1`` for unlimited, ``None`` when not granted."""
        return self.limits.get(key)

    def is_unlimited(self, key: str) -> bool:
        return self.limits.get(key) == UNLIMITED

    def check_limit(self, key: str, current_usage: int, requested: int = 1) -> LimitCheck:
        limit = self.limits.get(key)
        if limit is None:
            return LimitCheck(key=key, granted=False, allowed=False, current_usage=current_usage)
        if limit == UNLIMITED:
            return LimitCheck(
                key=key, granted=True, allowed=True, limit=UNLIMITED, current_usage=current_usage
            )
        return LimitCheck(
            key=key,
            granted=True,
            allowed=current_usage + requested <= limit,
            limit=limit,
            current_usage=current_usage,
            remaining=max(0, limit - current_usage),
        )


def merge_limit(current: int | None, candidate: int) -> int:
    if current is None:
        return candidate
    if current == UNLIMITED or candidate == UNLIMITED:
        return UNLIMITED
    return max(current, candidate)


def resolve_capabilities(plan: Plan, addons: Iterable[AddOn] = ()) -> EffectiveCapabilities:
    """Merge plan and add-on grants. Pure and deterministic."""
    entitlements: set[str] = set(plan.entitlements)
    limits: dict[str, int] = dict(plan.limits)

    for addon in addons:
        entitlements.update(addon.entitlements)
        for key, value in addon.limits.items():
            limits[key] = merge_limit(limits.get(key), value)

    return EffectiveCapabilities(
        entitlements=tuple(sorted(entitlements)),
        limits={key: limits[key] for key in sorted(limits)},
    )


class EntitlementService:
    """Resolves capabilities for stored subscriptions."""

    def __init__(self, context: "BillingContext") -> None:
        self.context = context

    async def for_subscription(self, subscription_id: str) -> EffectiveCapabilities:
        storage = self.context.storage
        subscription = await storage.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        if not subscription.is_entitled:
            return EffectiveCapabilities()

        plan = await storage.get_plan(subscription.plan_id)
        if plan is None:
            raise UnknownPlanError(
                f"Plan {subscription.plan_id} not found", plan_id=subscription.plan_id
            )

        addons: list[AddOn] = []
        for addon_id in subscription.addon_ids:
            addon = await storage.get_addon(addon_id)
            if addon is None:
                logger.warning(
                    "entitlements.addon_missing",
                    subscription_id=subscription_id,
                    addon_id=addon_id,
                )
                continue
            addons.append(addon)

        return resolve_capabilities(plan, addons)

    async def has_entitlement(self, subscription_id: str, key: str) -> bool:
        capabilities = await self.for_subscription(subscription_id)
        return capabilities.has_entitlement(key)

    async def check_limit(
        self, subscription_id: str, key: str, current_usage: int, requested: int = 1
    ) -> LimitCheck:
        capabilities = await self.for_subscription(subscription_id)
        return capabilities.check_limit(key, current_usage, requested)

    # ==================== Usage ====================

    async def get_usage(self, subscription_id: str, key: str) -> int:
        return await self.context.storage.get_usage(subscription_id, key)

    async def check_usage(self, subscription_id: str, key: str, requested: int = 1) -> LimitCheck:
        """``check_limit`` against the usage recorded in storage."""
        capabilities = await self.for_subscription(subscription_id)
        usage = await self.context.storage.get_usage(subscription_id, key)
        return capabilities.check_limit(key, usage, requested)

    async def increment_usage(self, subscription_id: str, key: str, amount: int = 1) -> LimitCheck:
        """Record ``amount`` more usage of ``key`` if the effective limit allows it.

        A refused increment records nothing and returns ``allowed=False`` with
        the usage as it stands. Keys the subscription is not granted are
        always refused.
        """
        _require_positive(amount)
        storage = self.context.storage
        capabilities = await self.for_subscription(subscription_id)
        limit = capabilities.limit_for(key)
        if limit is None:
            usage = await storage.get_usage(subscription_id, key)
            return capabilities.check_limit(key, usage, amount)

        updated = await storage.adjust_usage_if_within(
            subscription_id, key, amount, None if limit == UNLIMITED else limit
        )
        if updated is None:
            usage = await storage.get_usage(subscription_id, key)
            logger.info(
                "entitlements.usage_refused",
                subscription_id=subscription_id,
                key=key,
                limit=limit,
                current_usage=usage,
                requested=amount,
            )
            return capabilities.check_limit(key, usage, amount)

        logger.debug(
            "entitlements.usage_recorded",
            subscription_id=subscription_id,
            key=key,
            amount=amount,
            current_usage=updated,
        )
        return capabilities.check_limit(key, updated, 0)

    async def release_usage(self, subscription_id: str, key: str, amount: int = 1) -> int:
        """Give back ``amount`` of usage, never going below zero. Returns the new usage."""
        _require_positive(amount)
        updated = await self.context.storage.adjust_usage_if_within(
            subscription_id, key, -amount, None
        )
        return updated or 0

    async def reset_usage(self, subscription_id: str, key: str) -> None:
        await self.context.storage.reset_usage(subscription_id, key)
        logger.info("entitlements.usage_reset", subscription_id=subscription_id, key=key)


def _require_positive(amount: int) -> None:
    if amount < 1:
        raise BillingValidationError("amount must be >= 1", context={"amount": amount})
