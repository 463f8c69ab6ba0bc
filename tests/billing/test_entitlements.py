"""
Tests for entitlement and limit resolution.
"""

import asyncio

import pytest

from dotmac.billing_core.catalog.models import UNLIMITED
from dotmac.billing_core.entitlements.resolver import EntitlementService, resolve_capabilities
from dotmac.billing_core.exceptions import BillingValidationError, SubscriptionNotFoundError
from dotmac.billing_core.subscriptions.models import SubscriptionStatus
from tests.billing.factories import make_addon, make_plan, make_subscription


@pytest.mark.unit
class TestResolveCapabilities:
    def test_plan_only(self):
        capabilities = resolve_capabilities(make_plan())

        assert capabilities.entitlements == ("api_access",)
        assert capabilities.limits == {"projects": 3, "seats": 5}

    def test_addon_entitlements_are_unioned(self):
        capabilities = resolve_capabilities(make_plan(), [make_addon()])

        assert capabilities.has_entitlement("api_access")
        assert capabilities.has_entitlement("extra_storage")
        assert not capabilities.has_entitlement("sso")

    def test_limits_take_maximum(self):
        capabilities = resolve_capabilities(
            make_plan(limits={"seats": 5}), [make_addon(limits={"seats": 3})]
        )

        assert capabilities.limit_for("seats") == 5

    def test_unlimited_always_wins(self):
        capabilities = resolve_capabilities(
            make_plan(limits={"seats": UNLIMITED}),
            [make_addon(addon_id="a1", limits={"seats": 1000})],
        )

        assert capabilities.is_unlimited("seats")

        from_addon = resolve_capabilities(
            make_plan(limits={"seats": 5}), [make_addon(limits={"seats": UNLIMITED})]
        )
        assert from_addon.limit_for("seats") == UNLIMITED

    def test_undefined_key_is_not_granted(self):
        capabilities = resolve_capabilities(make_plan())

        assert capabilities.limit_for("storage_gb") is None
        check = capabilities.check_limit("storage_gb", current_usage=0)
        assert not check.granted
        assert not check.allowed

    def test_merge_is_order_independent(self):
        first = make_addon(addon_id="a1", limits={"seats": 8}, entitlements=("x",))
        second = make_addon(addon_id="a2", limits={"seats": 12}, entitlements=("y",))

        assert resolve_capabilities(make_plan(), [first, second]) == resolve_capabilities(
            make_plan(), [second, first]
        )


@pytest.mark.unit
class TestCheckLimit:
    def test_within_limit(self):
        check = resolve_capabilities(make_plan()).check_limit("seats", current_usage=4)

        assert check.allowed
        assert check.remaining == 1

    def test_at_limit(self):
        check = resolve_capabilities(make_plan()).check_limit("seats", current_usage=5)

        assert not check.allowed
        assert check.remaining == 0

    def test_requested_more_than_remaining(self):
        check = resolve_capabilities(make_plan()).check_limit(
            "seats", current_usage=3, requested=3
        )

        assert not check.allowed

    def test_unlimited_allows_anything(self):
        capabilities = resolve_capabilities(make_plan(limits={"seats": UNLIMITED}))

        check = capabilities.check_limit("seats", current_usage=10**6)

        assert check.allowed
        assert check.remaining is None


@pytest.mark.unit
class TestEntitlementService:
    @pytest.mark.asyncio
    async def test_for_subscription_merges_addons(self, billing_context, storage, catalog):
        await storage.create_subscription(make_subscription(addon_ids=("addon_storage",)))

        capabilities = await EntitlementService(billing_context).for_subscription("sub_test")

        assert capabilities.has_entitlement("extra_storage")
        assert capabilities.limit_for("seats") == 10

    @pytest.mark.asyncio
    async def test_terminal_subscription_has_no_capabilities(
        self, billing_context, storage, catalog
    ):
        await storage.create_subscription(
            make_subscription(status=SubscriptionStatus.CANCELED)
        )
        service = EntitlementService(billing_context)

        assert not await service.has_entitlement("sub_test", "api_access")

    @pytest.mark.asyncio
    async def test_check_limit(self, billing_context, storage, catalog):
        await storage.create_subscription(make_subscription())

        check = await EntitlementService(billing_context).check_limit("sub_test", "projects", 3)

        assert check.granted
        assert not check.allowed

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, billing_context):
        with pytest.raises(SubscriptionNotFoundError):
            await EntitlementService(billing_context).for_subscription("sub_missing")


@pytest.mark.unit
class TestUsageTracking:
    """Test usage counted against the effective limits."""

    @pytest.fixture
    async def service(self, billing_context, storage, catalog):
        await storage.create_subscription(make_subscription())
        await storage.create_subscription(
            make_subscription(
                subscription_id="sub_pro", plan_id="plan_pro", price_id="price_pro_monthly"
            )
        )
        return EntitlementService(billing_context)

    @pytest.mark.asyncio
    async def test_increment_refused_past_limit(self, service):
        first = await service.increment_usage("sub_test", "seats", 4)
        refused = await service.increment_usage("sub_test", "seats", 2)

        assert first.allowed
        assert first.current_usage == 4
        assert first.remaining == 1
        assert not refused.allowed
        assert refused.current_usage == 4
        assert await service.get_usage("sub_test", "seats") == 4

    @pytest.mark.asyncio
    async def test_unlimited_key_is_counted_but_never_refused(self, service):
        check = await service.increment_usage("sub_pro", "projects", 10_000)

        assert check.allowed
        assert check.limit == UNLIMITED
        assert await service.get_usage("sub_pro", "projects") == 10_000

    @pytest.mark.asyncio
    async def test_ungranted_key_is_refused(self, service):
        check = await service.increment_usage("sub_test", "storage_gb")

        assert not check.granted
        assert not check.allowed
        assert await service.get_usage("sub_test", "storage_gb") == 0

    @pytest.mark.asyncio
    async def test_release_floors_at_zero_and_reset_clears(self, service):
        await service.increment_usage("sub_test", "seats", 2)

        assert await service.release_usage("sub_test", "seats", 5) == 0

        await service.increment_usage("sub_test", "seats", 3)
        await service.reset_usage("sub_test", "seats")
        assert (await service.check_usage("sub_test", "seats", 5)).allowed

    @pytest.mark.asyncio
    async def test_concurrent_increments_never_exceed_limit(self, service):
        checks = await asyncio.gather(
            *(service.increment_usage("sub_test", "seats") for _ in range(12))
        )

        assert sum(check.allowed for check in checks) == 5
        assert await service.get_usage("sub_test", "seats") == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -3])
    async def test_amount_must_be_positive(self, service, amount):
        with pytest.raises(BillingValidationError):
            await service.increment_usage("sub_test", "seats", amount)
