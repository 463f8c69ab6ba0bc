"""
Subscription service.

Entry points for creating subscriptions and for the voluntary operations
customers and operators trigger between lifecycle passes: plan changes,
cancellation, pause and resume, add-ons.

Every write is a compare-and-swap on the subscription's ``version``; a lost
race surfaces as ``ConcurrencyConflictError`` and the caller reloads and
retries. Events are published after the write.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from dotmac.billing_core.adapters.payment import Payment
from dotmac.billing_core.catalog.models import AddOn, Plan, Price
from dotmac.billing_core.dates import add_days, add_interval
from dotmac.billing_core.events import LifecycleEventType, build_event
from dotmac.billing_core.exceptions import (
    AddOnNotFoundError,
    BillingValidationError,
    ConcurrencyConflictError,
    CustomerNotFoundError,
    PaymentDeclinedError,
    PromoCodeExhaustedError,
    ProrationUndefinedError,
    SubscriptionNotFoundError,
    UnknownPlanError,
    UnknownPriceError,
)
from dotmac.billing_core.invoicing.models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    compute_totals,
)
from dotmac.billing_core.invoicing.service import NO_PAYMENT_METHOD, InvoiceService
from dotmac.billing_core.keys import (
    charge_invoice_id,
    initial_charge_key,
    period_invoice_id,
    plan_change_key,
)
from dotmac.billing_core.money import ensure_same_currency
from dotmac.billing_core.pricing.proration import ProrationResult, calculate_proration
from dotmac.billing_core.promotions.models import DiscountContext, DiscountResult
from dotmac.billing_core.promotions.resolver import PromoCodeResolver
from dotmac.billing_core.subscriptions import state_machine
from dotmac.billing_core.subscriptions.models import (
    ApplyAt,
    ChangePlanRequest,
    ProrationBehavior,
    Subscription,
    SubscriptionStatus,
)
from dotmac.billing_core.subscriptions.state_machine import Transition

if TYPE_CHECKING:
    from dotmac.billing_core.context import BillingContext

logger = structlog.get_logger(__name__)


class SubscriptionService:
    """Subscription creation and voluntary operations."""

    def __init__(self, context: "BillingContext") -> None:
        self.context = context
        self.storage = context.storage
        self.invoices = InvoiceService(context)
        self.promotions = PromoCodeResolver.from_context(context)

    # ==================== Lookups ====================

    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self.storage.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def list_for_customer(self, customer_id: str) -> list[Subscription]:
        return await self.storage.list_customer_subscriptions(customer_id)

    async def _get_plan_and_price(self, plan_id: str | None, price_id: str) -> tuple[Plan, Price]:
        """Load an active price and its active plan."""
        price = await self.storage.get_price(price_id)
        if price is None or not price.active:
            raise UnknownPriceError(f"Price {price_id} not found or inactive", price_id=price_id)
        if plan_id is not None and price.plan_id != plan_id:
            raise UnknownPriceError(
                f"Price {price_id} does not belong to plan {plan_id}",
                price_id=price_id,
                plan_id=plan_id,
            )
        plan = await self.storage.get_plan(price.plan_id)
        if plan is None or not plan.active:
            raise UnknownPlanError(
                f"Plan {price.plan_id} not found or inactive", plan_id=price.plan_id
            )
        return plan, price

    async def _get_addon(self, addon_id: str, plan_id: str, currency: str) -> AddOn:
        addon = await self.storage.get_addon(addon_id)
        if addon is None or not addon.active:
            raise AddOnNotFoundError(
                f"Add-on {addon_id} not found or inactive", addon_id=addon_id
            )
        self._check_addon(addon, plan_id, currency)
        return addon

    @staticmethod
    def _check_addon(addon: AddOn, plan_id: str, currency: str) -> None:
        if not addon.is_compatible_with(plan_id):
            raise BillingValidationError(
                f"Add-on {addon.addon_id} is not available for plan {plan_id}",
                context={"addon_id": addon.addon_id, "plan_id": plan_id},
            )
        ensure_same_currency(currency, addon.currency, what="subscription price and add-on")

    # ==================== Persistence ====================

    async def _persist(self, before: Subscription, transition: Transition) -> Subscription:
        try:
            await self.storage.compare_and_swap_subscription(
                transition.subscription, expected_version=before.version
            )
        except ConcurrencyConflictError:
            self.context.metrics.record_conflict(transition.event.type.value)
            raise
        await self.context.events.publish(transition.event)
        logger.info(
            "subscription.updated",
            subscription_id=before.subscription_id,
            event_type=transition.event.type.value,
            status=transition.status.value,
            version=transition.subscription.version,
        )
        return transition.subscription

    # ==================== Subscribe ====================

    async def subscribe(
        self,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        addon_ids: Sequence[str] = (),
        promo_codes: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create a subscription.

        Prices with ``trial_days`` start a trial and charge at conversion.
        Otherwise the first period is charged now and the subscription is only
        stored if that charge does not fail. A charge the payment adapter
        reports as pending stores the subscription as ``incomplete``, without
        entitlements, until a lifecycle pass sees the payment settle. Promo
        codes discount the first charge and are redeemed once it is paid; for
        trials the discount is kept as a credit balance.

        Raises:
            CustomerNotFoundError: Unknown customer
            UnknownPriceError / UnknownPlanError: Price or plan missing or inactive
            AddOnNotFoundError: Unknown or inactive add-on
            PaymentDeclinedError: First charge declined, nothing stored
            PromoCodeExhaustedError: A free first period lost its promo code, nothing stored
            PaymentAdapterError: Payment collaborator unavailable, nothing stored
        """
        if quantity < 1:
            raise BillingValidationError("quantity must be >= 1", context={"quantity": quantity})
        customer = await self.storage.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(
                f"Customer {customer_id} not found", customer_id=customer_id
            )

        plan, price = await self._get_plan_and_price(None, price_id)
        addons = [await self._get_addon(a, plan.plan_id, price.currency) for a in addon_ids]

        now = self.context.now()
        subscription_id = f"sub_{uuid4().hex[:24]}"
        if price.has_trial:
            trial_end = add_days(now, price.trial_days or 0)
            subscription = Subscription(
                subscription_id=subscription_id,
                customer_id=customer_id,
                plan_id=plan.plan_id,
                price_id=price.price_id,
                status=SubscriptionStatus.TRIALING,
                quantity=quantity,
                current_period_start=now,
                current_period_end=trial_end,
                trial_end=trial_end,
                addon_ids=tuple(a.addon_id for a in addons),
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )
        else:
            subscription = Subscription(
                subscription_id=subscription_id,
                customer_id=customer_id,
                plan_id=plan.plan_id,
                price_id=price.price_id,
                status=SubscriptionStatus.ACTIVE,
                quantity=quantity,
                current_period_start=now,
                current_period_end=add_interval(now, price.billing_interval, price.interval_count),
                addon_ids=tuple(a.addon_id for a in addons),
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )

        codes = list(promo_codes)
        discount: DiscountResult | None = None
        if codes:
            first_charge = price.unit_amount * quantity + sum(a.unit_amount for a in addons)
            discount = await self.promotions.resolve(
                codes,
                DiscountContext(
                    customer_id=customer_id,
                    amount=first_charge,
                    currency=price.currency,
                    plan_id=plan.plan_id,
                    quantity=quantity,
                    is_new_customer=await self.invoices.is_new_customer(customer_id),
                    customer_tags=list(customer.tags),
                    now=now,
                ),
            )

        invoice: Invoice | None = None
        payment: Payment | None = None
        if subscription.status == SubscriptionStatus.TRIALING:
            if discount is not None and discount.applied:
                await self.promotions.redeem(
                    discount, customer_id, subscription_id=subscription_id
                )
                subscription = subscription.model_copy(
                    update={"balance": -discount.discount_amount}
                )
        else:
            invoice, payment = await self._charge_first_period(
                subscription, price, addons, discount, now
            )

        if payment is not None and payment.pending:
            subscription = subscription.model_copy(
                update={"status": SubscriptionStatus.INCOMPLETE}
            )
            logger.info(
                "subscription.first_payment_pending",
                subscription_id=subscription_id,
                payment_id=payment.payment_id,
            )

        await self.storage.create_subscription(subscription)
        if invoice is not None and payment is not None and payment.succeeded:
            await self.invoices.mark_paid(invoice.invoice_id, payment.payment_id)

        logger.info(
            "subscription.created",
            subscription_id=subscription_id,
            customer_id=customer_id,
            price_id=price.price_id,
            status=subscription.status.value,
        )
        await self.context.events.publish(
            build_event(
                LifecycleEventType.SUBSCRIPTION_CREATED,
                occurred_at=now,
                subscription_id=subscription_id,
                customer_id=customer_id,
                status=subscription.status.value,
                plan_id=plan.plan_id,
                price_id=price.price_id,
                quantity=quantity,
                trial_end=subscription.trial_end,
                current_period_end=subscription.current_period_end,
                invoice_id=invoice.invoice_id if invoice else None,
                promo_codes=[d.code for d in discount.applied] if discount else [],
            )
        )
        return subscription

    async def _charge_first_period(
        self,
        subscription: Subscription,
        price: Price,
        addons: Sequence[AddOn],
        discount: DiscountResult | None,
        now: datetime,
    ) -> tuple[Invoice, Payment | None]:
        invoice_id = period_invoice_id(
            subscription.subscription_id, subscription.current_period_start
        )
        invoice = self.invoices.build_subscription_invoice(
            subscription,
            price,
            addons,
            invoice_id,
            subscription.current_period_start,
            subscription.current_period_end,
            now,
            discounts=discount.applied if discount else (),
        )
        invoice, _ = await self.invoices.create(invoice)
        if invoice.total == 0:
            try:
                invoice = await self.invoices.mark_paid(invoice.invoice_id)
            except PromoCodeExhaustedError:
                await self.invoices.void(invoice.invoice_id, reason="promo_code_exhausted")
                raise
            return invoice, None

        method = await self.invoices.resolve_payment_method(subscription.customer_id)
        if method is None:
            await self.invoices.void(invoice.invoice_id, reason=NO_PAYMENT_METHOD)
            raise PaymentDeclinedError(
                "Customer has no default payment method",
                decline_code=NO_PAYMENT_METHOD,
                customer_id=subscription.customer_id,
            )

        payment = await self.invoices.charge_invoice(
            invoice,
            method,
            initial_charge_key(subscription.subscription_id),
            metadata={"subscription_id": subscription.subscription_id},
        )
        if payment.failed:
            await self.invoices.void(invoice.invoice_id, reason=payment.failure_code)
            raise PaymentDeclinedError(
                payment.failure_message or "Payment declined",
                decline_code=payment.failure_code,
                payment_id=payment.payment_id,
                customer_id=subscription.customer_id,
            )
        return invoice, payment

    # ==================== Plan changes ====================

    async def change_plan(self, subscription_id: str, request: ChangePlanRequest) -> Subscription:
        """Change the subscription's plan and price.

        ``apply_at=period_end`` stores the change for the next renewal.
        Immediate changes on trials switch without money movement; otherwise
        the proration is settled per ``proration_behavior``:

        - ``create_prorations``: the net joins the balance billed at renewal
        - ``always_invoice``: a positive net is invoiced and charged now, a
          negative net becomes a credit balance
        - ``none``: switch with no money movement

        When proration is undefined (period already over, or billing
        intervals differ under the ``period_end`` policy) the change is
        deferred to period end instead.
        """
        subscription = await self.get(subscription_id)
        plan, price = await self._get_plan_and_price(request.new_plan_id, request.new_price_id)
        await self._check_addons_for_plan(subscription, plan, price)
        now = self.context.now()

        if request.apply_at == ApplyAt.PERIOD_END:
            return await self._persist(
                subscription,
                state_machine.schedule_plan_change(
                    subscription, now, plan.plan_id, price.price_id
                ),
            )

        if (
            subscription.status == SubscriptionStatus.TRIALING
            or request.proration_behavior == ProrationBehavior.NONE
        ):
            return await self._persist(
                subscription,
                state_machine.apply_plan_change(
                    subscription,
                    now,
                    plan.plan_id,
                    price.price_id,
                    proration_behavior=request.proration_behavior.value,
                ),
            )

        current_price = await self.storage.get_price(subscription.price_id)
        if current_price is None:
            raise UnknownPriceError(
                f"Price {subscription.price_id} not found", price_id=subscription.price_id
            )

        try:
            proration = calculate_proration(
                current_price,
                price,
                subscription.current_period_start,
                subscription.current_period_end,
                now,
                quantity=subscription.quantity,
                cross_interval_policy=self.context.config.cross_interval_policy,
            )
        except ProrationUndefinedError as exc:
            logger.info(
                "subscription.plan_change_deferred",
                subscription_id=subscription_id,
                new_price_id=price.price_id,
                reason=exc.message,
            )
            return await self._persist(
                subscription,
                state_machine.schedule_plan_change(
                    subscription, now, plan.plan_id, price.price_id, reason="proration_undefined"
                ),
            )

        proration_data = {
            "proration_behavior": request.proration_behavior.value,
            "unused_credit": proration.unused_credit,
            "new_charge": proration.new_charge,
            "net_amount": proration.net_amount,
            "days_remaining": proration.days_remaining,
            "total_days": proration.total_days,
        }

        if request.proration_behavior == ProrationBehavior.ALWAYS_INVOICE and proration.is_charge:
            payment = await self._invoice_proration(subscription, proration, now)
            return await self._persist(
                subscription,
                state_machine.apply_plan_change(
                    subscription,
                    now,
                    plan.plan_id,
                    price.price_id,
                    payment_id=payment.payment_id if payment else None,
                    **proration_data,
                ),
            )

        return await self._persist(
            subscription,
            state_machine.apply_plan_change(
                subscription,
                now,
                plan.plan_id,
                price.price_id,
                balance_delta=proration.net_amount,
                **proration_data,
            ),
        )

    async def _check_addons_for_plan(
        self, subscription: Subscription, plan: Plan, price: Price
    ) -> None:
        for addon_id in subscription.addon_ids:
            addon = await self.storage.get_addon(addon_id)
            if addon is not None:
                self._check_addon(addon, plan.plan_id, price.currency)

    async def _invoice_proration(
        self, subscription: Subscription, proration: ProrationResult, now: datetime
    ) -> Payment | None:
        """Invoice and charge a positive proration now. Declines leave the plan unchanged."""
        key = plan_change_key(
            subscription.subscription_id, subscription.version, proration.new_price_id, now
        )
        line_items = [
            InvoiceLineItem(
                description=f"Unused time on {proration.current_price_id}",
                amount=-proration.unused_credit,
                quantity=proration.quantity,
                kind=LineItemKind.PRORATION_CREDIT,
                price_id=proration.current_price_id,
            ),
            InvoiceLineItem(
                description=f"Remaining time on {proration.new_price_id}",
                amount=proration.new_charge,
                quantity=proration.quantity,
                kind=LineItemKind.PRORATION_CHARGE,
                price_id=proration.new_price_id,
            ),
        ]
        subtotal, discount_total, total = compute_totals(line_items, [])
        invoice = Invoice(
            invoice_id=charge_invoice_id(key),
            customer_id=subscription.customer_id,
            subscription_id=subscription.subscription_id,
            currency=proration.currency,
            line_items=line_items,
            subtotal=subtotal,
            discount_total=discount_total,
            total=total,
            status=InvoiceStatus.OPEN,
            period_start=now,
            period_end=subscription.current_period_end,
            created_at=now,
            finalized_at=now,
        )
        invoice, _ = await self.invoices.create(invoice)

        method = await self.invoices.resolve_payment_method(subscription.customer_id)
        if method is None:
            raise PaymentDeclinedError(
                "Customer has no default payment method",
                decline_code=NO_PAYMENT_METHOD,
                customer_id=subscription.customer_id,
            )
        payment = await self.invoices.charge_invoice(
            invoice,
            method,
            key,
            metadata={"subscription_id": subscription.subscription_id, "reason": "plan_change"},
        )
        if payment.failed:
            raise PaymentDeclinedError(
                payment.failure_message or "Payment declined",
                decline_code=payment.failure_code,
                payment_id=payment.payment_id,
                customer_id=subscription.customer_id,
            )
        if payment.succeeded:
            await self.invoices.mark_paid(invoice.invoice_id, payment.payment_id)
        return payment

    # ==================== Voluntary operations ====================

    async def cancel(
        self, subscription_id: str, at_period_end: bool = False, reason: str | None = None
    ) -> Subscription:
        subscription = await self.get(subscription_id)
        transition = state_machine.cancel(
            subscription, self.context.now(), at_period_end=at_period_end, reason=reason
        )
        updated = await self._persist(subscription, transition)
        if updated.is_terminal:
            self.context.metrics.record_cancellation(reason or "voluntary")
            await self._void_unpaid_invoice(subscription, reason)
        return updated

    async def _void_unpaid_invoice(self, subscription: Subscription, reason: str | None) -> None:
        """Void the open invoice of the period a canceled subscription still owed."""
        if subscription.status == SubscriptionStatus.INCOMPLETE:
            period_start = subscription.current_period_start
        elif subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.GRACE_PERIOD):
            period_start = subscription.current_period_end
        else:
            return
        invoice = await self.storage.get_invoice(
            period_invoice_id(subscription.subscription_id, period_start)
        )
        if invoice is not None and invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN):
            await self.invoices.void(invoice.invoice_id, reason=reason or "canceled")

    async def pause(self, subscription_id: str) -> Subscription:
        subscription = await self.get(subscription_id)
        return await self._persist(
            subscription, state_machine.pause(subscription, self.context.now())
        )

    async def resume(self, subscription_id: str) -> Subscription:
        subscription = await self.get(subscription_id)
        return await self._persist(
            subscription, state_machine.resume(subscription, self.context.now())
        )

    async def add_addon(self, subscription_id: str, addon_id: str) -> Subscription:
        subscription = await self.get(subscription_id)
        price = await self.storage.get_price(subscription.price_id)
        if price is None:
            raise UnknownPriceError(
                f"Price {subscription.price_id} not found", price_id=subscription.price_id
            )
        await self._get_addon(addon_id, subscription.plan_id, price.currency)
        return await self._persist(
            subscription, state_machine.add_addon(subscription, self.context.now(), addon_id)
        )

    async def remove_addon(self, subscription_id: str, addon_id: str) -> Subscription:
        subscription = await self.get(subscription_id)
        return await self._persist(
            subscription, state_machine.remove_addon(subscription, self.context.now(), addon_id)
        )
