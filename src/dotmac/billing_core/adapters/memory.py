"""
In-memory storage adapter.

Every operation runs under one ``asyncio.Lock`` so compare-and-swap and the
guarded redemption increment are atomic with respect to other coroutines on
the same event loop. Records are copied on the way in and out.
"""

import asyncio
from collections import defaultdict
from datetime import datetime

import structlog

from dotmac.billing_core.adapters.payment import Payment
from dotmac.billing_core.adapters.storage import StorageAdapter
from dotmac.billing_core.catalog.models import AddOn, Plan, Price
from dotmac.billing_core.customers import Customer
from dotmac.billing_core.exceptions import (
    BillingValidationError,
    ConcurrencyConflictError,
    InvoiceNotFoundError,
    PromoCodeNotFoundError,
)
from dotmac.billing_core.invoicing.models import Invoice, InvoiceStatus
from dotmac.billing_core.promotions.models import PromoCode
from dotmac.billing_core.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)

_SKIPPED_STATUSES = frozenset(
    {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED_NONPAYMENT}
)


class InMemoryStorageAdapter(StorageAdapter):
    """Dict-backed storage for tests, simulations and single-process use."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._customers: dict[str, Customer] = {}
        self._plans: dict[str, Plan] = {}
        self._prices: dict[str, Price] = {}
        self._addons: dict[str, AddOn] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._promo_codes: dict[str, PromoCode] = {}
        self._redemptions: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._invoice_redemptions: dict[tuple[str, str], datetime] = {}
        self._invoices: dict[str, Invoice] = {}
        self._payments: dict[str, Payment] = {}
        self._usage: defaultdict[tuple[str, str], int] = defaultdict(int)

    # Customers

    async def get_customer(self, customer_id: str) -> Customer | None:
        return self._customers.get(customer_id)

    async def save_customer(self, customer: Customer) -> Customer:
        async with self._lock:
            self._customers[customer.customer_id] = customer
        return customer

    # Catalog

    async def get_plan(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    async def save_plan(self, plan: Plan) -> Plan:
        async with self._lock:
            self._plans[plan.plan_id] = plan
        return plan

    async def get_price(self, price_id: str) -> Price | None:
        return self._prices.get(price_id)

    async def save_price(self, price: Price) -> Price:
        async with self._lock:
            self._prices[price.price_id] = price
        return price

    async def get_addon(self, addon_id: str) -> AddOn | None:
        return self._addons.get(addon_id)

    async def save_addon(self, addon: AddOn) -> AddOn:
        async with self._lock:
            self._addons[addon.addon_id] = addon
        return addon

    # Subscriptions

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self._lock:
            if subscription.subscription_id in self._subscriptions:
                raise BillingValidationError(
                    f"Subscription {subscription.subscription_id} already exists",
                    context={"subscription_id": subscription.subscription_id},
                )
            self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    async def compare_and_swap_subscription(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription:
        async with self._lock:
            current = self._subscriptions.get(subscription.subscription_id)
            if current is None or current.version != expected_version:
                logger.info(
                    "storage.cas_conflict",
                    subscription_id=subscription.subscription_id,
                    expected_version=expected_version,
                    stored_version=current.version if current else None,
                )
                raise ConcurrencyConflictError(
                    f"Subscription {subscription.subscription_id} was modified concurrently",
                    entity_id=subscription.subscription_id,
                    expected_version=expected_version,
                )
            self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    async def list_due_subscriptions(self, now: datetime, limit: int) -> list[Subscription]:
        due = [
            sub
            for sub in self._subscriptions.values()
            if sub.status not in _SKIPPED_STATUSES and sub.is_due(now)
        ]
        due.sort(key=lambda sub: (sub.due_at, sub.subscription_id))
        return due[:limit]

    async def list_customer_subscriptions(self, customer_id: str) -> list[Subscription]:
        return [sub for sub in self._subscriptions.values() if sub.customer_id == customer_id]

    # Promo codes

    async def get_promo_code(self, code: str) -> PromoCode | None:
        promo = self._promo_codes.get(code.upper())
        return promo.model_copy(deep=True) if promo else None

    async def save_promo_code(self, promo_code: PromoCode) -> PromoCode:
        async with self._lock:
            self._promo_codes[promo_code.code] = promo_code.model_copy(deep=True)
        return promo_code

    async def increment_redemptions_if_below(
        self,
        code: str,
        customer_id: str,
        max_redemptions: int | None,
        max_per_customer: int | None,
        invoice_id: str | None = None,
        *,
        redeemed_at: datetime,
    ) -> bool:
        async with self._lock:
            promo = self._promo_codes.get(code.upper())
            if promo is None:
                raise PromoCodeNotFoundError(f"Promo code {code} not found", code=code)
            if invoice_id is not None and (promo.code, invoice_id) in self._invoice_redemptions:
                return True
            if max_redemptions is not None and promo.current_redemptions >= max_redemptions:
                return False
            key = (promo.code, customer_id)
            if max_per_customer is not None and self._redemptions[key] >= max_per_customer:
                return False
            self._promo_codes[promo.code] = promo.model_copy(
                update={"current_redemptions": promo.current_redemptions + 1}
            )
            self._redemptions[key] += 1
            if invoice_id is not None:
                self._invoice_redemptions[(promo.code, invoice_id)] = redeemed_at
        return True

    async def has_invoice_redemption(self, code: str, invoice_id: str) -> bool:
        return (code.upper(), invoice_id) in self._invoice_redemptions

    async def count_customer_redemptions(self, code: str, customer_id: str) -> int:
        return self._redemptions.get((code.upper(), customer_id), 0)

    # Invoices and payments

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    async def create_invoice(self, invoice: Invoice) -> tuple[Invoice, bool]:
        async with self._lock:
            existing = self._invoices.get(invoice.invoice_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
        return invoice, True

    async def update_invoice(
        self, invoice: Invoice, expected_status: InvoiceStatus | None = None
    ) -> Invoice:
        async with self._lock:
            stored = self._invoices.get(invoice.invoice_id)
            if stored is None:
                raise InvoiceNotFoundError(
                    f"Invoice {invoice.invoice_id} not found", invoice_id=invoice.invoice_id
                )
            if expected_status is not None and stored.status != expected_status:
                raise ConcurrencyConflictError(
                    f"Invoice {invoice.invoice_id} was modified concurrently",
                    entity_id=invoice.invoice_id,
                )
            self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
        return invoice

    async def list_customer_invoices(self, customer_id: str) -> list[Invoice]:
        return [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.customer_id == customer_id
        ]

    async def save_payment(self, payment: Payment) -> Payment:
        async with self._lock:
            self._payments[payment.payment_id] = payment
        return payment

    async def get_payment(self, payment_id: str) -> Payment | None:
        return self._payments.get(payment_id)

    # Usage

    async def get_usage(self, subscription_id: str, key: str) -> int:
        return self._usage.get((subscription_id, key), 0)

    async def adjust_usage_if_within(
        self, subscription_id: str, key: str, delta: int, limit: int | None
    ) -> int | None:
        async with self._lock:
            current = self._usage[(subscription_id, key)]
            updated = max(0, current + delta)
            if delta > 0 and limit is not None and updated > limit:
                return None
            self._usage[(subscription_id, key)] = updated
        return updated

    async def reset_usage(self, subscription_id: str, key: str) -> None:
        async with self._lock:
            self._usage.pop((subscription_id, key), None)
