"""
Invoice service.

Builds invoices for subscription periods and explicit charges, drives their
status transitions (draft -> open -> paid | void | uncollectible) and runs
explicit one-off charges through the payment adapter. Paid and void invoices
are immutable.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dotmac.billing_core.adapters.payment import (
    CardTokenPaymentMethod,
    Payment,
    PaymentMethod,
    PaymentRequest,
    SavedPaymentMethod,
)
from dotmac.billing_core.catalog.models import AddOn, Price
from dotmac.billing_core.events import LifecycleEventType, build_event
from dotmac.billing_core.exceptions import (
    BillingError,
    CustomerNotFoundError,
    InvoiceNotFoundError,
    InvoiceStateError,
    PaymentAdapterError,
    PaymentDeclinedError,
    PromoCodeExhaustedError,
)
from dotmac.billing_core.invoicing.models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    compute_totals,
)
from dotmac.billing_core.keys import charge_invoice_id
from dotmac.billing_core.money import ensure_same_currency, validate_currency
from dotmac.billing_core.promotions.models import (
    AppliedDiscount,
    DiscountContext,
    DiscountResult,
)
from dotmac.billing_core.promotions.resolver import PromoCodeResolver

if TYPE_CHECKING:
    from dotmac.billing_core.context import BillingContext
    from dotmac.billing_core.subscriptions.models import Subscription

logger = structlog.get_logger(__name__)

NO_PAYMENT_METHOD = "no_payment_method"


class ChargeRequest(BaseModel):
    """Explicit one-off charge."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    customer_id: str = Field(min_length=1)
    amount: int = Field(gt=0, description="Amount before discounts, minor units")
    currency: str
    description: str = Field("One-time charge", max_length=500)
    promo_codes: list[str] = Field(default_factory=list)
    idempotency_key: str | None = Field(None, description="Caller id preventing duplicate charges")
    payment_method: PaymentMethod | None = None
    plan_id: str | None = None
    product_ids: list[str] = Field(default_factory=list)
    quantity: int = Field(1, ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)


class ChargeResult(BaseModel):
    """Outcome of ``InvoiceService.create_charge``."""

    invoice: Invoice
    payment: Payment | None = None
    discount: DiscountResult | None = None

    @property
    def paid(self) -> bool:
        return self.invoice.status == InvoiceStatus.PAID


class InvoiceService:
    """Invoice construction, transitions and explicit charges."""

    def __init__(self, context: "BillingContext") -> None:
        self.context = context
        self.storage = context.storage
        self.promotions = PromoCodeResolver.from_context(context)

    # ==================== Construction ====================

    def build_subscription_invoice(
        self,
        subscription: "Subscription",
        price: Price,
        addons: Sequence[AddOn],
        invoice_id: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        discounts: Sequence[AppliedDiscount] = (),
    ) -> Invoice:
        """Build the open invoice for one subscription period.

        Lines: the price times quantity, each add-on, and the carried balance
        when non-zero. Add-ons must share the price's currency.
        """
        line_items = [
            InvoiceLineItem(
                description=f"Subscription {price.price_id} x {subscription.quantity}",
                amount=price.unit_amount * subscription.quantity,
                quantity=subscription.quantity,
                kind=LineItemKind.SUBSCRIPTION,
                price_id=price.price_id,
            )
        ]
        for addon in addons:
            ensure_same_currency(price.currency, addon.currency, what="price and add-on")
            line_items.append(
                InvoiceLineItem(
                    description=addon.name,
                    amount=addon.unit_amount,
                    kind=LineItemKind.ADDON,
                    addon_id=addon.addon_id,
                )
            )
        if subscription.balance:
            line_items.append(
                InvoiceLineItem(
                    description="Balance carried from previous changes"
                    if subscription.balance > 0
                    else "Credit carried from previous changes",
                    amount=subscription.balance,
                    kind=LineItemKind.BALANCE,
                )
            )

        subtotal, discount_total, total = compute_totals(line_items, list(discounts))
        return Invoice(
            invoice_id=invoice_id,
            customer_id=subscription.customer_id,
            subscription_id=subscription.subscription_id,
            currency=price.currency,
            line_items=line_items,
            discounts=list(discounts),
            subtotal=subtotal,
            discount_total=discount_total,
            total=total,
            status=InvoiceStatus.OPEN,
            period_start=period_start,
            period_end=period_end,
            created_at=now,
            finalized_at=now,
        )

    async def create(self, invoice: Invoice) -> tuple[Invoice, bool]:
        """Get-or-create; publishes ``invoice.created`` only for a new invoice."""
        stored, created = await self.storage.create_invoice(invoice)
        if created:
            logger.info(
                "invoice.created",
                invoice_id=stored.invoice_id,
                customer_id=stored.customer_id,
                subscription_id=stored.subscription_id,
                total=stored.total,
                currency=stored.currency,
            )
            await self.context.events.publish(
                build_event(
                    LifecycleEventType.INVOICE_CREATED,
                    occurred_at=self.context.now(),
                    subscription_id=stored.subscription_id,
                    customer_id=stored.customer_id,
                    invoice_id=stored.invoice_id,
                    total=stored.total,
                    currency=stored.currency,
                    status=stored.status.value,
                )
            )
        return stored, created

    async def get(self, invoice_id: str) -> Invoice:
        invoice = await self.storage.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    # ==================== Transitions ====================

    async def _transition(
        self, invoice_id: str, status: InvoiceStatus, **changes: Any
    ) -> tuple[Invoice, Invoice]:
        invoice = await self.get(invoice_id)
        if not invoice.can_transition_to(status):
            raise InvoiceStateError(
                f"Invoice {invoice_id} cannot move from {invoice.status.value} to {status.value}",
                invoice_id=invoice_id,
                current_status=invoice.status.value,
                requested=status.value,
            )
        updated = invoice.model_copy(update={"status": status, **changes})
        await self.storage.update_invoice(updated, expected_status=invoice.status)
        return invoice, updated

    async def finalize(self, invoice_id: str) -> Invoice:
        """Move a draft invoice to open."""
        _, updated = await self._transition(
            invoice_id, InvoiceStatus.OPEN, finalized_at=self.context.now()
        )
        return updated

    async def mark_paid(self, invoice_id: str, payment_id: str | None = None) -> Invoice:
        """Move an invoice to paid, redeeming the promo codes it discounts.

        Redemption is keyed by the invoice, so retrying after a failed status
        write never counts a code twice. A code refused after money was
        collected keeps the invoice paid and is listed under
        ``metadata["unredeemed_promo_codes"]``.

        Raises:
            PromoCodeExhaustedError: A code was refused on a zero-total invoice
        """
        changes: dict[str, Any] = {"payment_id": payment_id, "paid_at": self.context.now()}
        invoice = await self.get(invoice_id)
        if invoice.discounts and invoice.can_transition_to(InvoiceStatus.PAID):
            refused = await self.promotions.redeem_invoice(invoice)
            if refused and invoice.total == 0:
                raise PromoCodeExhaustedError(
                    f"Promo code {refused[0]} has reached its redemption limit",
                    code=refused[0],
                )
            if refused:
                logger.warning(
                    "invoice.promo_codes_unredeemed",
                    invoice_id=invoice_id,
                    codes=refused,
                )
                changes["metadata"] = {**invoice.metadata, "unredeemed_promo_codes": refused}

        _, updated = await self._transition(invoice_id, InvoiceStatus.PAID, **changes)
        logger.info(
            "invoice.paid",
            invoice_id=invoice_id,
            payment_id=payment_id,
            total=updated.total,
            currency=updated.currency,
        )
        await self.context.events.publish(
            build_event(
                LifecycleEventType.INVOICE_PAID,
                occurred_at=self.context.now(),
                subscription_id=updated.subscription_id,
                customer_id=updated.customer_id,
                invoice_id=invoice_id,
                payment_id=payment_id,
                total=updated.total,
                currency=updated.currency,
            )
        )
        return updated

    async def void(self, invoice_id: str, reason: str | None = None) -> Invoice:
        metadata_update: dict[str, Any] = {}
        if reason:
            current = await self.get(invoice_id)
            metadata_update["metadata"] = {**current.metadata, "void_reason": reason}
        _, updated = await self._transition(
            invoice_id, InvoiceStatus.VOID, voided_at=self.context.now(), **metadata_update
        )
        logger.info("invoice.voided", invoice_id=invoice_id, reason=reason)
        await self.context.events.publish(
            build_event(
                LifecycleEventType.INVOICE_VOIDED,
                occurred_at=self.context.now(),
                subscription_id=updated.subscription_id,
                customer_id=updated.customer_id,
                invoice_id=invoice_id,
                reason=reason,
            )
        )
        return updated

    async def mark_uncollectible(self, invoice_id: str) -> Invoice:
        _, updated = await self._transition(invoice_id, InvoiceStatus.UNCOLLECTIBLE)
        logger.info("invoice.uncollectible", invoice_id=invoice_id)
        return updated

    # ==================== Payments ====================

    async def resolve_payment_method(
        self,
        customer_id: str,
        payment_method: SavedPaymentMethod | CardTokenPaymentMethod | None = None,
    ) -> SavedPaymentMethod | CardTokenPaymentMethod | None:
        if payment_method is not None:
            return payment_method
        return await self.context.payments.get_default_payment_method(customer_id)

    async def charge_invoice(
        self,
        invoice: Invoice,
        payment_method: SavedPaymentMethod | CardTokenPaymentMethod,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> Payment:
        """Create the payment for an invoice's total and store it.

        Returns succeeded, failed or pending payments. Transport failures and
        unexpected adapter exceptions surface as ``PaymentAdapterError``.
        """
        request = PaymentRequest(
            idempotency_key=idempotency_key,
            customer_id=invoice.customer_id,
            amount=invoice.total,
            currency=invoice.currency,
            payment_method=payment_method,
            description=f"Invoice {invoice.invoice_id}",
            metadata={"invoice_id": invoice.invoice_id, **(metadata or {})},
        )
        adapter = self.context.payments
        try:
            payment = await adapter.create_payment(request)
        except BillingError:
            raise
        except Exception as exc:
            raise PaymentAdapterError(
                f"Payment adapter failed: {exc}",
                provider=adapter.provider,
                context={"invoice_id": invoice.invoice_id, "idempotency_key": idempotency_key},
                cause=exc,
            ) from exc

        await self.storage.save_payment(payment)
        return payment

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Run an explicit one-off charge.

        Promo codes are resolved against the amount and redeemed only once the
        invoice is paid, so a declined charge leaves their counters untouched.
        A repeated ``idempotency_key`` returns a paid invoice without charging
        again and retries an open one under the same payment key.

        Raises:
            CustomerNotFoundError: Unknown customer
            InvalidPromoCodeError / PromoCodeExhaustedError: Promo code rejected
            InvoiceStateError: The keyed invoice was voided
            PaymentDeclinedError: Definitive decline; the invoice stays open
            PaymentAdapterError: Payment collaborator unavailable
        """
        customer = await self.storage.get_customer(request.customer_id)
        if customer is None:
            raise CustomerNotFoundError(
                f"Customer {request.customer_id} not found", customer_id=request.customer_id
            )

        invoice_id = (
            charge_invoice_id(request.idempotency_key)
            if request.idempotency_key
            else f"inv_{uuid4().hex[:32]}"
        )
        existing = await self.storage.get_invoice(invoice_id)
        if existing is not None and existing.status == InvoiceStatus.PAID:
            payment = (
                await self.storage.get_payment(existing.payment_id) if existing.payment_id else None
            )
            return ChargeResult(invoice=existing, payment=payment)
        if existing is not None and existing.status != InvoiceStatus.OPEN:
            raise InvoiceStateError(
                f"Invoice {invoice_id} is {existing.status.value} and cannot be charged",
                invoice_id=invoice_id,
                current_status=existing.status.value,
                requested=InvoiceStatus.PAID.value,
            )

        now = self.context.now()
        discount: DiscountResult | None = None
        if existing is None:
            invoice, discount = await self._build_charge_invoice(
                request, customer.tags, invoice_id, now
            )
        else:
            invoice = existing

        invoice, _ = await self.create(invoice)
        if invoice.total == 0:
            try:
                invoice = await self.mark_paid(invoice.invoice_id)
            except PromoCodeExhaustedError:
                await self.void(invoice.invoice_id, reason="promo_code_exhausted")
                raise
            return ChargeResult(invoice=invoice, discount=discount)

        method = await self.resolve_payment_method(request.customer_id, request.payment_method)
        if method is None:
            raise PaymentDeclinedError(
                "Customer has no default payment method",
                decline_code=NO_PAYMENT_METHOD,
                customer_id=request.customer_id,
            )

        payment = await self.charge_invoice(
            invoice,
            method,
            request.idempotency_key or f"charge_{invoice.invoice_id}",
            metadata=request.metadata,
        )
        if payment.succeeded:
            invoice = await self.mark_paid(invoice.invoice_id, payment.payment_id)
        elif payment.failed:
            logger.info(
                "invoice.charge_declined",
                invoice_id=invoice.invoice_id,
                customer_id=request.customer_id,
                failure_code=payment.failure_code,
            )
            raise PaymentDeclinedError(
                payment.failure_message or "Payment declined",
                decline_code=payment.failure_code,
                payment_id=payment.payment_id,
                customer_id=request.customer_id,
            )
        return ChargeResult(invoice=invoice, payment=payment, discount=discount)

    async def _build_charge_invoice(
        self,
        request: ChargeRequest,
        customer_tags: Sequence[str],
        invoice_id: str,
        now: datetime,
    ) -> tuple[Invoice, DiscountResult | None]:
        line_items = [
            InvoiceLineItem(
                description=request.description,
                amount=request.amount,
                quantity=request.quantity,
                kind=LineItemKind.CHARGE,
            )
        ]
        discount: DiscountResult | None = None
        if request.promo_codes:
            context = DiscountContext(
                customer_id=request.customer_id,
                amount=request.amount,
                currency=request.currency,
                plan_id=request.plan_id,
                product_ids=request.product_ids,
                quantity=request.quantity,
                is_new_customer=await self.is_new_customer(request.customer_id),
                customer_tags=list(customer_tags),
                now=now,
            )
            discount = await self.promotions.resolve(request.promo_codes, context)

        discounts = discount.applied if discount else []
        subtotal, discount_total, total = compute_totals(line_items, discounts)
        invoice = Invoice(
            invoice_id=invoice_id,
            customer_id=request.customer_id,
            currency=request.currency,
            line_items=line_items,
            discounts=discounts,
            subtotal=subtotal,
            discount_total=discount_total,
            total=total,
            status=InvoiceStatus.OPEN,
            created_at=now,
            finalized_at=now,
            metadata=dict(request.metadata),
        )
        return invoice, discount

    async def is_new_customer(self, customer_id: str) -> bool:
        """A customer with no paid invoice yet."""
        invoices = await self.storage.list_customer_invoices(customer_id)
        return not any(invoice.status == InvoiceStatus.PAID for invoice in invoices)
