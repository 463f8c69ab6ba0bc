"""
Promo code resolver.

Validates codes against a candidate charge, combines them according to
their stacking modes, and commits redemptions through the storage adapter's
guarded increment once the charge they discount has been paid.

Validation short-circuits in this order:

1. code is active
2. ``valid_from <= now <= valid_until``
3. ``current_redemptions < max_redemptions``
4. per-customer redemptions ``< max_redemptions_per_customer``
5. plan and product applicability (empty lists mean "all")
6. fixed-amount currency matches the charge
7. conditions, in list order

Combination: a code joins the applied set only when it and every code
already applied are ``stack``. Otherwise, under ``list_order`` it replaces
the set; under ``largest_first`` and ``priority`` the codes already applied
take precedence and the newcomer is skipped. Applied codes
discount sequentially against the amount left by the previous ones, so the
final amount never goes below zero.
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from dotmac.billing_core.events import EventPublisher, LifecycleEventType, build_event
from dotmac.billing_core.exceptions import (
    InvalidPromoCodeError,
    PromoCodeExhaustedError,
    PromoCodeNotFoundError,
)
from dotmac.billing_core.money import currency_precision, money_from_minor_units
from dotmac.billing_core.promotions.conditions import evaluate_conditions
from dotmac.billing_core.promotions.models import (
    AppliedDiscount,
    DiscountContext,
    DiscountResult,
    DiscountType,
    PromoCode,
    PromoValidation,
    SkippedDiscount,
    StackingMode,
)
from dotmac.billing_core.settings import CombinationOrder
from dotmac.billing_core.time_source import SystemTimeSource

if TYPE_CHECKING:
    from dotmac.billing_core.adapters.storage import StorageAdapter
    from dotmac.billing_core.context import BillingContext
    from dotmac.billing_core.invoicing.models import Invoice
    from dotmac.billing_core.metrics import LifecycleMetrics
    from dotmac.billing_core.time_source import TimeSource

logger = structlog.get_logger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,64}$")


def normalize_code(code: str) -> str:
    """Strip and upper-case a code, rejecting anything outside ``[A-Z0-9_-]{3,64}``."""
    normalized = (code or "").strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise InvalidPromoCodeError(
            "Promo code must be 3-64 characters of letters, digits, '-' or '_'",
            code=code,
            reason="malformed",
        )
    return normalized


def calculate_discount(promo: PromoCode, amount: int) -> int:
    """Discount a single code takes from ``amount``. Never negative, never above ``amount``."""
    if amount <= 0:
        return 0
    if promo.discount_type == DiscountType.PERCENTAGE:
        return amount * min(100, max(0, promo.discount_value)) // 100
    return min(max(0, promo.discount_value), amount)


def describe(promo: PromoCode) -> str:
    """Human-readable description, e.g. ``"20% off on select plans"``."""
    if promo.discount_type == DiscountType.PERCENTAGE:
        parts = [f"{promo.discount_value}% off"]
    else:
        currency = promo.currency or "USD"
        money = money_from_minor_units(promo.discount_value, currency)
        parts = [f"{currency} {money.amount:.{currency_precision(currency)}f} off"]

    if promo.applicable_plan_ids:
        parts.append("on select plans")
    if promo.valid_until:
        parts.append(f"until {promo.valid_until.date().isoformat()}")
    return " ".join(parts)


def validate(
    promo: PromoCode, context: DiscountContext, customer_redemptions: int = 0
) -> PromoValidation:
    """Validate one code against a candidate charge. Pure."""

    def invalid(reason: str) -> PromoValidation:
        return PromoValidation(valid=False, code=promo.code, reason=reason)

    now: datetime = context.now

    if not promo.active:
        return invalid("Promo code is not active")

    if promo.valid_from is not None and now < promo.valid_from:
        return invalid("Promo code is not yet valid")
    if promo.valid_until is not None and now > promo.valid_until:
        return invalid("Promo code has expired")

    if promo.is_exhausted:
        return invalid("Promo code has reached maximum redemptions")

    if (
        promo.max_redemptions_per_customer is not None
        and customer_redemptions >= promo.max_redemptions_per_customer
    ):
        return invalid("Promo code has already been used the maximum number of times")

    if promo.applicable_plan_ids and context.plan_id not in promo.applicable_plan_ids:
        return invalid("Promo code is not valid for this plan")
    if promo.applicable_product_ids and not any(
        product_id in promo.applicable_product_ids for product_id in context.product_ids
    ):
        return invalid("Promo code is not valid for these products")

    if promo.discount_type == DiscountType.FIXED_AMOUNT and promo.currency != context.currency:
        return invalid(f"Promo code is only valid for {promo.currency} currency")

    reason = evaluate_conditions(promo.conditions, context)
    if reason is not None:
        return invalid(reason)

    return PromoValidation(valid=True, code=promo.code)


def _order(
    promos: list[PromoCode], amount: int, order: CombinationOrder
) -> list[PromoCode]:
    if order == CombinationOrder.LARGEST_FIRST:
        return sorted(promos, key=lambda p: calculate_discount(p, amount), reverse=True)
    if order == CombinationOrder.PRIORITY:
        return sorted(promos, key=lambda p: p.priority, reverse=True)
    return list(promos)


def combine(
    promos: Sequence[PromoCode],
    context: DiscountContext,
    order: CombinationOrder = CombinationOrder.LIST_ORDER,
    customer_redemptions: Mapping[str, int] | None = None,
) -> DiscountResult:
    """Validate and combine codes against ``context.amount``. Pure."""
    counts = customer_redemptions or {}
    skipped: list[SkippedDiscount] = []
    valid: list[PromoCode] = []
    seen: set[str] = set()

    for promo in promos:
        if promo.code in seen:
            skipped.append(SkippedDiscount(code=promo.code, reason="Duplicate promo code"))
            continue
        seen.add(promo.code)
        validation = validate(promo, context, counts.get(promo.code, 0))
        if not validation.valid:
            skipped.append(SkippedDiscount(code=promo.code, reason=validation.reason or "Invalid"))
            continue
        valid.append(promo)

    order = CombinationOrder(order)
    applied_codes: list[PromoCode] = []
    for promo in _order(valid, context.amount, order):
        stackable = promo.stacking_mode == StackingMode.STACK and all(
            p.stacking_mode == StackingMode.STACK for p in applied_codes
        )
        if applied_codes and not stackable:
            if order != CombinationOrder.LIST_ORDER:
                skipped.append(
                    SkippedDiscount(
                        code=promo.code, reason=f"Cannot combine with {applied_codes[0].code}"
                    )
                )
                continue
            skipped.extend(
                SkippedDiscount(code=p.code, reason=f"Replaced by {promo.code}")
                for p in applied_codes
            )
            applied_codes = []
        applied_codes.append(promo)

    remaining = context.amount
    applied: list[AppliedDiscount] = []
    for promo in applied_codes:
        discount = calculate_discount(promo, remaining)
        remaining -= discount
        applied.append(
            AppliedDiscount(
                promo_code_id=promo.promo_code_id,
                code=promo.code,
                discount_type=promo.discount_type,
                discount_value=promo.discount_value,
                amount=discount,
                description=describe(promo),
            )
        )

    return DiscountResult(
        original_amount=context.amount,
        discount_amount=context.amount - remaining,
        final_amount=remaining,
        currency=context.currency,
        applied=applied,
        skipped=skipped,
    )


class PromoCodeResolver:
    """Loads, validates, combines and redeems promo codes."""

    def __init__(
        self,
        storage: "StorageAdapter",
        events: EventPublisher | None = None,
        metrics: "LifecycleMetrics | None" = None,
        combination_order: CombinationOrder = CombinationOrder.LIST_ORDER,
        clock: "TimeSource | None" = None,
    ) -> None:
        self.storage = storage
        self.events = events
        self.metrics = metrics
        self.combination_order = combination_order
        self.clock: "TimeSource" = clock or SystemTimeSource()

    @classmethod
    def from_context(cls, context: "BillingContext") -> "PromoCodeResolver":
        return cls(
            storage=context.storage,
            events=context.events,
            metrics=context.metrics,
            combination_order=context.config.combination_order,
            clock=context.clock,
        )

    normalize_code = staticmethod(normalize_code)
    validate = staticmethod(validate)
    calculate_discount = staticmethod(calculate_discount)
    describe = staticmethod(describe)

    def combine(
        self,
        promos: Sequence[PromoCode],
        context: DiscountContext,
        order: CombinationOrder | None = None,
        customer_redemptions: Mapping[str, int] | None = None,
    ) -> DiscountResult:
        return combine(
            promos,
            context,
            order=order or self.combination_order,
            customer_redemptions=customer_redemptions,
        )

    async def resolve(
        self,
        codes: Iterable[str],
        context: DiscountContext,
        strict: bool = False,
    ) -> DiscountResult:
        """Load codes from storage and combine them against ``context``.

        Unknown codes are reported as skipped, or raise ``PromoCodeNotFoundError``
        when ``strict`` is set. Malformed codes always raise ``InvalidPromoCodeError``.
        """
        promos: list[PromoCode] = []
        missing: list[SkippedDiscount] = []
        counts: dict[str, int] = {}

        for raw in codes:
            code = normalize_code(raw)
            promo = await self.storage.get_promo_code(code)
            if promo is None:
                if strict:
                    raise PromoCodeNotFoundError(f"Promo code {code} not found", code=code)
                missing.append(SkippedDiscount(code=code, reason="Promo code not found"))
                continue
            promos.append(promo)
            if promo.max_redemptions_per_customer is not None and code not in counts:
                counts[code] = await self.storage.count_customer_redemptions(
                    code, context.customer_id
                )

        result = self.combine(promos, context, customer_redemptions=counts)
        if missing:
            result = result.model_copy(update={"skipped": [*missing, *result.skipped]})

        logger.debug(
            "promotions.resolved",
            customer_id=context.customer_id,
            applied=[d.code for d in result.applied],
            skipped=[s.code for s in result.skipped],
            discount_amount=result.discount_amount,
        )
        return result

    async def redeem(
        self,
        result: DiscountResult,
        customer_id: str,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
    ) -> None:
        """Commit one redemption per applied code.

        Each commit is a single guarded increment. Codes committed before a
        refusal stay redeemed; redemption counters never decrease. Codes
        already redeemed for ``invoice_id`` are not counted again.
        """
        for discount in result.applied:
            await self._redeem_one(
                discount, customer_id, result.currency, invoice_id, subscription_id
            )

    async def redeem_invoice(self, invoice: "Invoice") -> list[str]:
        """Redeem the discounts recorded on a paid invoice.

        Every code is attempted; the ones refused by their limits are returned.
        """
        refused: list[str] = []
        for discount in invoice.discounts:
            try:
                await self._redeem_one(
                    discount,
                    invoice.customer_id,
                    invoice.currency,
                    invoice.invoice_id,
                    invoice.subscription_id,
                )
            except PromoCodeExhaustedError:
                refused.append(discount.code)
        return refused

    async def _redeem_one(
        self,
        discount: AppliedDiscount,
        customer_id: str,
        currency: str,
        invoice_id: str | None,
        subscription_id: str | None,
    ) -> None:
        promo = await self.storage.get_promo_code(discount.code)
        if promo is None:
            raise PromoCodeNotFoundError(
                f"Promo code {discount.code} not found", code=discount.code
            )
        if invoice_id is not None and await self.storage.has_invoice_redemption(
            promo.code, invoice_id
        ):
            return

        accepted = await self.storage.increment_redemptions_if_below(
            promo.code,
            customer_id,
            promo.max_redemptions,
            promo.max_redemptions_per_customer,
            invoice_id=invoice_id,
            redeemed_at=self.clock.now(),
        )
        if self.metrics is not None:
            self.metrics.record_promo_redemption(promo.code, accepted)

        if not accepted:
            logger.info(
                "promotions.redemption_refused",
                code=promo.code,
                customer_id=customer_id,
                invoice_id=invoice_id,
            )
            raise PromoCodeExhaustedError(
                f"Promo code {promo.code} has reached its redemption limit", code=promo.code
            )

        logger.info(
            "promotions.redeemed",
            code=promo.code,
            customer_id=customer_id,
            invoice_id=invoice_id,
            discount_amount=discount.amount,
        )
        if self.events is not None:
            await self.events.publish(
                build_event(
                    LifecycleEventType.PROMO_CODE_REDEEMED,
                    occurred_at=self.clock.now(),
                    subscription_id=subscription_id,
                    customer_id=customer_id,
                    code=promo.code,
                    promo_code_id=promo.promo_code_id,
                    invoice_id=invoice_id,
                    discount_amount=discount.amount,
                    currency=currency,
                )
            )
