"""
Proration calculator.

Computes the money delta when a subscription moves between two prices in the
middle of a billing period. Each term is rounded on its own so the credit and
the charge can be audited independently:

    total_days     = ceil((period_end - period_start) / day)
    days_remaining = ceil((period_end - now) / day)
    unused_credit  = round(current.unit_amount * quantity / total_days * days_remaining)
    new_charge     = round(new.unit_amount * quantity / total_days * days_remaining)
    net_amount     = new_charge - unused_credit

A positive net is owed by the customer, a negative net is a credit. Arithmetic
is exact (``Fraction``) and rounds half up.

Prices on different cadences (month vs year) are never prorated with a linear
day rate; the configured ``CrossIntervalPolicy`` decides whether such a change
is rejected or deferred to period end.
"""

from datetime import datetime
from fractions import Fraction

import structlog
from pydantic import BaseModel, ConfigDict

from dotmac.billing_core.catalog.models import Price
from dotmac.billing_core.dates import ceil_days, ensure_utc
from dotmac.billing_core.exceptions import BillingValidationError, ProrationUndefinedError
from dotmac.billing_core.money import ensure_same_currency, round_half_up
from dotmac.billing_core.settings import CrossIntervalPolicy

logger = structlog.get_logger(__name__)


class ProrationResult(BaseModel):
    """Outcome of a proration calculation. All amounts in minor units."""

    model_config = ConfigDict(frozen=True)

    current_price_id: str
    new_price_id: str
    currency: str
    quantity: int
    total_days: int
    days_remaining: int
    unused_credit: int
    new_charge: int
    net_amount: int
    proration_date: datetime

    @property
    def is_charge(self) -> bool:
        return self.net_amount > 0

    @property
    def is_credit(self) -> bool:
        return self.net_amount < 0


def _prorate(unit_amount: int, quantity: int, days_remaining: int, total_days: int) -> int:
    return round_half_up(Fraction(unit_amount * quantity * days_remaining, total_days))


def calculate_proration(
    current_price: Price,
    new_price: Price,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    quantity: int = 1,
    cross_interval_policy: CrossIntervalPolicy = CrossIntervalPolicy.PERIOD_END,
) -> ProrationResult:
    """
    Calculate the proration for moving from ``current_price`` to ``new_price`` at ``now``.

    Raises:
        CurrencyMismatchError: The two prices use different currencies
        BillingValidationError: Cadences differ and the policy is ``reject``
        ProrationUndefinedError: The period is over or empty, or cadences differ
            under the ``period_end`` policy. The change must wait for period end.
    """
    if quantity < 1:
        raise BillingValidationError("quantity must be >= 1", context={"quantity": quantity})

    ensure_same_currency(current_price.currency, new_price.currency, what="prices")

    if not current_price.same_cadence(new_price):
        current, new = current_price, new_price
        context = {
            "current_interval": f"{current.interval_count} {current.billing_interval.value}",
            "new_interval": f"{new.interval_count} {new.billing_interval.value}",
        }
        if CrossIntervalPolicy(cross_interval_policy) == CrossIntervalPolicy.REJECT:
            raise BillingValidationError(
                "Cannot change between prices with different billing intervals",
                context=context,
                recovery_hint="Choose a price with the same billing interval",
            )
        raise ProrationUndefinedError(
            "Billing intervals differ; the change takes effect at period end", context=context
        )

    period_start = ensure_utc(period_start)
    period_end = ensure_utc(period_end)
    now = ensure_utc(now)

    total_days = ceil_days(period_start, period_end)
    days_remaining = ceil_days(now, period_end)
    if total_days <= 0 or days_remaining <= 0:
        raise ProrationUndefinedError(
            "Proration is undefined once the billing period is over",
            context={"total_days": total_days, "days_remaining": days_remaining},
        )
    days_remaining = min(days_remaining, total_days)

    unused_credit = _prorate(current_price.unit_amount, quantity, days_remaining, total_days)
    new_charge = _prorate(new_price.unit_amount, quantity, days_remaining, total_days)

    result = ProrationResult(
        current_price_id=current_price.price_id,
        new_price_id=new_price.price_id,
        currency=current_price.currency,
        quantity=quantity,
        total_days=total_days,
        days_remaining=days_remaining,
        unused_credit=unused_credit,
        new_charge=new_charge,
        net_amount=new_charge - unused_credit,
        proration_date=now,
    )
    logger.debug(
        "proration.calculated",
        current_price_id=current_price.price_id,
        new_price_id=new_price.price_id,
        net_amount=result.net_amount,
        days_remaining=days_remaining,
        total_days=total_days,
    )
    return result


def try_calculate_proration(
    current_price: Price,
    new_price: Price,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    quantity: int = 1,
    cross_interval_policy: CrossIntervalPolicy = CrossIntervalPolicy.PERIOD_END,
) -> ProrationResult | None:
    """Like ``calculate_proration`` but returns ``None`` when proration is undefined."""
    try:
        return calculate_proration(
            current_price,
            new_price,
            period_start,
            period_end,
            now,
            quantity=quantity,
            cross_interval_policy=cross_interval_policy,
        )
    except ProrationUndefinedError:
        return None
