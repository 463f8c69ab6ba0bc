"""
Money and currency utilities using py-moneyed and Babel.

All amounts inside the billing core are integers in minor currency units
(cents for USD). These helpers validate currency codes, convert between
minor units and ``Money`` objects, and format amounts for display. There is
no currency conversion.
"""

from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction

from babel.core import Locale, UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

from dotmac.billing_core.exceptions import BillingValidationError, CurrencyMismatchError

DEFAULT_LOCALE = "en_US"


def validate_currency(currency_code: str) -> str:
    """Validate and normalise an ISO 4217 currency code."""
    code = (currency_code or "").strip().upper()
    try:
        currency: Currency = get_currency(code)
    except CurrencyDoesNotExist:
        raise BillingValidationError(
            f"Invalid currency code: {currency_code}",
            context={"currency": currency_code},
        )
    return currency.code


def ensure_same_currency(expected: str, actual: str, what: str = "amounts") -> None:
    """Raise when two currency codes differ. Amounts are never coerced."""
    if expected.upper() != actual.upper():
        raise CurrencyMismatchError(
            f"Currency mismatch between {what}: {expected} != {actual}",
            expected=expected.upper(),
            actual=actual.upper(),
        )


def currency_precision(currency_code: str) -> int:
    """Get decimal precision for a currency (2 for USD, 0 for JPY)."""
    return get_currency_precision(currency_code.upper())


def money_from_minor_units(minor_units: int, currency_code: str) -> Money:
    """Create Money from minor units (e.g., cents)."""
    code = validate_currency(currency_code)
    divisor = Decimal(10 ** currency_precision(code))
    return Money(amount=Decimal(minor_units) / divisor, currency=code)


def money_to_minor_units(money: Money) -> int:
    """Convert Money to minor units."""
    multiplier = 10 ** currency_precision(money.currency.code)
    return int((money.amount * multiplier).to_integral_value(rounding=ROUND_HALF_UP))


def format_minor_units(minor_units: int, currency_code: str, locale: str | None = None) -> str:
    """Format an amount in minor units with locale-aware formatting."""
    money = money_from_minor_units(minor_units, currency_code)
    locale_code = locale or DEFAULT_LOCALE
    try:
        Locale.parse(locale_code)
    except (UnknownLocaleError, ValueError):
        locale_code = DEFAULT_LOCALE

    try:
        return format_currency(money.amount, money.currency.code, locale=locale_code)
    except (TypeError, ValueError):
        return f"{money.currency.code} {money.amount}"


def round_half_up(value: Fraction | Decimal) -> int:
    """Round an exact quotient to the nearest minor unit, halves away from zero."""
    if isinstance(value, Fraction):
        value = Decimal(value.numerator) / Decimal(value.denominator)
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


__all__ = [
    "DEFAULT_LOCALE",
    "validate_currency",
    "ensure_same_currency",
    "currency_precision",
    "money_from_minor_units",
    "money_to_minor_units",
    "format_minor_units",
    "round_half_up",
]
