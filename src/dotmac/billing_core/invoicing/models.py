"""
Invoice models.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dotmac.billing_core.dates import ensure_utc
from dotmac.billing_core.money import validate_currency
from dotmac.billing_core.promotions.models import AppliedDiscount


class InvoiceStatus(str, Enum):
    """Invoice status values."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


IMMUTABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID})

ALLOWED_INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.VOID}),
    InvoiceStatus.OPEN: frozenset(
        {InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}
    ),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}


class LineItemKind(str, Enum):
    """What a line item charges or credits."""

    SUBSCRIPTION = "subscription"
    ADDON = "addon"
    PRORATION_CREDIT = "proration_credit"
    PRORATION_CHARGE = "proration_charge"
    BALANCE = "balance"
    CHARGE = "charge"


class InvoiceLineItem(BaseModel):
    """Invoice line item. ``amount`` is the line total and may be negative for credits."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    description: str = Field(max_length=500)
    amount: int = Field(description="Line total in minor units")
    quantity: int = Field(1, ge=1)
    kind: LineItemKind = LineItemKind.CHARGE
    price_id: str | None = None
    addon_id: str | None = None


class Invoice(BaseModel):
    """Invoice for one subscription period or one explicit charge."""

    invoice_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    subscription_id: str | None = None
    currency: str

    line_items: list[InvoiceLineItem] = Field(default_factory=list)
    discounts: list[AppliedDiscount] = Field(default_factory=list)
    subtotal: int = 0
    discount_total: int = Field(0, ge=0)
    total: int = Field(0, ge=0)

    status: InvoiceStatus = InvoiceStatus.DRAFT
    payment_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    created_at: datetime | None = None
    finalized_at: datetime | None = None
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)

    @field_validator(
        "period_start", "period_end", "created_at", "finalized_at", "paid_at", "voided_at"
    )
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_totals(self) -> "Invoice":
        if self.total != max(0, self.subtotal - self.discount_total):
            raise ValueError("total must equal max(0, subtotal - discount_total)")
        return self

    @property
    def is_immutable(self) -> bool:
        return self.status in IMMUTABLE_INVOICE_STATUSES

    @property
    def amount_due(self) -> int:
        return 0 if self.status == InvoiceStatus.PAID else self.total

    def can_transition_to(self, status: InvoiceStatus) -> bool:
        return status in ALLOWED_INVOICE_TRANSITIONS[self.status]


def compute_totals(
    line_items: list[InvoiceLineItem], discounts: list[AppliedDiscount]
) -> tuple[int, int, int]:
    """Return ``(subtotal, discount_total, total)`` for a set of lines and discounts."""
    subtotal = sum(item.amount for item in line_items)
    discount_total = sum(discount.amount for discount in discounts)
    return subtotal, discount_total, max(0, subtotal - discount_total)


__all__ = [
    "InvoiceStatus",
    "IMMUTABLE_INVOICE_STATUSES",
    "ALLOWED_INVOICE_TRANSITIONS",
    "LineItemKind",
    "InvoiceLineItem",
    "Invoice",
    "compute_totals",
]
