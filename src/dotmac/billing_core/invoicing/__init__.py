"""Invoices and explicit charges."""

from dotmac.billing_core.invoicing.models import (
    ALLOWED_INVOICE_TRANSITIONS,
    IMMUTABLE_INVOICE_STATUSES,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    compute_totals,
)
from dotmac.billing_core.invoicing.service import ChargeRequest, ChargeResult, InvoiceService

__all__ = [
    "ALLOWED_INVOICE_TRANSITIONS",
    "IMMUTABLE_INVOICE_STATUSES",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    "LineItemKind",
    "compute_totals",
    "ChargeRequest",
    "ChargeResult",
    "InvoiceService",
]
