"""
Storage adapter interface.

The billing core does not own durable storage; it consumes this contract.
Two operations carry the concurrency guarantees:

- ``compare_and_swap_subscription`` writes a subscription only if the stored
  ``version`` still equals the version the caller read, otherwise it raises
  ``ConcurrencyConflictError``.
- ``increment_redemptions_if_below`` bumps a promo code's redemption counter
  in one atomic step guarded by the limit checks, returning ``False`` when a
  limit is already reached. A redemption tied to an invoice is recorded at
  most once per code, so repeating it for the same invoice is a no-op.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from dotmac.billing_core.adapters.payment import Payment
from dotmac.billing_core.catalog.models import AddOn, Plan, Price
from dotmac.billing_core.customers import Customer
from dotmac.billing_core.invoicing.models import Invoice, InvoiceStatus
from dotmac.billing_core.promotions.models import PromoCode
from dotmac.billing_core.subscriptions.models import Subscription


class StorageAdapter(ABC):
    """Persistence port for billing records."""

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer | None: ...

    @abstractmethod
    async def save_customer(self, customer: Customer) -> Customer: ...

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Plan | None: ...

    @abstractmethod
    async def save_plan(self, plan: Plan) -> Plan: ...

    @abstractmethod
    async def get_price(self, price_id: str) -> Price | None: ...

    @abstractmethod
    async def save_price(self, price: Price) -> Price: ...

    @abstractmethod
    async def get_addon(self, addon_id: str) -> AddOn | None: ...

    @abstractmethod
    async def save_addon(self, addon: AddOn) -> AddOn: ...

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription. Raises ``BillingValidationError`` if the id exists."""

    @abstractmethod
    async def compare_and_swap_subscription(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription:
        """Replace the stored subscription if its version equals ``expected_version``."""

    @abstractmethod
    async def list_due_subscriptions(self, now: datetime, limit: int) -> list[Subscription]:
        """Non-terminal, non-paused subscriptions whose next action is due, oldest first."""

    @abstractmethod
    async def list_customer_subscriptions(self, customer_id: str) -> list[Subscription]: ...

    # ------------------------------------------------------------------
    # Promo codes
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_promo_code(self, code: str) -> PromoCode | None:
        """Look up a promo code by its normalized code."""

    @abstractmethod
    async def save_promo_code(self, promo_code: PromoCode) -> PromoCode: ...

    @abstractmethod
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
        """Atomically record one redemption unless a limit is already reached.

        Returns ``True`` without counting again when ``invoice_id`` already holds a
        redemption of ``code``.
        """

    @abstractmethod
    async def has_invoice_redemption(self, code: str, invoice_id: str) -> bool: ...

    @abstractmethod
    async def count_customer_redemptions(self, code: str, customer_id: str) -> int: ...

    # ------------------------------------------------------------------
    # Invoices and payments
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    @abstractmethod
    async def create_invoice(self, invoice: Invoice) -> tuple[Invoice, bool]:
        """Get-or-create by ``invoice_id``. Returns the stored invoice and a created flag."""

    @abstractmethod
    async def update_invoice(
        self, invoice: Invoice, expected_status: InvoiceStatus | None = None
    ) -> Invoice:
        """Replace a stored invoice.

        With ``expected_status``, raises ``ConcurrencyConflictError`` when the
        stored invoice has already moved to another status.
        """

    @abstractmethod
    async def list_customer_invoices(self, customer_id: str) -> list[Invoice]: ...

    @abstractmethod
    async def save_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Payment | None: ...

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_usage(self, subscription_id: str, key: str) -> int:
        """Usage recorded against a limit key; ``0`` when nothing was recorded."""

    @abstractmethod
    async def adjust_usage_if_within(
        self, subscription_id: str, key: str, delta: int, limit: int | None
    ) -> int | None:
        """Atomically add ``delta`` to a usage counter.

        The counter never goes below zero. With a ``limit``, an increase that
        would take the counter above it is refused and ``None`` is returned;
        ``limit=None`` never refuses. Returns the new usage otherwise.
        """

    @abstractmethod
    async def reset_usage(self, subscription_id: str, key: str) -> None: ...
