"""
Billing core exceptions.

Every public entry point raises one of five kinds so callers can tell a
definitive decline from a temporarily unavailable collaborator:

- ``BillingValidationError``: rejected synchronously, never retried
- ``NotFoundError``: unknown subscription, customer, code or invoice
- ``PaymentDeclinedError``: definitive decline, advances the state machine
- ``AdapterError``: payment or storage collaborator failed, transient
- ``ConcurrencyConflictError``: compare-and-swap lost to a concurrent writer
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP-style status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


# ============================================================================
# Validation errors
# ============================================================================


class BillingValidationError(BillingError):
    """Input rejected synchronously. Never retried."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_FAILED",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint,
        )


class CurrencyMismatchError(BillingValidationError):
    """Two amounts in different currencies were combined."""

    def __init__(self, message: str, expected: str, actual: str) -> None:
        super().__init__(
            message,
            context={"expected_currency": expected, "actual_currency": actual},
            recovery_hint="Use prices and add-ons denominated in the same currency",
        )
        self.error_code = "CURRENCY_MISMATCH"


class InvalidPromoCodeError(BillingValidationError):
    """Promo code is malformed or failed validation."""

    def __init__(self, message: str, code: str | None = None, reason: str | None = None) -> None:
        context: dict[str, Any] = {}
        if code:
            context["code"] = code
        if reason:
            context["reason"] = reason

        super().__init__(
            message,
            context=context,
            recovery_hint="Check the promo code spelling, validity window and eligibility",
        )
        self.error_code = "INVALID_PROMO_CODE"


class PromoCodeExhaustedError(InvalidPromoCodeError):
    """Guarded redemption increment refused: a redemption limit is reached."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message, code=code, reason="redemption_limit_reached")
        self.error_code = "PROMO_CODE_EXHAUSTED"
        self.status_code = 409


class UnknownPlanError(BillingValidationError):
    """Referenced plan does not exist or is inactive."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure the plan is active",
        )
        self.error_code = "UNKNOWN_PLAN"


class UnknownPriceError(BillingValidationError):
    """Referenced price does not exist, is inactive, or belongs to another plan."""

    def __init__(
        self, message: str, price_id: str | None = None, plan_id: str | None = None
    ) -> None:
        context = {}
        if price_id:
            context["price_id"] = price_id
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the price ID belongs to the requested plan and is active",
        )
        self.error_code = "UNKNOWN_PRICE"


class ProrationUndefinedError(BillingValidationError):
    """Proration cannot be computed now; the change must wait for period end."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            context=context,
            recovery_hint="Apply the change at period end with no immediate charge",
        )
        self.error_code = "PRORATION_UNDEFINED"


class SubscriptionStateError(BillingValidationError):
    """Invalid subscription state transition."""

    def __init__(self, message: str, current_state: str, requested: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested": requested},
            recovery_hint=(
                f"Cannot {requested} from {current_state}. Check subscription status first."
            ),
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        self.status_code = 409


class InvoiceStateError(BillingValidationError):
    """Invoice cannot move to the requested status."""

    def __init__(self, message: str, invoice_id: str, current_status: str, requested: str) -> None:
        super().__init__(
            message,
            context={
                "invoice_id": invoice_id,
                "current_status": current_status,
                "requested_status": requested,
            },
            recovery_hint="Paid and void invoices are immutable",
        )
        self.error_code = "INVALID_INVOICE_STATE"
        self.status_code = 409


# ============================================================================
# Not found errors
# ============================================================================


class NotFoundError(BillingError):
    """Referenced entity does not exist."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "ENTITY_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"


class CustomerNotFoundError(NotFoundError):
    """Customer not found error."""

    def __init__(self, message: str, customer_id: str | None = None) -> None:
        context = {}
        if customer_id:
            context["customer_id"] = customer_id

        super().__init__(message, context=context)
        self.error_code = "CUSTOMER_NOT_FOUND"


class PromoCodeNotFoundError(NotFoundError):
    """Promo code not found error."""

    def __init__(self, message: str, code: str | None = None) -> None:
        context = {}
        if code:
            context["code"] = code

        super().__init__(message, context=context)
        self.error_code = "PROMO_CODE_NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice not found error."""

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id

        super().__init__(
            message, context=context, recovery_hint="Verify the invoice ID and ensure it exists"
        )
        self.error_code = "INVOICE_NOT_FOUND"


class AddOnNotFoundError(NotFoundError):
    """Add-on not found error."""

    def __init__(self, message: str, addon_id: str | None = None) -> None:
        context = {}
        if addon_id:
            context["addon_id"] = addon_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the add-on ID and ensure it exists and is active",
        )
        self.error_code = "ADDON_NOT_FOUND"


# ============================================================================
# Payment outcomes and collaborator failures
# ============================================================================


class PaymentDeclinedError(BillingError):
    """Definitive, non-transient payment failure (declined, insufficient funds, 3DS)."""

    def __init__(
        self,
        message: str,
        decline_code: str | None = None,
        payment_id: str | None = None,
        customer_id: str | None = None,
    ):
        context = {}
        if decline_code:
            context["decline_code"] = decline_code
        if payment_id:
            context["payment_id"] = payment_id
        if customer_id:
            context["customer_id"] = customer_id

        super().__init__(
            message,
            "PAYMENT_DECLINED",
            status_code=402,
            context=context,
            recovery_hint="Ask the customer to update their payment method",
        )
        self.decline_code = decline_code
        self.payment_id = payment_id


class AdapterError(BillingError):
    """An external collaborator failed. Transient: state is left unchanged."""

    retryable = True

    def __init__(
        self,
        message: str,
        error_code: str = "ADAPTER_ERROR",
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(
            message,
            error_code,
            status_code=503,
            context=context,
            recovery_hint="Retry on the next processing pass",
        )
        self.cause = cause


class PaymentAdapterError(AdapterError):
    """Payment collaborator failed at the transport/adapter level."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        merged = dict(context or {})
        if provider:
            merged["provider"] = provider
        super().__init__(message, "PAYMENT_ADAPTER_ERROR", context=merged, cause=cause)


class StorageAdapterError(AdapterError):
    """Storage collaborator failed."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        cause: BaseException | None = None,
    ):
        context = {}
        if operation:
            context["operation"] = operation
        super().__init__(message, "STORAGE_ADAPTER_ERROR", context=context, cause=cause)


class ConcurrencyConflictError(BillingError):
    """Compare-and-swap lost to a concurrent writer. Skipped, retried next pass."""

    retryable = True

    def __init__(self, message: str, entity_id: str, expected_version: int | None = None) -> None:
        context: dict[str, Any] = {"entity_id": entity_id}
        if expected_version is not None:
            context["expected_version"] = expected_version

        super().__init__(
            message,
            "CONCURRENCY_CONFLICT",
            status_code=409,
            context=context,
            recovery_hint="Reload the record and retry",
        )
