"""
Payment adapter interface.

The billing core never talks to a payment processor directly. It calls a
``PaymentAdapter`` with a ``PaymentRequest`` carrying a deterministic
idempotency key, and interprets the returned ``Payment``:

- ``succeeded`` / ``failed``: definitive, advances the subscription state
- ``pending``: not yet known, state is left unchanged
- raised ``PaymentAdapterError``: transport failure, state is left unchanged

Payment methods are a tagged union so provider differences (saved cards vs
one-time tokens with security-code and installment options) are expressed
as data rather than provider-specific code paths.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dotmac.billing_core.exceptions import AdapterError, PaymentAdapterError, PaymentDeclinedError
from dotmac.billing_core.money import validate_currency

logger = structlog.get_logger(__name__)


class PaymentStatus(str, Enum):
    """Payment status as reported by the adapter."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class SavedPaymentMethod(BaseModel):
    """A payment method stored at the provider."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["saved"] = "saved"
    payment_method_id: str = Field(min_length=1)
    brand: str | None = None
    last4: str | None = None


class CardTokenPaymentMethod(BaseModel):
    """A one-time card token."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["card_token"] = "card_token"
    token: str = Field(min_length=1)
    security_code_required: bool = False
    installments: int = Field(1, ge=1)


PaymentMethod = Annotated[SavedPaymentMethod | CardTokenPaymentMethod, Field(discriminator="kind")]


def payment_method_reference(method: SavedPaymentMethod | CardTokenPaymentMethod) -> str:
    """Provider reference of a payment method."""
    if isinstance(method, SavedPaymentMethod):
        return method.payment_method_id
    return method.token


class PaymentRequest(BaseModel):
    """Everything the adapter needs to create one payment."""

    model_config = ConfigDict(frozen=True)

    idempotency_key: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    amount: int = Field(gt=0, description="Amount in minor units")
    currency: str
    payment_method: PaymentMethod
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)


class Payment(BaseModel):
    """Adapter-returned payment value."""

    model_config = ConfigDict(frozen=True)

    payment_id: str
    status: PaymentStatus
    amount: int
    currency: str
    customer_id: str | None = None
    idempotency_key: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    requires_action: bool = False
    provider: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == PaymentStatus.FAILED

    @property
    def pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


class PaymentAdapter(ABC):
    """Payment collaborator port."""

    provider: str = "unknown"

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> Payment:
        """Create (or return the existing) payment for ``request.idempotency_key``.

        Definitive declines are returned as ``failed`` payments or raised as
        ``PaymentDeclinedError``. Transport failures raise ``PaymentAdapterError``.
        """

    @abstractmethod
    async def get_default_payment_method(
        self, customer_id: str
    ) -> SavedPaymentMethod | CardTokenPaymentMethod | None:
        """Return the customer's default payment method, or ``None``."""


ProcessPaymentCallback = Callable[[PaymentRequest], Awaitable[Payment]]
DefaultPaymentMethodCallback = Callable[
    [str], Awaitable[SavedPaymentMethod | CardTokenPaymentMethod | str | None]
]


class CallbackPaymentAdapter(PaymentAdapter):
    """Adapter built from the two lifecycle callbacks.

    Any exception other than a billing decline or adapter error raised by a
    callback is wrapped in ``PaymentAdapterError`` so the processor treats it
    as a transport failure.
    """

    def __init__(
        self,
        process_payment: ProcessPaymentCallback,
        get_default_payment_method: DefaultPaymentMethodCallback,
        provider: str = "callback",
    ) -> None:
        self._process_payment = process_payment
        self._get_default_payment_method = get_default_payment_method
        self.provider = provider

    async def create_payment(self, request: PaymentRequest) -> Payment:
        try:
            return await self._process_payment(request)
        except (PaymentDeclinedError, AdapterError):
            raise
        except Exception as exc:
            logger.warning(
                "payment.callback_failed",
                provider=self.provider,
                customer_id=request.customer_id,
                idempotency_key=request.idempotency_key,
                error=str(exc),
            )
            raise PaymentAdapterError(
                f"Payment callback failed: {exc}",
                provider=self.provider,
                context={"idempotency_key": request.idempotency_key},
                cause=exc,
            ) from exc

    async def get_default_payment_method(
        self, customer_id: str
    ) -> SavedPaymentMethod | CardTokenPaymentMethod | None:
        try:
            method = await self._get_default_payment_method(customer_id)
        except AdapterError:
            raise
        except Exception as exc:
            raise PaymentAdapterError(
                f"Default payment method lookup failed: {exc}",
                provider=self.provider,
                context={"customer_id": customer_id},
                cause=exc,
            ) from exc

        if isinstance(method, str):
            return SavedPaymentMethod(payment_method_id=method)
        return method


__all__ = [
    "PaymentStatus",
    "SavedPaymentMethod",
    "CardTokenPaymentMethod",
    "PaymentMethod",
    "payment_method_reference",
    "PaymentRequest",
    "Payment",
    "PaymentAdapter",
    "CallbackPaymentAdapter",
]
