"""
Simulated payment adapter for development, tests and billing simulations.

Outcomes are driven by well-known test card numbers used as the payment
method reference, or by per-customer scripted outcomes which take priority.
Payments are idempotent by key: repeating a key returns the original
payment and never charges twice.
"""

import asyncio
from collections import defaultdict, deque
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

import structlog

from dotmac.billing_core.adapters.payment import (
    CardTokenPaymentMethod,
    Payment,
    PaymentAdapter,
    PaymentRequest,
    PaymentStatus,
    SavedPaymentMethod,
    payment_method_reference,
)
from dotmac.billing_core.exceptions import PaymentAdapterError
from dotmac.billing_core.time_source import TimeSource

logger = structlog.get_logger(__name__)


class TestCards:
    """Test card numbers that simulate different payment outcomes."""

    __test__ = False

    SUCCESS = "4242424242424242"
    DECLINED = "4000000000000002"
    INSUFFICIENT_FUNDS = "4000000000009995"
    EXPIRED_CARD = "4000000000000069"
    INCORRECT_CVC = "4000000000000127"
    PROCESSING_ERROR = "4000000000000119"
    REQUIRES_AUTHENTICATION = "4000000000003220"


CARD_ERRORS: dict[str, tuple[str, str]] = {
    TestCards.DECLINED: ("card_declined", "Your card was declined."),
    TestCards.INSUFFICIENT_FUNDS: ("insufficient_funds", "Your card has insufficient funds."),
    TestCards.EXPIRED_CARD: ("expired_card", "Your card has expired."),
    TestCards.INCORRECT_CVC: ("incorrect_cvc", "Your card security code is incorrect."),
    TestCards.REQUIRES_AUTHENTICATION: (
        "authentication_required",
        "This payment requires authentication.",
    ),
}


class SimulatedOutcome(str, Enum):
    """Scripted outcome for the next payment of a customer."""

    SUCCEED = "succeed"
    DECLINE = "decline"
    PENDING = "pending"
    ERROR = "error"


class SimulatedPaymentAdapter(PaymentAdapter):
    """In-process payment adapter with a charge ledger."""

    provider = "simulated"

    def __init__(self, clock: TimeSource | None = None) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._by_key: dict[str, Payment] = {}
        self._default_methods: dict[str, SavedPaymentMethod | CardTokenPaymentMethod] = {}
        self._scripted: defaultdict[str, deque[SimulatedOutcome]] = defaultdict(deque)
        self.attempts: list[PaymentRequest] = []

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def set_default_payment_method(
        self,
        customer_id: str,
        method: SavedPaymentMethod | CardTokenPaymentMethod | str,
    ) -> None:
        if isinstance(method, str):
            method = SavedPaymentMethod(payment_method_id=method, last4=method[-4:])
        self._default_methods[customer_id] = method

    def remove_default_payment_method(self, customer_id: str) -> None:
        self._default_methods.pop(customer_id, None)

    def script(self, customer_id: str, *outcomes: SimulatedOutcome | str) -> None:
        """Queue outcomes for the customer's next payments, consumed in order."""
        self._scripted[customer_id].extend(SimulatedOutcome(o) for o in outcomes)

    def settle(self, payment_id: str, status: PaymentStatus | str) -> Payment:
        """Resolve a pending payment; later calls with its key return the settled payment."""
        for key, payment in self._by_key.items():
            if payment.payment_id == payment_id:
                settled = payment.model_copy(update={"status": PaymentStatus(status)})
                self._by_key[key] = settled
                return settled
        raise KeyError(payment_id)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    @property
    def payments(self) -> list[Payment]:
        return list(self._by_key.values())

    @property
    def charges(self) -> list[Payment]:
        """Successful payments only."""
        return [p for p in self._by_key.values() if p.status == PaymentStatus.SUCCEEDED]

    def charged_total(self, customer_id: str | None = None) -> int:
        return sum(
            p.amount for p in self.charges if customer_id is None or p.customer_id == customer_id
        )

    # ------------------------------------------------------------------
    # PaymentAdapter
    # ------------------------------------------------------------------

    async def get_default_payment_method(
        self, customer_id: str
    ) -> SavedPaymentMethod | CardTokenPaymentMethod | None:
        return self._default_methods.get(customer_id)

    async def create_payment(self, request: PaymentRequest) -> Payment:
        async with self._lock:
            existing = self._by_key.get(request.idempotency_key)
            if existing is not None:
                logger.debug(
                    "simulated_payment.idempotent_replay",
                    idempotency_key=request.idempotency_key,
                    payment_id=existing.payment_id,
                )
                return existing

            self.attempts.append(request)
            status, failure_code, failure_message = self._decide(request)
            payment = Payment(
                payment_id=f"sim_pay_{uuid4().hex[:16]}",
                status=status,
                amount=request.amount,
                currency=request.currency,
                customer_id=request.customer_id,
                idempotency_key=request.idempotency_key,
                failure_code=failure_code,
                failure_message=failure_message,
                requires_action=failure_code == "authentication_required",
                provider=self.provider,
                created_at=self._clock.now() if self._clock else datetime.now(UTC),
                metadata=dict(request.metadata),
            )
            self._by_key[request.idempotency_key] = payment

        logger.info(
            "simulated_payment.created",
            payment_id=payment.payment_id,
            customer_id=request.customer_id,
            amount=request.amount,
            currency=request.currency,
            status=payment.status.value,
        )
        return payment

    def _decide(self, request: PaymentRequest) -> tuple[PaymentStatus, str | None, str | None]:
        queue = self._scripted.get(request.customer_id)
        if queue:
            outcome = queue.popleft()
            if outcome == SimulatedOutcome.ERROR:
                raise PaymentAdapterError(
                    "Simulated processor unavailable",
                    provider=self.provider,
                    context={"idempotency_key": request.idempotency_key},
                )
            if outcome == SimulatedOutcome.DECLINE:
                return PaymentStatus.FAILED, "card_declined", "Your card was declined."
            if outcome == SimulatedOutcome.PENDING:
                return PaymentStatus.PENDING, None, None
            return PaymentStatus.SUCCEEDED, None, None

        reference = payment_method_reference(request.payment_method)
        if reference == TestCards.PROCESSING_ERROR:
            raise PaymentAdapterError(
                "An error occurred while processing your card.",
                provider=self.provider,
                context={"idempotency_key": request.idempotency_key},
            )
        error = CARD_ERRORS.get(reference)
        if error is not None:
            return PaymentStatus.FAILED, error[0], error[1]
        return PaymentStatus.SUCCEEDED, None, None
