"""
Tests for the simulated and callback payment adapters.
"""

import pytest

from dotmac.billing_core.adapters.payment import (
    CallbackPaymentAdapter,
    CardTokenPaymentMethod,
    Payment,
    PaymentRequest,
    PaymentStatus,
    SavedPaymentMethod,
)
from dotmac.billing_core.adapters.simulated import (
    SimulatedOutcome,
    SimulatedPaymentAdapter,
    TestCards,
)
from dotmac.billing_core.exceptions import PaymentAdapterError, PaymentDeclinedError


def request(key="key_1", method=TestCards.SUCCESS, customer_id="cus_123", amount=1000):
    return PaymentRequest(
        idempotency_key=key,
        customer_id=customer_id,
        amount=amount,
        currency="usd",
        payment_method=SavedPaymentMethod(payment_method_id=method),
    )


@pytest.mark.unit
class TestSimulatedPaymentAdapter:
    @pytest.mark.asyncio
    async def test_success_card(self, payments):
        payment = await payments.create_payment(request())

        assert payment.succeeded
        assert payment.currency == "USD"
        assert payment.provider == "simulated"
        assert payments.charged_total("cus_123") == 1000

    @pytest.mark.asyncio
    async def test_same_key_never_charges_twice(self, payments):
        first = await payments.create_payment(request())
        second = await payments.create_payment(request(amount=9999))

        assert second == first
        assert len(payments.attempts) == 1

    @pytest.mark.parametrize(
        ("card", "failure_code"),
        [
            (TestCards.DECLINED, "card_declined"),
            (TestCards.INSUFFICIENT_FUNDS, "insufficient_funds"),
            (TestCards.EXPIRED_CARD, "expired_card"),
            (TestCards.INCORRECT_CVC, "incorrect_cvc"),
        ],
    )
    @pytest.mark.asyncio
    async def test_declining_cards(self, payments, card, failure_code):
        payment = await payments.create_payment(request(method=card))

        assert payment.failed
        assert payment.failure_code == failure_code
        assert payments.charges == []

    @pytest.mark.asyncio
    async def test_authentication_required(self, payments):
        payment = await payments.create_payment(request(method=TestCards.REQUIRES_AUTHENTICATION))

        assert payment.failed
        assert payment.requires_action

    @pytest.mark.asyncio
    async def test_processing_error_raises(self, payments):
        with pytest.raises(PaymentAdapterError):
            await payments.create_payment(request(method=TestCards.PROCESSING_ERROR))

    @pytest.mark.asyncio
    async def test_card_token_method(self, payments):
        payment = await payments.create_payment(
            PaymentRequest(
                idempotency_key="key_token",
                customer_id="cus_123",
                amount=500,
                currency="EUR",
                payment_method=CardTokenPaymentMethod(
                    token=TestCards.SUCCESS, security_code_required=True, installments=3
                ),
            )
        )

        assert payment.succeeded

    @pytest.mark.asyncio
    async def test_scripted_outcomes_take_priority(self, payments):
        payments.script("cus_123", SimulatedOutcome.DECLINE, "pending")

        declined = await payments.create_payment(request(key="a"))
        pending = await payments.create_payment(request(key="b"))
        default = await payments.create_payment(request(key="c"))

        assert declined.failed
        assert pending.pending
        assert default.succeeded

    @pytest.mark.asyncio
    async def test_settle_pending_payment(self, payments):
        payments.script("cus_123", SimulatedOutcome.PENDING)
        pending = await payments.create_payment(request())

        payments.settle(pending.payment_id, PaymentStatus.SUCCEEDED)
        replay = await payments.create_payment(request())

        assert replay.payment_id == pending.payment_id
        assert replay.succeeded

    def test_settle_unknown_payment(self, payments):
        with pytest.raises(KeyError):
            payments.settle("pay_missing", "succeeded")

    @pytest.mark.asyncio
    async def test_default_payment_methods(self, clock):
        adapter = SimulatedPaymentAdapter(clock=clock)

        assert await adapter.get_default_payment_method("cus_1") is None
        adapter.set_default_payment_method("cus_1", TestCards.SUCCESS)
        method = await adapter.get_default_payment_method("cus_1")
        assert method.last4 == "4242"

        adapter.remove_default_payment_method("cus_1")
        assert await adapter.get_default_payment_method("cus_1") is None


@pytest.mark.unit
class TestCallbackPaymentAdapter:
    @pytest.mark.asyncio
    async def test_delegates_to_callbacks(self):
        async def process(req):
            return Payment(
                payment_id="pay_cb",
                status=PaymentStatus.SUCCEEDED,
                amount=req.amount,
                currency=req.currency,
            )

        async def default_method(customer_id):
            return "pm_saved"

        adapter = CallbackPaymentAdapter(process, default_method, provider="acme")

        payment = await adapter.create_payment(request())
        method = await adapter.get_default_payment_method("cus_123")

        assert payment.payment_id == "pay_cb"
        assert method == SavedPaymentMethod(payment_method_id="pm_saved")
        assert adapter.provider == "acme"

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_become_adapter_errors(self):
        async def process(req):
            raise ConnectionError("gateway timeout")

        async def default_method(customer_id):
            raise TimeoutError("lookup timed out")

        adapter = CallbackPaymentAdapter(process, default_method)

        with pytest.raises(PaymentAdapterError) as exc_info:
            await adapter.create_payment(request())
        assert isinstance(exc_info.value.cause, ConnectionError)

        with pytest.raises(PaymentAdapterError):
            await adapter.get_default_payment_method("cus_123")

    @pytest.mark.asyncio
    async def test_declines_pass_through(self):
        async def process(req):
            raise PaymentDeclinedError("Declined", decline_code="do_not_honor")

        async def default_method(customer_id):
            return None

        adapter = CallbackPaymentAdapter(process, default_method)

        with pytest.raises(PaymentDeclinedError):
            await adapter.create_payment(request())
        assert await adapter.get_default_payment_method("cus_123") is None
