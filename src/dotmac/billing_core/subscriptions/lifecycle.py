"""
Subscription lifecycle processor.

One processing pass scans the subscriptions whose next action is due,
derives that action from the state machine, charges through the payment
adapter with a deterministic idempotency key and persists the resulting
transition with compare-and-swap. The core never schedules itself; an
outer scheduler calls ``process_all`` periodically.

Guarantees per item:

- Only a definitive ``succeeded`` or ``failed`` payment advances state.
- A pending payment or an adapter failure leaves the subscription untouched.
- A lost compare-and-swap is counted as a conflict and emits no event.
- Events are published only after the write succeeded.
- The period invoice is settled before the subscription write, so a failed
  settlement leaves the subscription due and the next pass finishes it.

Running the same pass twice without the clock moving charges once: the
second pass finds nothing due, and overlapping passes reuse the same
idempotency key and invoice id.
"""

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from dotmac.billing_core.adapters.payment import Payment
from dotmac.billing_core.catalog.models import AddOn, Price
from dotmac.billing_core.dates import add_interval
from dotmac.billing_core.events import LifecycleEventType
from dotmac.billing_core.exceptions import (
    AdapterError,
    BillingError,
    ConcurrencyConflictError,
    PaymentDeclinedError,
    SubscriptionNotFoundError,
    UnknownPriceError,
)
from dotmac.billing_core.invoicing.models import Invoice, InvoiceStatus
from dotmac.billing_core.invoicing.service import NO_PAYMENT_METHOD, InvoiceService
from dotmac.billing_core.keys import idempotency_key, initial_charge_key, period_invoice_id
from dotmac.billing_core.subscriptions.models import Subscription, SubscriptionStatus
from dotmac.billing_core.subscriptions.state_machine import (
    CHARGING_ACTIONS,
    LifecycleAction,
    PaymentOutcome,
    Transition,
    apply_payment_outcome,
    end_at_period_end,
    expire_trial,
    next_action,
    prepare_charge,
)

if TYPE_CHECKING:
    from dotmac.billing_core.context import BillingContext

logger = structlog.get_logger(__name__)


class ItemResult(str, Enum):
    """What happened to one subscription during a pass."""

    ACTIVATED = "activated"
    RENEWED = "renewed"
    RETRIED = "retried"
    GRACE = "grace"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


_RESULT_BY_EVENT = {
    LifecycleEventType.SUBSCRIPTION_ACTIVATED: ItemResult.ACTIVATED,
    LifecycleEventType.SUBSCRIPTION_ACTIVATION_FAILED: ItemResult.CANCELED,
    LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERTED: ItemResult.RENEWED,
    LifecycleEventType.SUBSCRIPTION_RENEWED: ItemResult.RENEWED,
    LifecycleEventType.SUBSCRIPTION_RETRY_SUCCEEDED: ItemResult.RENEWED,
    LifecycleEventType.SUBSCRIPTION_RECOVERED: ItemResult.RENEWED,
    LifecycleEventType.SUBSCRIPTION_RENEWAL_FAILED: ItemResult.RETRIED,
    LifecycleEventType.SUBSCRIPTION_RETRY_SCHEDULED: ItemResult.RETRIED,
    LifecycleEventType.SUBSCRIPTION_RETRY_FAILED: ItemResult.RETRIED,
    LifecycleEventType.SUBSCRIPTION_GRACE_PERIOD_STARTED: ItemResult.GRACE,
    LifecycleEventType.SUBSCRIPTION_CANCELED_NONPAYMENT: ItemResult.CANCELED,
    LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERSION_FAILED: ItemResult.CANCELED,
    LifecycleEventType.SUBSCRIPTION_TRIAL_EXPIRED: ItemResult.CANCELED,
    LifecycleEventType.SUBSCRIPTION_CANCELED: ItemResult.CANCELED,
}

_PAID_EVENTS = frozenset(
    {
        LifecycleEventType.SUBSCRIPTION_ACTIVATED,
        LifecycleEventType.SUBSCRIPTION_TRIAL_CONVERTED,
        LifecycleEventType.SUBSCRIPTION_RENEWED,
        LifecycleEventType.SUBSCRIPTION_RETRY_SUCCEEDED,
        LifecycleEventType.SUBSCRIPTION_RECOVERED,
    }
)


class ProcessingError(BaseModel):
    """A per-item failure. The rest of the batch is unaffected."""

    subscription_id: str
    error_code: str
    message: str
    retryable: bool = True


class ItemOutcome(BaseModel):
    """Result of processing one subscription."""

    subscription_id: str
    action: LifecycleAction
    result: ItemResult
    status: SubscriptionStatus | None = None
    event_type: LifecycleEventType | None = None
    payment_id: str | None = None
    invoice_id: str | None = None
    error: ProcessingError | None = None


class ProcessAllResult(BaseModel):
    """Counters of one processing pass."""

    activated: int = 0
    renewed: int = 0
    retried: int = 0
    grace: int = 0
    canceled: int = 0
    processed: int = 0
    skipped: int = 0
    pending: int = 0
    conflicts: int = 0
    errors: list[ProcessingError] = Field(default_factory=list)
    outcomes: list[ItemOutcome] = Field(default_factory=list)

    def record(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        result = outcome.result
        if result == ItemResult.ACTIVATED:
            self.activated += 1
        elif result == ItemResult.RENEWED:
            self.renewed += 1
        elif result == ItemResult.RETRIED:
            self.retried += 1
        elif result == ItemResult.GRACE:
            self.grace += 1
        elif result == ItemResult.CANCELED:
            self.canceled += 1
        elif result == ItemResult.SKIPPED:
            self.skipped += 1
        elif result == ItemResult.PENDING:
            self.pending += 1
        elif result == ItemResult.CONFLICT:
            self.conflicts += 1
        elif outcome.error is not None:
            self.errors.append(outcome.error)

    def as_counts(self) -> dict[str, int]:
        """The four lifecycle counters."""
        return {
            "renewed": self.renewed,
            "retried": self.retried,
            "grace": self.grace,
            "canceled": self.canceled,
        }


class LifecycleProcessor:
    """Drives due subscriptions through renewals, retries, grace and cancellation."""

    def __init__(self, context: "BillingContext") -> None:
        self.context = context
        self.storage = context.storage
        self.invoices = InvoiceService(context)

    async def process_all(self, limit: int | None = None) -> ProcessAllResult:
        """Run one pass over every subscription due at the current instant."""
        now = self.context.now()
        batch_size = limit if limit is not None else self.context.config.batch_size
        with structlog.contextvars.bound_contextvars(pass_id=uuid.uuid4().hex[:12]):
            return await self._run_pass(now, batch_size)

    async def _run_pass(self, now: datetime, batch_size: int) -> ProcessAllResult:
        due = await self.storage.list_due_subscriptions(now, batch_size)

        logger.info("lifecycle.pass_started", due=len(due), now=now.isoformat())

        semaphore = asyncio.Semaphore(self.context.config.max_concurrency)

        async def run(subscription: Subscription) -> ItemOutcome:
            async with semaphore:
                return await self._process_safely(subscription, now)

        outcomes = await asyncio.gather(*(run(subscription) for subscription in due))

        result = ProcessAllResult()
        for outcome in outcomes:
            result.record(outcome)

        logger.info(
            "lifecycle.pass_completed",
            processed=result.processed,
            errors=len(result.errors),
            conflicts=result.conflicts,
            pending=result.pending,
            activated=result.activated,
            **result.as_counts(),
        )
        return result

    async def process_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> ItemOutcome:
        """Process one subscription. Collaborator failures are returned, not raised."""
        subscription = await self.storage.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return await self._process_safely(subscription, now or self.context.now())

    async def _process_safely(self, subscription: Subscription, now: datetime) -> ItemOutcome:
        action = next_action(subscription, now, self.context.config)
        try:
            return await self._process(subscription, action, now)
        except ConcurrencyConflictError:
            self.context.metrics.record_conflict("lifecycle")
            logger.info(
                "lifecycle.conflict",
                subscription_id=subscription.subscription_id,
                action=action.value,
                expected_version=subscription.version,
            )
            return ItemOutcome(
                subscription_id=subscription.subscription_id,
                action=action,
                result=ItemResult.CONFLICT,
                status=subscription.status,
            )
        except BillingError as exc:
            if isinstance(exc, AdapterError):
                self.context.metrics.record_adapter_error(exc.error_code)
            logger.warning(
                "lifecycle.item_failed",
                subscription_id=subscription.subscription_id,
                action=action.value,
                error_code=exc.error_code,
                error=exc.message,
            )
            return self._error(subscription, action, exc.error_code, exc.message, exc.retryable)
        except Exception as exc:
            logger.exception(
                "lifecycle.item_crashed",
                subscription_id=subscription.subscription_id,
                action=action.value,
            )
            return self._error(subscription, action, "INTERNAL_ERROR", str(exc), False)

    @staticmethod
    def _error(
        subscription: Subscription,
        action: LifecycleAction,
        error_code: str,
        message: str,
        retryable: bool,
    ) -> ItemOutcome:
        return ItemOutcome(
            subscription_id=subscription.subscription_id,
            action=action,
            result=ItemResult.ERROR,
            status=subscription.status,
            error=ProcessingError(
                subscription_id=subscription.subscription_id,
                error_code=error_code,
                message=message,
                retryable=retryable,
            ),
        )

    async def _process(
        self, subscription: Subscription, action: LifecycleAction, now: datetime
    ) -> ItemOutcome:
        if action == LifecycleAction.NONE:
            return ItemOutcome(
                subscription_id=subscription.subscription_id,
                action=action,
                result=ItemResult.SKIPPED,
                status=subscription.status,
            )

        if action == LifecycleAction.EXPIRE_TRIAL:
            transition = expire_trial(subscription, now)
            return await self._commit(subscription, action, transition)
        if action == LifecycleAction.END_AT_PERIOD_END:
            transition = end_at_period_end(subscription, now)
            return await self._commit(subscription, action, transition)

        if action in CHARGING_ACTIONS:
            return await self._charge(subscription, action, now)

        raise AssertionError(f"Unhandled lifecycle action {action.value}")

    async def _charge(
        self, subscription: Subscription, action: LifecycleAction, now: datetime
    ) -> ItemOutcome:
        charged = prepare_charge(subscription, action)
        price = await self.storage.get_price(charged.price_id)
        if price is None:
            raise UnknownPriceError(
                f"Price {charged.price_id} not found", price_id=charged.price_id
            )

        invoice = await self._period_invoice(charged, action, price, now)

        payment: Payment | None = None
        failure_code: str | None = None
        failure_message: str | None = None

        if invoice.status == InvoiceStatus.PAID:
            # Paid by an earlier pass whose subscription write did not land.
            outcome = PaymentOutcome.SUCCEEDED
            if invoice.payment_id:
                payment = await self.storage.get_payment(invoice.payment_id)
        elif invoice.status in (InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE):
            outcome = PaymentOutcome.FAILED
            failure_code = f"invoice_{invoice.status.value}"
            failure_message = f"Invoice {invoice.invoice_id} is {invoice.status.value}"
        elif invoice.total == 0:
            outcome = PaymentOutcome.SUCCEEDED
        else:
            if action == LifecycleAction.ACTIVATE:
                key = initial_charge_key(subscription.subscription_id)
            else:
                key = idempotency_key(
                    subscription.subscription_id,
                    subscription.current_period_start,
                    subscription.retry_count,
                )
            method = await self.invoices.resolve_payment_method(subscription.customer_id)
            if method is None:
                outcome = PaymentOutcome.FAILED
                failure_code = NO_PAYMENT_METHOD
                failure_message = "Customer has no default payment method"
            else:
                try:
                    payment = await self.invoices.charge_invoice(
                        invoice,
                        method,
                        key,
                        metadata={
                            "subscription_id": subscription.subscription_id,
                            "action": action.value,
                        },
                    )
                except PaymentDeclinedError as exc:
                    outcome = PaymentOutcome.FAILED
                    failure_code = exc.decline_code
                    failure_message = exc.message
                else:
                    if payment.pending:
                        logger.info(
                            "lifecycle.payment_pending",
                            subscription_id=subscription.subscription_id,
                            payment_id=payment.payment_id,
                            idempotency_key=key,
                        )
                        self.context.metrics.record_payment_attempt(
                            action.value, "pending", invoice.total, invoice.currency
                        )
                        return ItemOutcome(
                            subscription_id=subscription.subscription_id,
                            action=action,
                            result=ItemResult.PENDING,
                            status=subscription.status,
                            payment_id=payment.payment_id,
                            invoice_id=invoice.invoice_id,
                        )
                    if payment.succeeded:
                        outcome = PaymentOutcome.SUCCEEDED
                    else:
                        outcome = PaymentOutcome.FAILED
                        failure_code = payment.failure_code
                        failure_message = payment.failure_message

            self.context.metrics.record_payment_attempt(
                action.value, outcome.value, invoice.total, invoice.currency
            )

        transition = apply_payment_outcome(
            charged,
            action,
            outcome,
            now,
            self.context.config,
            price,
            amount=invoice.total,
            payment_id=payment.payment_id if payment else None,
            failure_code=failure_code,
            failure_message=failure_message,
            remaining_balance=min(0, invoice.subtotal),
            invoice_id=invoice.invoice_id,
        )
        await self._settle_invoice(invoice.invoice_id, transition, payment)
        item = await self._commit(subscription, action, transition)
        item = item.model_copy(
            update={
                "payment_id": payment.payment_id if payment else None,
                "invoice_id": invoice.invoice_id,
            }
        )

        if transition.event.type in _PAID_EVENTS and action != LifecycleAction.ACTIVATE:
            self.context.metrics.record_renewal(action.value, price.currency)
        return item

    async def _period_invoice(
        self, subscription: Subscription, action: LifecycleAction, price: Price, now: datetime
    ) -> Invoice:
        """Get or create the invoice shared by every attempt of the period being charged."""
        if action == LifecycleAction.ACTIVATE:
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end
        else:
            if action == LifecycleAction.CONVERT_TRIAL:
                period_start = subscription.trial_end or subscription.current_period_end
            else:
                period_start = subscription.current_period_end
            period_end = add_interval(period_start, price.billing_interval, price.interval_count)

        invoice_id = period_invoice_id(subscription.subscription_id, period_start)
        existing = await self.storage.get_invoice(invoice_id)
        if existing is not None:
            return existing

        addons = await self._load_addons(subscription)
        invoice = self.invoices.build_subscription_invoice(
            subscription, price, addons, invoice_id, period_start, period_end, now
        )
        invoice, _ = await self.invoices.create(invoice)
        return invoice

    async def _load_addons(self, subscription: Subscription) -> list[AddOn]:
        addons: list[AddOn] = []
        for addon_id in subscription.addon_ids:
            addon = await self.storage.get_addon(addon_id)
            if addon is None:
                logger.warning(
                    "lifecycle.addon_missing",
                    subscription_id=subscription.subscription_id,
                    addon_id=addon_id,
                )
                continue
            addons.append(addon)
        return addons

    async def _commit(
        self, before: Subscription, action: LifecycleAction, transition: Transition
    ) -> ItemOutcome:
        """Persist with compare-and-swap, then publish the transition's event."""
        await self.storage.compare_and_swap_subscription(
            transition.subscription, expected_version=before.version
        )
        await self.context.events.publish(transition.event)

        after = transition.subscription
        if after.status == SubscriptionStatus.GRACE_PERIOD and transition.status_changed:
            self.context.metrics.record_grace_started()
        if after.is_terminal and transition.status_changed:
            self.context.metrics.record_cancellation(after.cancel_reason or after.status.value)

        logger.info(
            "lifecycle.transition",
            subscription_id=after.subscription_id,
            action=action.value,
            event_type=transition.event.type.value,
            previous_status=transition.previous_status.value,
            status=after.status.value,
            retry_count=after.retry_count,
        )
        return ItemOutcome(
            subscription_id=after.subscription_id,
            action=action,
            result=_RESULT_BY_EVENT[transition.event.type],
            status=after.status,
            event_type=transition.event.type,
        )

    async def _settle_invoice(
        self, invoice_id: str, transition: Transition, payment: Payment | None
    ) -> None:
        """Bring the period invoice in line with ``transition``.

        Reads the invoice again and only moves it out of draft or open, so
        repeating a settlement that already landed is a no-op.
        """
        invoice = await self.invoices.get(invoice_id)
        if invoice.status not in (InvoiceStatus.OPEN, InvoiceStatus.DRAFT):
            return
        if transition.event.type in _PAID_EVENTS:
            if invoice.status == InvoiceStatus.DRAFT:
                await self.invoices.finalize(invoice_id)
            await self.invoices.mark_paid(invoice_id, payment.payment_id if payment else None)
        elif transition.status == SubscriptionStatus.CANCELED_NONPAYMENT:
            await self.invoices.mark_uncollectible(invoice_id)
        elif transition.status == SubscriptionStatus.CANCELED:
            await self.invoices.void(invoice_id, reason=transition.subscription.cancel_reason)


async def process_all(context: "BillingContext", limit: int | None = None) -> ProcessAllResult:
    """Run one lifecycle pass with ``context``."""
    return await LifecycleProcessor(context).process_all(limit=limit)


__all__ = [
    "ItemResult",
    "ProcessingError",
    "ItemOutcome",
    "ProcessAllResult",
    "LifecycleProcessor",
    "process_all",
    "idempotency_key",
]
