"""
SQLAlchemy storage adapter.

Async SQLAlchemy 2.0 implementation of ``StorageAdapter``. Each record is
stored as its JSON document plus the columns queries filter on. The
concurrency-sensitive operations are single conditional statements:

- compare-and-swap: ``UPDATE ... WHERE subscription_id = :id AND version = :expected``
- redemption: ``UPDATE ... SET current_redemptions = current_redemptions + 1
  WHERE current_redemptions < :max`` and a conditional redemption insert,
  committed or rolled back together
- usage: ``UPDATE ... SET current_value = current_value + :delta
  WHERE current_value + :delta <= :limit``
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    and_,
    case,
    delete,
    func,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dotmac.billing_core.adapters.payment import Payment
from dotmac.billing_core.adapters.storage import StorageAdapter
from dotmac.billing_core.catalog.models import AddOn, Plan, Price
from dotmac.billing_core.customers import Customer
from dotmac.billing_core.exceptions import (
    BillingError,
    BillingValidationError,
    ConcurrencyConflictError,
    InvoiceNotFoundError,
    PromoCodeNotFoundError,
    StorageAdapterError,
)
from dotmac.billing_core.invoicing.models import Invoice, InvoiceStatus
from dotmac.billing_core.promotions.models import PromoCode
from dotmac.billing_core.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)

_NOT_DUE_STATUSES = (
    SubscriptionStatus.PAUSED.value,
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.CANCELED_NONPAYMENT.value,
)


# ==========================================
# Tables
# ==========================================


class Base(DeclarativeBase):
    """Declarative base for billing core tables."""

    pass


class CustomerRow(Base):
    __tablename__ = "billing_core_customers"

    customer_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PlanRow(Base):
    __tablename__ = "billing_core_plans"

    plan_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PriceRow(Base):
    __tablename__ = "billing_core_prices"

    price_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class AddOnRow(Base):
    __tablename__ = "billing_core_addons"

    addon_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class SubscriptionRow(Base):
    __tablename__ = "billing_core_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PromoCodeRow(Base):
    __tablename__ = "billing_core_promo_codes"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_redemptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PromoRedemptionRow(Base):
    __tablename__ = "billing_core_promo_redemptions"
    __table_args__ = (UniqueConstraint("code", "invoice_id", name="uq_redemption_code_invoice"),)

    redemption_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255))
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InvoiceRow(Base):
    __tablename__ = "billing_core_invoices"

    invoice_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PaymentRow(Base):
    __tablename__ = "billing_core_payments"

    payment_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class UsageRow(Base):
    __tablename__ = "billing_core_usage"

    subscription_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    limit_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ==========================================
# Adapter
# ==========================================


class _RedemptionRefused(Exception):
    """A redemption limit is reached; rolls the redemption transaction back."""


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json")


class SQLAlchemyStorageAdapter(StorageAdapter):
    """Storage adapter over an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SQLAlchemyStorageAdapter":
        return cls(create_async_engine(url, echo=echo))

    async def create_all(self) -> None:
        """Create the billing core tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Transactional session; database errors surface as ``StorageAdapterError``."""
        try:
            async with self._sessionmaker() as session, session.begin():
                yield session
        except BillingError:
            raise
        except SQLAlchemyError as exc:
            logger.error("storage.operation_failed", operation=operation, error=str(exc))
            raise StorageAdapterError(
                f"Storage operation {operation} failed: {exc}", operation=operation, cause=exc
            ) from exc

    async def _get_data(self, row_type: type[Base], key: str, operation: str) -> Any:
        async with self._session(operation) as session:
            row = await session.get(row_type, key)
            return row.data if row is not None else None  # type: ignore[attr-defined]

    # Customers

    async def get_customer(self, customer_id: str) -> Customer | None:
        data = await self._get_data(CustomerRow, customer_id, "get_customer")
        return Customer.model_validate(data) if data is not None else None

    async def save_customer(self, customer: Customer) -> Customer:
        async with self._session("save_customer") as session:
            await session.merge(CustomerRow(customer_id=customer.customer_id, data=_dump(customer)))
        return customer

    # Catalog

    async def get_plan(self, plan_id: str) -> Plan | None:
        data = await self._get_data(PlanRow, plan_id, "get_plan")
        return Plan.model_validate(data) if data is not None else None

    async def save_plan(self, plan: Plan) -> Plan:
        async with self._session("save_plan") as session:
            await session.merge(PlanRow(plan_id=plan.plan_id, data=_dump(plan)))
        return plan

    async def get_price(self, price_id: str) -> Price | None:
        data = await self._get_data(PriceRow, price_id, "get_price")
        return Price.model_validate(data) if data is not None else None

    async def save_price(self, price: Price) -> Price:
        async with self._session("save_price") as session:
            await session.merge(
                PriceRow(price_id=price.price_id, plan_id=price.plan_id, data=_dump(price))
            )
        return price

    async def get_addon(self, addon_id: str) -> AddOn | None:
        data = await self._get_data(AddOnRow, addon_id, "get_addon")
        return AddOn.model_validate(data) if data is not None else None

    async def save_addon(self, addon: AddOn) -> AddOn:
        async with self._session("save_addon") as session:
            await session.merge(AddOnRow(addon_id=addon.addon_id, data=_dump(addon)))
        return addon

    # Subscriptions

    @staticmethod
    def _subscription_columns(subscription: Subscription) -> dict[str, Any]:
        due_at = subscription.due_at
        if subscription.status.value in _NOT_DUE_STATUSES:
            due_at = None
        return {
            "customer_id": subscription.customer_id,
            "status": subscription.status.value,
            "due_at": due_at.astimezone(UTC) if due_at else None,
            "version": subscription.version,
            "data": _dump(subscription),
        }

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        data = await self._get_data(SubscriptionRow, subscription_id, "get_subscription")
        return Subscription.model_validate(data) if data is not None else None

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        try:
            async with self._session("create_subscription") as session:
                session.add(
                    SubscriptionRow(
                        subscription_id=subscription.subscription_id,
                        **self._subscription_columns(subscription),
                    )
                )
        except StorageAdapterError as exc:
            if isinstance(exc.cause, IntegrityError):
                raise BillingValidationError(
                    f"Subscription {subscription.subscription_id} already exists",
                    context={"subscription_id": subscription.subscription_id},
                ) from exc
            raise
        return subscription

    async def compare_and_swap_subscription(
        self, subscription: Subscription, expected_version: int
    ) -> Subscription:
        async with self._session("compare_and_swap_subscription") as session:
            result = await session.execute(
                update(SubscriptionRow)
                .where(
                    and_(
                        SubscriptionRow.subscription_id == subscription.subscription_id,
                        SubscriptionRow.version == expected_version,
                    )
                )
                .values(**self._subscription_columns(subscription))
            )
            if result.rowcount != 1:  # type: ignore[attr-defined]
                logger.info(
                    "storage.cas_conflict",
                    subscription_id=subscription.subscription_id,
                    expected_version=expected_version,
                )
                raise ConcurrencyConflictError(
                    f"Subscription {subscription.subscription_id} was modified concurrently",
                    entity_id=subscription.subscription_id,
                    expected_version=expected_version,
                )
        return subscription

    async def list_due_subscriptions(self, now: datetime, limit: int) -> list[Subscription]:
        async with self._session("list_due_subscriptions") as session:
            result = await session.execute(
                select(SubscriptionRow.data)
                .where(
                    and_(
                        SubscriptionRow.due_at.is_not(None),
                        SubscriptionRow.due_at <= now.astimezone(UTC),
                        SubscriptionRow.status.not_in(_NOT_DUE_STATUSES),
                    )
                )
                .order_by(SubscriptionRow.due_at, SubscriptionRow.subscription_id)
                .limit(limit)
            )
            return [Subscription.model_validate(data) for data in result.scalars()]

    async def list_customer_subscriptions(self, customer_id: str) -> list[Subscription]:
        async with self._session("list_customer_subscriptions") as session:
            result = await session.execute(
                select(SubscriptionRow.data)
                .where(SubscriptionRow.customer_id == customer_id)
                .order_by(SubscriptionRow.subscription_id)
            )
            return [Subscription.model_validate(data) for data in result.scalars()]

    # Promo codes

    async def get_promo_code(self, code: str) -> PromoCode | None:
        async with self._session("get_promo_code") as session:
            row = await session.get(PromoCodeRow, code.upper())
            if row is None:
                return None
            return PromoCode.model_validate(
                {**row.data, "current_redemptions": row.current_redemptions}
            )

    async def save_promo_code(self, promo_code: PromoCode) -> PromoCode:
        async with self._session("save_promo_code") as session:
            row = await session.get(PromoCodeRow, promo_code.code)
            if row is None:
                session.add(
                    PromoCodeRow(
                        code=promo_code.code,
                        current_redemptions=promo_code.current_redemptions,
                        data=_dump(promo_code),
                    )
                )
            else:
                # The counter column only moves through the guarded increment.
                row.data = _dump(promo_code)
        return promo_code

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
        code = code.upper()
        try:
            await self._redeem(
                code, customer_id, max_redemptions, max_per_customer, invoice_id, redeemed_at
            )
        except _RedemptionRefused:
            return False
        except StorageAdapterError as exc:
            # Lost the race to a concurrent redemption for the same invoice.
            if invoice_id is not None and isinstance(exc.cause, IntegrityError):
                return True
            raise
        return True

    async def has_invoice_redemption(self, code: str, invoice_id: str) -> bool:
        async with self._session("has_invoice_redemption") as session:
            result = await session.execute(
                select(PromoRedemptionRow.redemption_id).where(
                    and_(
                        PromoRedemptionRow.code == code.upper(),
                        PromoRedemptionRow.invoice_id == invoice_id,
                    )
                )
            )
            return result.first() is not None

    async def _redeem(
        self,
        code: str,
        customer_id: str,
        max_redemptions: int | None,
        max_per_customer: int | None,
        invoice_id: str | None,
        redeemed_at: datetime,
    ) -> None:
        async with self._session("increment_redemptions_if_below") as session:
            if await session.get(PromoCodeRow, code) is None:
                raise PromoCodeNotFoundError(f"Promo code {code} not found", code=code)
            if invoice_id is not None:
                recorded = await session.execute(
                    select(PromoRedemptionRow.redemption_id).where(
                        and_(
                            PromoRedemptionRow.code == code,
                            PromoRedemptionRow.invoice_id == invoice_id,
                        )
                    )
                )
                if recorded.first() is not None:
                    return

            conditions = [PromoCodeRow.code == code]
            if max_redemptions is not None:
                conditions.append(PromoCodeRow.current_redemptions < max_redemptions)
            bumped = await session.execute(
                update(PromoCodeRow)
                .where(and_(*conditions))
                .values(current_redemptions=PromoCodeRow.current_redemptions + 1)
            )
            if bumped.rowcount != 1:  # type: ignore[attr-defined]
                raise _RedemptionRefused

            candidate = select(
                literal(code),
                literal(customer_id),
                literal(invoice_id),
                literal(redeemed_at, DateTime(timezone=True)),
            )
            if max_per_customer is not None:
                used = (
                    select(func.count())
                    .select_from(PromoRedemptionRow)
                    .where(
                        and_(
                            PromoRedemptionRow.code == code,
                            PromoRedemptionRow.customer_id == customer_id,
                        )
                    )
                    .scalar_subquery()
                )
                candidate = candidate.where(used < max_per_customer)
            inserted = await session.execute(
                insert(PromoRedemptionRow).from_select(
                    ["code", "customer_id", "invoice_id", "redeemed_at"], candidate
                )
            )
            if inserted.rowcount != 1:  # type: ignore[attr-defined]
                raise _RedemptionRefused

    async def count_customer_redemptions(self, code: str, customer_id: str) -> int:
        async with self._session("count_customer_redemptions") as session:
            result = await session.execute(
                select(func.count())
                .select_from(PromoRedemptionRow)
                .where(
                    and_(
                        PromoRedemptionRow.code == code.upper(),
                        PromoRedemptionRow.customer_id == customer_id,
                    )
                )
            )
            return int(result.scalar_one())

    # Invoices and payments

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        data = await self._get_data(InvoiceRow, invoice_id, "get_invoice")
        return Invoice.model_validate(data) if data is not None else None

    async def create_invoice(self, invoice: Invoice) -> tuple[Invoice, bool]:
        async with self._session("create_invoice") as session:
            existing = await session.get(InvoiceRow, invoice.invoice_id)
            if existing is not None:
                return Invoice.model_validate(existing.data), False
            session.add(
                InvoiceRow(
                    invoice_id=invoice.invoice_id,
                    customer_id=invoice.customer_id,
                    status=invoice.status.value,
                    data=_dump(invoice),
                )
            )
        return invoice, True

    async def update_invoice(
        self, invoice: Invoice, expected_status: InvoiceStatus | None = None
    ) -> Invoice:
        async with self._session("update_invoice") as session:
            conditions = [InvoiceRow.invoice_id == invoice.invoice_id]
            if expected_status is not None:
                conditions.append(InvoiceRow.status == expected_status.value)
            updated = await session.execute(
                update(InvoiceRow)
                .where(and_(*conditions))
                .values(status=invoice.status.value, data=_dump(invoice))
            )
            if updated.rowcount != 1:  # type: ignore[attr-defined]
                if await session.get(InvoiceRow, invoice.invoice_id) is None:
                    raise InvoiceNotFoundError(
                        f"Invoice {invoice.invoice_id} not found", invoice_id=invoice.invoice_id
                    )
                raise ConcurrencyConflictError(
                    f"Invoice {invoice.invoice_id} was modified concurrently",
                    entity_id=invoice.invoice_id,
                )
        return invoice

    async def list_customer_invoices(self, customer_id: str) -> list[Invoice]:
        async with self._session("list_customer_invoices") as session:
            result = await session.execute(
                select(InvoiceRow.data)
                .where(InvoiceRow.customer_id == customer_id)
                .order_by(InvoiceRow.invoice_id)
            )
            return [Invoice.model_validate(data) for data in result.scalars()]

    async def save_payment(self, payment: Payment) -> Payment:
        async with self._session("save_payment") as session:
            await session.merge(PaymentRow(payment_id=payment.payment_id, data=_dump(payment)))
        return payment

    async def get_payment(self, payment_id: str) -> Payment | None:
        data = await self._get_data(PaymentRow, payment_id, "get_payment")
        return Payment.model_validate(data) if data is not None else None

    # Usage

    async def get_usage(self, subscription_id: str, key: str) -> int:
        async with self._session("get_usage") as session:
            row = await session.get(UsageRow, (subscription_id, key))
            return row.current_value if row is not None else 0

    async def adjust_usage_if_within(
        self, subscription_id: str, key: str, delta: int, limit: int | None
    ) -> int | None:
        await self._ensure_usage_row(subscription_id, key)
        async with self._session("adjust_usage_if_within") as session:
            target = UsageRow.current_value + delta
            conditions = [UsageRow.subscription_id == subscription_id, UsageRow.limit_key == key]
            if delta > 0 and limit is not None:
                conditions.append(target <= limit)
            adjusted = await session.execute(
                update(UsageRow)
                .where(and_(*conditions))
                .values(current_value=case((target < 0, 0), else_=target))
            )
            if adjusted.rowcount != 1:  # type: ignore[attr-defined]
                return None
            result = await session.execute(
                select(UsageRow.current_value).where(
                    and_(UsageRow.subscription_id == subscription_id, UsageRow.limit_key == key)
                )
            )
            return int(result.scalar_one())

    async def _ensure_usage_row(self, subscription_id: str, key: str) -> None:
        try:
            async with self._session("adjust_usage_if_within") as session:
                if await session.get(UsageRow, (subscription_id, key)) is None:
                    session.add(
                        UsageRow(subscription_id=subscription_id, limit_key=key, current_value=0)
                    )
        except StorageAdapterError as exc:
            # Created concurrently.
            if not isinstance(exc.cause, IntegrityError):
                raise

    async def reset_usage(self, subscription_id: str, key: str) -> None:
        async with self._session("reset_usage") as session:
            await session.execute(
                delete(UsageRow).where(
                    and_(UsageRow.subscription_id == subscription_id, UsageRow.limit_key == key)
                )
            )
