#!/usr/bin/env python
"""
CLI commands for the DotMac billing core.
"""

import asyncio
import importlib
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import click

from dotmac.billing_core.adapters.payment import PaymentAdapter
from dotmac.billing_core.adapters.simulated import SimulatedPaymentAdapter
from dotmac.billing_core.adapters.sqlalchemy import SQLAlchemyStorageAdapter
from dotmac.billing_core.catalog.models import BillingInterval, Price
from dotmac.billing_core.context import BillingContext
from dotmac.billing_core.exceptions import BillingError
from dotmac.billing_core.logging import setup_logging
from dotmac.billing_core.pricing.proration import calculate_proration
from dotmac.billing_core.settings import CrossIntervalPolicy, Settings, get_settings
from dotmac.billing_core.subscriptions.lifecycle import process_all
from dotmac.billing_core.time_source import SimulatedTimeSource, SystemTimeSource, TimeSource


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings_factory: Callable[[], Settings]
    storage_factory: Callable[[str, bool], SQLAlchemyStorageAdapter]
    setup_logging: Callable[[Settings], None]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        settings_factory=get_settings,
        storage_factory=SQLAlchemyStorageAdapter.from_url,
        setup_logging=setup_logging,
    )


def _parse_instant(value: str | None, option: str) -> datetime | None:
    """ISO-8601 instant; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(
            f"{value!r} is not an ISO-8601 datetime", param_hint=option
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def load_payment_adapter(spec: str, clock: TimeSource) -> PaymentAdapter:
    """Resolve ``simulated`` or a ``module:factory`` reference to a payment adapter."""
    if spec == "simulated":
        return SimulatedPaymentAdapter(clock=clock)

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected 'module:factory'", param_hint="--payment-adapter")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise click.BadParameter(
            f"cannot load {spec}: {exc}", param_hint="--payment-adapter"
        ) from exc

    adapter = factory()
    if not isinstance(adapter, PaymentAdapter):
        raise click.BadParameter(
            f"{spec} returned {type(adapter).__name__}, not a PaymentAdapter",
            param_hint="--payment-adapter",
        )
    return adapter


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """DotMac billing core CLI."""
    pass


@cli.command()
@click.option("--database-url", default=None, help="SQLAlchemy async URL (defaults to settings)")
def init_database(database_url: str | None) -> None:
    """Create the billing core tables."""
    deps = _get_cli_dependencies()
    settings = deps.settings_factory()
    storage = deps.storage_factory(database_url or settings.database.url, settings.database.echo)

    async def _init() -> None:
        try:
            await storage.create_all()
        finally:
            await storage.dispose()

    click.echo("Creating billing tables...")
    asyncio.run(_init())
    click.echo("Billing tables ready.")


@cli.command()
@click.option("--current-amount", type=int, required=True, help="Current unit amount (minor units)")
@click.option("--new-amount", type=int, required=True, help="New unit amount (minor units)")
@click.option("--currency", required=True, help="Currency of the current price")
@click.option(
    "--new-currency", default=None, help="Currency of the new price (defaults to --currency)"
)
@click.option(
    "--interval",
    type=click.Choice([i.value for i in BillingInterval]),
    default=BillingInterval.MONTH.value,
    help="Billing interval of the current price",
)
@click.option(
    "--new-interval",
    type=click.Choice([i.value for i in BillingInterval]),
    default=None,
    help="Billing interval of the new price (defaults to --interval)",
)
@click.option("--quantity", type=int, default=1, show_default=True)
@click.option("--period-start", required=True, help="Current period start (ISO-8601)")
@click.option("--period-end", required=True, help="Current period end (ISO-8601)")
@click.option("--now", "now_value", required=True, help="Instant of the change (ISO-8601)")
@click.option(
    "--cross-interval-policy",
    type=click.Choice([p.value for p in CrossIntervalPolicy]),
    default=CrossIntervalPolicy.PERIOD_END.value,
)
def prorate(
    current_amount: int,
    new_amount: int,
    currency: str,
    new_currency: str | None,
    interval: str,
    new_interval: str | None,
    quantity: int,
    period_start: str,
    period_end: str,
    now_value: str,
    cross_interval_policy: str,
) -> None:
    """Print the proration of a mid-period price change as JSON."""
    deps = _get_cli_dependencies()
    deps.setup_logging(deps.settings_factory())

    try:
        current = Price(
            price_id="current",
            plan_id="current",
            unit_amount=current_amount,
            currency=currency,
            billing_interval=BillingInterval(interval),
        )
        new = Price(
            price_id="new",
            plan_id="new",
            unit_amount=new_amount,
            currency=new_currency or currency,
            billing_interval=BillingInterval(new_interval or interval),
        )
        result = calculate_proration(
            current,
            new,
            _parse_instant(period_start, "--period-start"),  # type: ignore[arg-type]
            _parse_instant(period_end, "--period-end"),  # type: ignore[arg-type]
            _parse_instant(now_value, "--now"),  # type: ignore[arg-type]
            quantity=quantity,
            cross_interval_policy=CrossIntervalPolicy(cross_interval_policy),
        )
    except BillingError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc.message}") from exc

    _echo_json(result.model_dump(mode="json"))


@cli.command("process-all")
@click.option("--database-url", default=None, help="SQLAlchemy async URL (defaults to settings)")
@click.option(
    "--payment-adapter",
    "adapter_spec",
    required=True,
    help="'simulated' or module:factory returning a PaymentAdapter",
)
@click.option("--limit", type=int, default=None, help="Max subscriptions in this pass")
@click.option("--now", "now_value", default=None, help="Process as of this instant (ISO-8601)")
@click.option("--create-tables", is_flag=True, help="Create tables before processing")
def process_all_command(
    database_url: str | None,
    adapter_spec: str,
    limit: int | None,
    now_value: str | None,
    create_tables: bool,
) -> None:
    """Run one lifecycle pass and print the counts as JSON."""
    deps = _get_cli_dependencies()
    settings = deps.settings_factory()
    deps.setup_logging(settings)

    now = _parse_instant(now_value, "--now")
    clock: TimeSource = SimulatedTimeSource(now) if now else SystemTimeSource()
    payments = load_payment_adapter(adapter_spec, clock)
    storage = deps.storage_factory(database_url or settings.database.url, settings.database.echo)

    async def _run() -> dict[str, Any]:
        try:
            if create_tables:
                await storage.create_all()
            context = BillingContext.create(storage, payments, clock=clock, settings=settings)
            result = await process_all(context, limit=limit)
        finally:
            await storage.dispose()
        return {
            **result.as_counts(),
            "activated": result.activated,
            "processed": result.processed,
            "skipped": result.skipped,
            "pending": result.pending,
            "conflicts": result.conflicts,
            "errors": [error.model_dump() for error in result.errors],
        }

    try:
        summary = asyncio.run(_run())
    except BillingError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc.message}") from exc
    _echo_json(summary)


if __name__ == "__main__":
    cli()
