# Overview: Flask CLI command groups for bootstrap, inventory and pricing inspection.

# backend/stockbook/cli.py
# Commands Legend (run from the backend directory):
# - flask --app stockbook system init-db
#   Create all tables (idempotent).
# - flask --app stockbook system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - flask --app stockbook inventory summary 1
#   On-hand quantity, average cost, FIFO value and drift for a product.
# - flask --app stockbook inventory receive 1 --quantity 100 --unit-cost-cents 500
#   Receive a purchase batch.
# - flask --app stockbook pricing quote 1 --quantity 25 --tier wholesale [--customer-id 3]
#   Resolve the unit price for a line.
# - flask --app stockbook pricing breakdown 1 --tier regular
#   Price ladder with savings per quantity.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .validation import PRICE_TIERS, NotFoundError, ValidationError
from .services import inventory_service, pricing_service


def _fail(message: str):
    current_app.logger.warning("CLI command failed: %s", message)
    click.echo(f"FAIL {message}")
    raise click.exceptions.Exit(1)


def _money(cents) -> str:
    if cents is None:
        return "-"
    return f"{cents / 100:.2f}"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("DONE Database reset complete")


@click.group('inventory')
def inventory_group():
    """Inventory inspection and receiving."""


@inventory_group.command('summary')
@click.argument('product_id', type=int)
@with_appcontext
def inventory_summary(product_id):
    """Show on-hand quantity against batch quantity for a product."""
    try:
        summary = inventory_service.get_inventory_summary(product_id)
    except NotFoundError as e:
        _fail(str(e))

    click.echo(f"Product {summary['product_id']} ({summary['sku']})")
    click.echo(f"  On hand:        {summary['quantity']}")
    click.echo(f"  Batch quantity: {summary['batch_quantity']}")
    click.echo(f"  Avg cost:       {_money(summary['avg_cost_cents'])}")
    click.echo(f"  FIFO value:     {_money(summary['fifo_value_cents'])}")
    if summary['has_drift']:
        click.echo(f"WARN  Drift of {summary['drift_quantity']} units between inventory and batches")
    if summary['is_low_stock']:
        click.echo("WARN  Low stock")


@inventory_group.command('receive')
@click.argument('product_id', type=int)
@click.option('--quantity', type=int, required=True)
@click.option('--unit-cost-cents', type=int, required=True)
@click.option('--reference', default=None)
@with_appcontext
def inventory_receive(product_id, quantity, unit_cost_cents, reference):
    """Receive a purchase batch."""
    try:
        batch = inventory_service.receive_stock(
            product_id, quantity, unit_cost_cents, reference=reference
        )
    except (ValidationError, NotFoundError) as e:
        _fail(str(e))

    click.echo(
        f"PASS Received batch {batch.id}: {batch.received_quantity} @ {_money(batch.unit_cost_cents)}"
    )


@click.group('pricing')
def pricing_group():
    """Price resolution inspection."""


@pricing_group.command('quote')
@click.argument('product_id', type=int)
@click.option('--quantity', type=int, default=1, show_default=True)
@click.option('--tier', type=click.Choice(PRICE_TIERS), default='regular', show_default=True)
@click.option('--customer-id', type=int, default=None)
@with_appcontext
def pricing_quote(product_id, quantity, tier, customer_id):
    """Resolve the unit price for a product, quantity and tier."""
    try:
        quote = pricing_service.resolve_price(db.session, product_id, quantity, tier, customer_id)
    except (ValidationError, NotFoundError) as e:
        _fail(str(e))

    if not quote.is_set:
        click.echo(f"WARN  No price for product {product_id} (qty {quantity}, {tier})")
        return
    click.echo(
        f"{_money(quote.price_cents)} x {quote.quantity} = {_money(quote.total_cents)} "
        f"[{quote.source}]"
    )


@pricing_group.command('breakdown')
@click.argument('product_id', type=int)
@click.option('--tier', type=click.Choice(PRICE_TIERS), default='regular', show_default=True)
@with_appcontext
def pricing_breakdown(product_id, tier):
    """Print the price ladder with savings against the single-unit price."""
    try:
        data = pricing_service.pricing_breakdown(db.session, product_id, tier)
    except (ValidationError, NotFoundError) as e:
        _fail(str(e))

    mode = "bracket" if data['use_bracket_pricing'] else "flat"
    click.echo(f"Product {product_id} [{tier}] pricing: {mode}")
    for row in data['breakdown']:
        click.echo(
            f"  {row['quantity']:>6}  {_money(row['price_cents']):>10}  "
            f"{_money(row['total_cents']):>12}  save {_money(row['total_savings_cents'])}  "
            f"({row['source']})"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(pricing_group)
