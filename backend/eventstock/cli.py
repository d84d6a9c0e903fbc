# Overview: Flask CLI command groups for bootstrap, demo data and inspection.

# backend/eventstock/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to eventstock (PowerShell: $env:FLASK_APP="eventstock").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock:
# - python -m flask stock seed-demo
#   Create a demo client, products and a B2B pool.
#
# Events:
# - python -m flask events outstanding 12
#   Print the lines of event 12 that are still out.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Client, Product
from .services import event_service, return_service, stock_service
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (idempotent)."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask stock seed-demo' for sample data.")


@click.group('stock')
def stock_group():
    """Stock pool commands."""


DEMO_PRODUCTS = [
    # sku, name, unit_type, rate, buy, loss, stock
    ("CHR-001", "Chair", "pcs", 500, 2000, None, 200),
    ("TBL-001", "Table", "pcs", 1500, 8000, 10000, 40),
    ("CLT-001", "Table Cloth", "pcs", 300, 1200, None, 60),
    ("CBL-010", "Cable 10m", "pcs", 200, None, None, 25),
]


@stock_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo client, products and one B2B pool (skips existing SKUs)."""
    if not db.session.query(Client).filter_by(name="Demo Client").first():
        db.session.add(Client(name="Demo Client", phone="+10000000000"))
        click.echo("PASS Created client: Demo Client")

    for sku, name, unit_type, rate, buy, loss, stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(sku=sku).first():
            click.echo(f"WARN  Product {sku} already exists, skipping...")
            continue
        db.session.add(Product(
            sku=sku,
            name=name,
            unit_type=unit_type,
            rate_cents=rate,
            buy_price_cents=buy,
            loss_price_cents=loss,
            stock_qty=stock,
        ))
        click.echo(f"PASS Created product: {sku} {name} (stock {stock})")
    db.session.commit()

    stock, merged = stock_service.create_b2b_stock("Chair", "Rent-A-Seat", 50, 300)
    click.echo(f"PASS {'Topped up' if merged else 'Created'} B2B pool: {stock.item_name} ({stock.quantity_available})")


@click.group('events')
def events_group():
    """Event inspection commands."""


@events_group.command('outstanding')
@click.argument('event_id', type=int)
@with_appcontext
def outstanding(event_id):
    """Print the lines of the latest dispatch that are still out."""
    event = event_service.get_event(event_id)
    lines = return_service.outstanding_lines(event_id)

    click.echo(f"\nEvent {event.id}: {event.name} [{event.status}]")
    if event.date_to and utcnow() > event.date_to:
        overdue = utcnow() - event.date_to
        click.echo(f"WARN  Overdue by {overdue - timedelta(microseconds=overdue.microseconds)}")
    if not lines:
        click.echo("Nothing outstanding.")
        return

    click.echo("=" * 70)
    click.echo(f"{'Product':<10} {'Name':<30} {'Sent':>8} {'Back':>8} {'Out':>8}")
    click.echo("-" * 70)
    for b in lines:
        click.echo(
            f"{b.product_id:<10} {b.dispatch_line.name[:30]:<30} {b.expected:>8} "
            f"{b.already_returned:>8} {b.outstanding:>8}"
        )
    click.echo("=" * 70 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(events_group)
