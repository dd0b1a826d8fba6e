# Overview: Flask CLI command groups for bootstrap, catalog seeding and periodic maintenance.

# backend/csms/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed
#   Insert the sample construction-materials catalog (skips existing SKUs).
#
# Inventory:
# - python -m flask inventory low-stock
#   Print active products at or below their reorder level.
#
# Invoices (schedule daily):
# - python -m flask invoices mark-overdue
#   Persist Overdue on open invoices whose due date has passed.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import CSMSError
from .extensions import GATEWAY_EXTENSION_KEY, db
from .models import Product
from .services import build_services


SAMPLE_CATALOG = [
    # (sku, name, category, unit, unit_price_cents, stock, reorder_level)
    ("CEM-PT-001", "Premium Portland Cement", "cement", "bags", 7500, 5000, 1000),
    ("CEM-WHT-001", "White Portland Cement", "cement", "bags", 9500, 3000, 500),
    ("CEM-QS-001", "Quick Setting Cement", "cement", "bags", 8500, 2000, 400),
    ("CEM-BLK-001", "Bulk Portland Cement", "cement", "tons", 65000, 500, 100),
    ("AGG-GR-20", "Crushed Granite 20mm", "aggregate", "tons", 4500, 8000, 2000),
    ("AGG-GR-14", "Crushed Granite 14mm", "aggregate", "tons", 4800, 6000, 1500),
    ("AGG-FN-10", "Fine Aggregate 10mm", "aggregate", "tons", 5200, 5000, 1000),
    ("SND-CR-001", "Coarse Sand", "sand", "tons", 3500, 10000, 2500),
    ("SND-PL-001", "Fine Plastering Sand", "sand", "tons", 4000, 7000, 1500),
]


def _services():
    return build_services(db.session, current_app.extensions[GATEWAY_EXTENSION_KEY], current_app.config)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create missing tables. Safe to run repeatedly."""
    db.create_all()
    click.echo("PASS Schema ready.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask catalog seed' for sample data.")


@click.group('catalog')
def catalog_group():
    """Product catalog commands."""


@catalog_group.command('seed')
@with_appcontext
def seed_catalog():
    """Insert the sample catalog; initial stock is logged as INIT-STOCK."""
    products = _services().products
    created = 0
    for sku, name, category, unit, price, stock, reorder in SAMPLE_CATALOG:
        if db.session.query(Product.id).filter_by(sku=sku).first():
            click.echo(f"SKIP  {sku} already exists")
            continue
        products.create_product(
            {
                "sku": sku,
                "name": name,
                "category": category,
                "unit": unit,
                "unit_price_cents": price,
                "stock_quantity": stock,
                "reorder_level": reorder,
            },
            performed_by="cli:catalog-seed",
        )
        created += 1
        click.echo(f"ADD   {sku} {name}")
    click.echo(f"PASS {created} product(s) created.")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@with_appcontext
def low_stock_cli():
    """List active products at or below their reorder level."""
    products = _services().products.low_stock_report()
    if not products:
        click.echo("No products below reorder level.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'SKU':<14} {'Name':<32} {'Stock':>10} {'Reorder':>10}")
    click.echo("=" * 80)
    for p in products:
        click.echo(f"{p.id:<5} {p.sku:<14} {p.name[:32]:<32} {p.stock_quantity:>10} {p.reorder_level:>10}")
    click.echo("=" * 80 + "\n")


@click.group('invoices')
def invoices_group():
    """Invoice maintenance commands."""


@invoices_group.command('mark-overdue')
@with_appcontext
def mark_overdue_cli():
    """Persist Overdue on open invoices past their due date."""
    try:
        invoices = _services().invoices.mark_overdue()
    except CSMSError as e:
        raise click.ClickException(e.message)
    for invoice in invoices:
        click.echo(f"OVERDUE {invoice.invoice_number} balance={invoice.balance_cents}")
    click.echo(f"PASS {len(invoices)} invoice(s) marked overdue.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(invoices_group)
