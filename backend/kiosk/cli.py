# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/kiosk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev only; use `flask db upgrade` for real deployments).
#
# Catalog (minimal, for seeding a kiosk):
# - python -m flask catalog add-product --sku COLA-330 --name "Cola 0.33l" --price-cents 250 [--threshold 5] [--initial-stock 24]
# - python -m flask catalog list
#
# Inventory:
# - python -m flask inventory verify-snapshots [--fix]
#   Compare cached balances against SUM(delta) over the ledger; --fix rebuilds mismatches.
# - python -m flask inventory discrepancies
#
# Transactions:
# - python -m flask transactions sweep
#   Run the timeout sweep once (the background worker normally does this).
#
# Notifications:
# - python -m flask notifications process
#   Deliver due notification attempts and check escalation once.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product
from .models.inventory import REASON_MANUAL_RESTOCK
from .validation import ValidationError, coerce_int, enforce_rules_product
from .services import inventory_service, notification_service, transaction_service
from .services import ledger_store


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for the current models."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('catalog')
def catalog_group():
    """Minimal product records the ledger depends on."""


@catalog_group.command('add-product')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=int, required=True)
@click.option('--threshold', type=int, default=None, help='Low-stock threshold (1-99)')
@click.option('--initial-stock', type=int, default=0, help='Opening balance, recorded as a manual restock')
@with_appcontext
def add_product(sku, name, price_cents, threshold, initial_stock):
    from flask import current_app

    threshold = threshold if threshold is not None else current_app.config["DEFAULT_LOW_STOCK_THRESHOLD"]
    try:
        enforce_rules_product({"price_cents": price_cents, "low_stock_threshold": threshold})
        initial_stock = coerce_int(initial_stock, field="initial_stock", minimum=0)
    except ValidationError as e:
        raise click.ClickException(str(e))

    if db.session.query(Product).filter_by(sku=sku).first():
        raise click.ClickException(f"Product with SKU {sku} already exists")

    product = Product(sku=sku, name=name, price_cents=price_cents, low_stock_threshold=threshold, is_active=True)
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.id}: {product.name} ({product.sku})")

    if initial_stock:
        inventory_service.record_manual_stock_update(
            product.id, initial_stock, REASON_MANUAL_RESTOCK, actor_id="cli", note="Opening balance"
        )
        click.echo(f"PASS Recorded opening balance of {initial_stock}")


@catalog_group.command('list')
@with_appcontext
def list_products():
    items, _ = inventory_service.list_snapshots(include_inactive=True)
    if not items:
        click.echo("No products")
        return
    for item in items:
        flag = " LOW" if item["low_stock"] else ""
        flag += " DISCREPANCY" if item["discrepancy"] else ""
        click.echo(f"{item['product_id']:>5}  {item['sku']:<16} {item['name']:<32} {item['current_balance']:>6}{flag}")


@click.group('inventory')
def inventory_group():
    """Ledger inspection and repair."""


@inventory_group.command('verify-snapshots')
@click.option('--fix', is_flag=True, help='Rebuild mismatching snapshots from the ledger')
@with_appcontext
def verify_snapshots(fix):
    mismatches = ledger_store.verify_snapshots()
    if not mismatches:
        click.echo("PASS All snapshots match the ledger")
        return

    for row in mismatches:
        click.echo(
            f"FAIL product {row['product_id']}: snapshot={row['snapshot_balance']} ledger={row['ledger_balance']}"
        )
    if not fix:
        raise click.ClickException(f"{len(mismatches)} snapshot(s) disagree with the ledger (rerun with --fix)")

    fixed = inventory_service.rebuild_snapshots([row["product_id"] for row in mismatches])
    click.echo(f"PASS Rebuilt {len(fixed)} snapshot(s)")


@inventory_group.command('discrepancies')
@with_appcontext
def discrepancies():
    items = inventory_service.list_discrepancies()
    if not items:
        click.echo("No discrepancies")
        return
    for item in items:
        click.echo(f"{item['product_id']:>5}  {item['name']:<32} {item['current_balance']:>6}")


@click.group('transactions')
def transactions_group():
    """Transaction maintenance."""


@transactions_group.command('sweep')
@with_appcontext
def sweep():
    result = transaction_service.sweep_expired_transactions()
    click.echo(f"PASS {len(result['timed_out'])} timed out, {len(result['uncertain'])} marked payment uncertain")


@click.group('notifications')
def notifications_group():
    """Low-stock notification maintenance."""


@notifications_group.command('process')
@click.option('--limit', type=int, default=50)
@with_appcontext
def process(limit):
    summary = notification_service.process_due_notifications(limit=limit)
    click.echo(
        f"PASS processed={summary['processed']} sent={summary['sent']} "
        f"retrying={summary['retrying']} failed={summary['failed']}"
    )
    alert = notification_service.check_escalation()
    if alert is not None:
        click.echo(f"WARN Escalation raised: {alert.message}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(transactions_group)
    app.cli.add_command(notifications_group)
