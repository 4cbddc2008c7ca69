# Overview: Flask CLI command groups for backorder inspection, transfer updates and purchase money.

# backend/fulfillment/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to fulfillment (PowerShell: $env:FLASK_APP="fulfillment").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   Create all tables for the configured database.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Backorders:
# - python -m flask backorders list [--group-by-order] [--for-purchase-only] [--variant-id 10] [--json]
#   Pending backorders with purchase/transfer context and integrated status.
# - python -m flask backorders stats
#   Totals over lines still awaiting a purchase.
# - python -m flask backorders by-variant
#   Pending quantities per variant with estimated purchase cost.
# - python -m flask backorders update-transfer 12 in_transit --note "Left store A"
#   Advance the transfer covering order line 12 and append the note.
# - python -m flask backorders allocate 10 6 [--dry-run] [--store-id 1] [--max-waiting-days 30]
#   Hand 6 units of variant 10 to waiting backorders, oldest first.
# - python -m flask backorders allocation-report 10
#   Waiting backorders of variant 10 in allocation order, with waiting-time buckets.
#
# Purchases:
# - python -m flask purchases shipping-cost 5 1500.00
#   Set shipping (major units) and spread it over the purchase lines.
# - python -m flask purchases receive 5 31=4 32=10 [--allocate]
#   Record a (partial) receipt: purchase_line_id=quantity pairs; --allocate also
#   hands the received units to waiting backorders.
# - python -m flask purchases from-backorders 12 13 14 [--store-id 1] [--shipping 150.00]
#   Create pending purchases for backordered order lines.

import json
from decimal import InvalidOperation

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import backorder_allocation_service, backorder_service, purchase_service
from .services.money_service import money_engine_for_app, to_minor_units
from .services.status_service import TRANSFER_STATUSES


@click.group('system')
def system_group():
    """Database bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created")


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
    click.echo("BUILD Recreating tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('backorders')
def backorders_group():
    """Backorder inspection and transfer status commands."""


@backorders_group.command('list')
@click.option('--group-by-order', is_flag=True, help='Group lines by their order')
@click.option('--for-purchase-only', is_flag=True, help='Skip lines already covered by a transfer')
@click.option('--variant-id', type=int, help='Filter by product variant ID')
@click.option('--date-from', help='Earliest line date (YYYY-MM-DD)')
@click.option('--date-to', help='Latest line date (YYYY-MM-DD)')
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@with_appcontext
def list_backorders_cli(group_by_order, for_purchase_only, variant_id, date_from, date_to, as_json):
    """
    List pending backorders with their integrated status.

    Example:
        flask backorders list
        flask backorders list --group-by-order
    """
    data = backorder_service.list_pending_backorders_with_context(
        group_by_order=group_by_order,
        for_purchase_only=for_purchase_only,
        product_variant_id=variant_id,
        date_from=date_from,
        date_to=date_to,
    )

    if as_json:
        click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        return

    if not data:
        click.echo("No pending backorders.")
        return

    if group_by_order:
        for group in data:
            click.echo("\n" + "=" * 90)
            click.echo(
                f"{group['order_number']}  {group['customer_name'] or '-'}  "
                f"items={group['total_items']} qty={group['total_quantity']}  "
                f"[{group['summary_status']}] {group['summary_status_text']}"
            )
            click.echo("-" * 90)
            for item in group["items"]:
                click.echo(
                    f"  {item['id']:<6} {(item['sku'] or '-'):<20} {item['quantity']:>5}  "
                    f"{item['integrated_status']:<32} {item['integrated_status_text']}"
                )
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'ID':<6} {'Order':<20} {'SKU':<20} {'Qty':>5}  {'Status':<32} {'Text'}")
    click.echo("=" * 100)
    for item in data:
        click.echo(
            f"{item['id']:<6} {item['order']['order_number']:<20} {(item['sku'] or '-'):<20} "
            f"{item['quantity']:>5}  {item['integrated_status']:<32} {item['integrated_status_text']}"
        )


@backorders_group.command('stats')
@with_appcontext
def backorder_stats_cli():
    """Show totals over lines still awaiting a purchase."""
    stats = backorder_service.get_pending_backorder_stats()
    for key in ("total_items", "unique_products", "affected_orders", "total_quantity",
                "oldest_backorder_date", "days_pending"):
        click.echo(f"{key:<22} {stats[key] if stats[key] is not None else '-'}")


@backorders_group.command('by-variant')
@with_appcontext
def backorders_by_variant_cli():
    """Pending quantity and estimated cost per product variant."""
    engine = money_engine_for_app(current_app)
    rows = backorder_service.summarize_backorders_by_variant()
    if not rows:
        click.echo("No pending backorders.")
        return

    click.echo(f"{'Variant':<8} {'SKU':<20} {'Qty':>5} {'Orders':>7}  {'Est. cost':>14}")
    for row in rows:
        cost = engine.format_with_decimals(row["estimated_cost_cents"]) or "-"
        click.echo(
            f"{row['product_variant_id'] or '-':<8} {(row['sku'] or '-'):<20} "
            f"{row['total_quantity']:>5} {row['order_count']:>7}  {cost:>14}"
        )


@backorders_group.command('update-transfer')
@click.argument('item_id', type=int)
@click.argument('status', type=click.Choice(TRANSFER_STATUSES))
@click.option('--note', help='Note appended to the transfer')
@with_appcontext
def update_transfer_cli(item_id, status, note):
    """
    Set the status of the transfer covering order line ITEM_ID.

    Example:
        flask backorders update-transfer 12 in_transit --note "Left store A"
    """
    try:
        backorder_service.update_backorder_transfer_status(item_id, status, note)
    except (backorder_service.BackorderNotFoundError, backorder_service.TransferNotFoundError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    db.session.commit()
    click.echo(f"PASS Transfer for order line {item_id} set to {status}")


def _echo_allocation(result):
    for item in result["allocated_items"]:
        click.echo(
            f"  line {item['order_line_id']:<6} {item['order_number']:<20} "
            f"+{item['allocated_quantity']:<4} {item['fulfillment_status']:<20} "
            f"waiting {item['waiting_days']}d"
        )
    summary = result["allocation_summary"]
    click.echo(
        f"  allocated {result['total_allocated']}, remaining {result['remaining_quantity']}, "
        f"{summary['allocated_orders']} of {summary['total_candidates']} lines served, "
        f"{summary['fully_fulfilled_orders']} fully fulfilled"
    )


@backorders_group.command('allocate')
@click.argument('variant_id', type=int)
@click.argument('quantity', type=click.IntRange(min=1))
@click.option('--dry-run', is_flag=True, help='Show the allocation without changing anything')
@click.option('--store-id', type=int, help='Only serve orders of this store')
@click.option('--max-waiting-days', type=click.IntRange(min=0), help='Only serve lines this recent')
@with_appcontext
def allocate_cli(variant_id, quantity, dry_run, store_id, max_waiting_days):
    """
    Hand QUANTITY units of VARIANT_ID to waiting backorders, oldest first.

    Example:
        flask backorders allocate 10 6 --dry-run
    """
    result = backorder_allocation_service.allocate_stock_to_backorders(
        variant_id,
        quantity,
        store_id=store_id,
        max_waiting_days=max_waiting_days,
        dry_run=dry_run,
    )
    if dry_run:
        db.session.rollback()
        click.echo(f"DRY RUN Variant {variant_id}: {quantity} units")
    else:
        db.session.commit()
        click.echo(f"PASS Variant {variant_id}: {quantity} units")
    _echo_allocation(result)


@backorders_group.command('allocation-report')
@click.argument('variant_id', type=int)
@click.option('--store-id', type=int, help='Only orders of this store')
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@with_appcontext
def allocation_report_cli(variant_id, store_id, as_json):
    """Waiting backorders of VARIANT_ID in the order an allocation serves them."""
    report = backorder_allocation_service.get_allocation_report(variant_id, store_id=store_id)
    if as_json:
        click.echo(json.dumps(report, indent=2, ensure_ascii=False, default=str))
        return

    click.echo(
        f"Variant {variant_id}: {report['total_pending_orders']} lines, "
        f"{report['total_pending_quantity']} units waiting"
    )
    for row in report["top_priority_orders"]:
        click.echo(
            f"  line {row['order_line_id']:<6} {row['order_number']:<20} "
            f"pending {row['pending_quantity']:<4} score {row['priority_score']:<5} "
            f"waiting {row['waiting_days']}d"
        )
    for bucket, stats in report["waiting_time_analysis"].items():
        click.echo(f"  {bucket:<14} {stats['count']:>4} lines {stats['total_quantity']:>6} units")


@click.group('purchases')
def purchases_group():
    """Supplier purchase money and receipt commands."""


@purchases_group.command('shipping-cost')
@click.argument('purchase_id', type=int)
@click.argument('amount')
@with_appcontext
def shipping_cost_cli(purchase_id, amount):
    """Set the shipping cost (major units, e.g. 1500.00) of PURCHASE_ID."""
    try:
        cents = to_minor_units(amount)
    except InvalidOperation:
        raise click.BadParameter(f"{amount!r} is not a valid amount", param_hint="AMOUNT")

    try:
        purchase = purchase_service.update_purchase_shipping_cost(purchase_id, cents)
    except (purchase_service.PurchaseNotFoundError, purchase_service.PurchaseValidationError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    db.session.commit()

    engine = money_engine_for_app(current_app)
    click.echo(f"PASS Purchase {purchase.order_number} shipping {engine.format_with_decimals(cents)}")
    for line in purchase.lines:
        click.echo(f"  line {line.id:<6} qty={line.quantity:<5} shipping={engine.format_with_decimals(line.allocated_shipping_cost_cents)}")
    click.echo(f"  total {engine.format_with_decimals(purchase.total_amount_cents)}")


@purchases_group.command('receive')
@click.argument('purchase_id', type=int)
@click.argument('lines', nargs=-1, required=True)
@click.option('--allocate', is_flag=True, help='Hand received units to waiting backorders')
@with_appcontext
def receive_cli(purchase_id, lines, allocate):
    """Record received quantities as LINE_ID=QTY pairs."""
    received = {}
    for pair in lines:
        line_id, sep, qty = pair.partition("=")
        if not sep or not line_id.strip().isdigit() or not qty.strip().lstrip("-").isdigit():
            raise click.BadParameter(f"{pair!r} is not LINE_ID=QTY", param_hint="LINES")
        if int(line_id) in received:
            raise click.BadParameter(f"line {int(line_id)} is given more than once", param_hint="LINES")
        received[int(line_id)] = int(qty)

    allocations = {}
    try:
        if allocate:
            purchase, allocations = backorder_allocation_service.receive_and_allocate(purchase_id, received)
        else:
            purchase = purchase_service.record_purchase_receipt(purchase_id, received)
    except (purchase_service.PurchaseNotFoundError, purchase_service.PurchaseValidationError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    db.session.commit()
    click.echo(f"PASS Purchase {purchase.order_number} is now {purchase.status}")
    for line_id, result in allocations.items():
        click.echo(f"Purchase line {line_id}:")
        _echo_allocation(result)


@purchases_group.command('from-backorders')
@click.argument('line_ids', nargs=-1, required=True, type=int)
@click.option('--store-id', type=int, help='Receive everything at this store')
@click.option('--shipping', 'shipping', help='Shipping cost in major units (single purchase only)')
@with_appcontext
def from_backorders_cli(line_ids, store_id, shipping):
    """
    Create pending purchases for the backordered order lines LINE_IDS.

    Example:
        flask purchases from-backorders 12 13 --store-id 1
    """
    shipping_cents = 0
    if shipping is not None:
        try:
            shipping_cents = to_minor_units(shipping)
        except InvalidOperation:
            raise click.BadParameter(f"{shipping!r} is not a valid amount", param_hint="--shipping")

    try:
        purchases = purchase_service.create_purchase_from_backorders(
            line_ids, store_id=store_id, shipping_cost_cents=shipping_cents,
        )
    except purchase_service.PurchaseValidationError as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    db.session.commit()

    engine = money_engine_for_app(current_app)
    click.echo(f"PASS Created {len(purchases)} purchase(s)")
    for purchase in purchases:
        click.echo(
            f"  {purchase.order_number}  store={purchase.store_id or '-'}  "
            f"lines={len(purchase.lines)}  total={engine.format_with_decimals(purchase.total_amount_cents)}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(backorders_group)
    app.cli.add_command(purchases_group)
