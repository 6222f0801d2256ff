# Overview: Flask CLI command groups for schema setup and stock inspection.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock inspection:
# - python -m flask stock check-ledger [--tenant-id 1]
#   Compare every stock level with its ledger sum; exits 1 on mismatch.
# - python -m flask stock levels --tenant-id 1 [--location store:2] [--low]
#   List stock levels (optionally only those at or below their threshold).
# - python -m flask stock batches --tenant-id 1 --product-id 7 --location store:2
#   Show batches with expiry and near-expiry flags.
#
# Transfers:
# - python -m flask transfers list --tenant-id 1 [--status PENDING] [--page 1]
#   List transfers where the tenant is either party.

import click
from flask.cli import with_appcontext

from .domain import StockKey, TRANSFER_STATUS_PENDING, TRANSFER_TERMINAL_STATUSES
from .engine import get_engine
from .extensions import db
from .locations import parse_location
from .time_utils import to_iso_date


class LocationParam(click.ParamType):
    name = "location"

    def convert(self, value, param, ctx):
        try:
            return parse_location(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


LOCATION = LocationParam()


@click.group('system')
def system_group():
    """Schema setup commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created.")


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

    click.echo("PASS Database reset complete.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('check-ledger')
@click.option('--tenant-id', type=int, help='Limit the check to one tenant')
@with_appcontext
def check_ledger(tenant_id):
    """
    Verify StockLevel.quantity == SUM(movements) for every key.

    Example:
        flask stock check-ledger
        flask stock check-ledger --tenant-id 1
    """
    mismatches = get_engine().ledger.verify_consistency(tenant_id)
    if not mismatches:
        click.echo("PASS Ledger and stock levels agree.")
        return

    click.echo(f"FAIL {len(mismatches)} mismatched stock level(s):")
    for m in mismatches:
        click.echo(
            f"  {m.key}: ledger={m.ledger_quantity} level={m.level_quantity} "
            f"difference={m.difference:+d}"
        )
    raise SystemExit(1)


@stock_group.command('levels')
@click.option('--tenant-id', type=int, required=True)
@click.option('--location', type=LOCATION, help='store:<id> or warehouse:<id>')
@click.option('--product-id', type=int)
@click.option('--low', 'low_only', is_flag=True, help='Only levels at or below their threshold')
@with_appcontext
def list_levels(tenant_id, location, product_id, low_only):
    """List stock levels for a tenant."""
    stock = get_engine().stock
    if low_only:
        levels = stock.low_stock_levels(tenant_id, location=location)
    else:
        levels = stock.list_stock_levels(tenant_id, location=location, product_id=product_id)

    if not levels:
        click.echo("No stock levels found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Location':<16} {'Product':<10} {'Variant':<10} {'Qty':>8} {'Min':>6} {'Reorder':>8} {'Low'}")
    click.echo("="*80)
    for r in levels:
        click.echo(
            f"{str(r.key.location):<16} {r.key.product_id:<10} {str(r.key.variant_id or '-'):<10} "
            f"{r.quantity:>8} {str(r.min_stock_level if r.min_stock_level is not None else '-'):>6} "
            f"{str(r.reorder_point if r.reorder_point is not None else '-'):>8} {'Yes' if r.is_low else 'No'}"
        )
    click.echo("="*80 + "\n")


@stock_group.command('batches')
@click.option('--tenant-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--variant-id', type=click.IntRange(min=1))
@click.option('--location', type=LOCATION, required=True, help='store:<id> or warehouse:<id>')
@with_appcontext
def list_batches(tenant_id, product_id, variant_id, location):
    """Show batches at one stock key in allocation order."""
    key = StockKey(tenant_id, product_id, location, variant_id)
    report = get_engine().allocator.list_batches(key)
    if not report:
        click.echo("No batches with remaining stock.")
        return

    for b in report:
        flags = []
        if b.expired:
            flags.append("EXPIRED")
        if b.near_expiry:
            flags.append("NEAR-EXPIRY")
        click.echo(
            f"{b.batch_number or '(unbatched)':<20} expires={to_iso_date(b.expiry_date) or '-':<12} "
            f"remaining={b.remaining:<8} {' '.join(flags)}"
        )


@click.group('transfers')
def transfers_group():
    """Stock transfer inspection commands."""


@transfers_group.command('list')
@click.option('--tenant-id', type=int, required=True)
@click.option('--status', type=click.Choice(sorted({TRANSFER_STATUS_PENDING, *TRANSFER_TERMINAL_STATUSES})))
@click.option('--page', type=int, default=1, show_default=True)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def list_transfers_cli(tenant_id, status, page, limit):
    """List transfers where the tenant is the source or the destination."""
    result = get_engine().transfers.list(tenant_id, status=status, page=page, limit=limit)
    if not result.items:
        click.echo("No transfers found.")
        return

    for t in result.items:
        click.echo(
            f"#{t.id:<6} {t.status:<10} {t.transfer_type:<13} product={t.product_id:<8} "
            f"qty={t.quantity:<6} {t.source} -> {t.destination}"
        )
    click.echo(f"Page {result.page}/{result.total_pages} ({result.total} total)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(transfers_group)
