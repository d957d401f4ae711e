# Overview: Flask CLI command groups for store inspection and maintenance.

# backend/pipeflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Store:
# - python -m flask store status
#   Active backend, schema version, pending migrations, row counts.
# - python -m flask store migrate
#   Apply pending migrations (also done automatically at startup).
# - python -m flask store import-fallback [--path pipeflow-store.json]
#   Copy records written during a fallback run into the relational store.
#
# Customers:
# - python -m flask customers recompute [--id CUSTOMER_ID]
#   Rebuild purchase aggregates from the sales ledger.
#
# Inventory / sales:
# - python -m flask inventory low-stock
# - python -m flask sales report --start 2026-01-01 --end 2026-01-31 [--group-by day|week|month]

import click
from flask.cli import with_appcontext

from .errors import StoreError
from .extensions import store_engine


def _money(cents: int) -> str:
    return f"{cents / 100:,.2f}"


@click.group('store')
def store_group():
    """Storage backend and schema commands."""


@store_group.command('status')
@with_appcontext
def store_status():
    """Show the active backend and schema state."""
    status = store_engine.engine.get_database_status()
    schema = status["schema"]

    if status["using_fallback"]:
        click.echo(f"WARN  Backend: {status['backend']} at {status['location']} ({status['fallback_reason']})")
    else:
        click.echo(f"PASS Backend: {status['backend']} at {status['location']}")

    if schema["up_to_date"]:
        click.echo(f"PASS Schema version {schema['current_version']} (latest)")
    else:
        pending = ", ".join(f"{p['target_version']}:{p['name']}" for p in schema["pending"])
        click.echo(f"WARN  Schema version {schema['current_version']} of {schema['latest_version']}; pending {pending}")

    for table, count in status["counts"].items():
        click.echo(f"  {table}: {count}")


@store_group.command('migrate')
@with_appcontext
def store_migrate():
    """Apply pending schema migrations."""
    try:
        applied = store_engine.engine.migrate()
    except StoreError as e:
        click.echo(f"FAIL {e}")
        return

    if applied:
        click.echo(f"PASS Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        click.echo("PASS Schema already up to date")


@store_group.command('import-fallback')
@click.option('--path', 'path', default=None, help='Fallback document file (defaults to FALLBACK_STORE_PATH)')
@with_appcontext
def store_import_fallback(path):
    """Import records from a fallback document file."""
    try:
        summary = store_engine.engine.import_fallback(path)
    except StoreError as e:
        click.echo(f"FAIL {e}")
        return

    for table, count in summary["imported"].items():
        click.echo(f"PASS {table}: {count} imported, {summary['skipped'][table]} already present")
    for entry in summary["renumbered_invoices"]:
        click.echo(f"WARN  Sale {entry['id']} renumbered {entry['from']} -> {entry['to']}")
    if summary["settings_applied"]:
        click.echo(f"PASS Settings applied: {', '.join(summary['settings_applied'])}")
    click.echo(f"PASS Customers recomputed: {summary['customers_recomputed']}")
    click.echo(f"PASS Archived to {summary['archived_to']}")


@click.group('customers')
def customers_group():
    """Customer maintenance commands."""


@customers_group.command('recompute')
@click.option('--id', 'customer_id', default=None, help='Only this customer')
@with_appcontext
def customers_recompute(customer_id):
    """Rebuild purchase aggregates from the sales ledger."""
    try:
        result = store_engine.engine.recompute_customer_stats(customer_id)
    except StoreError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Repaired {result['repaired']} customer(s)")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@with_appcontext
def inventory_low_stock():
    """List items at or below their alert threshold."""
    items = store_engine.engine.get_low_stock_items()
    if not items:
        click.echo("PASS No items below threshold")
        return
    for item in items:
        click.echo(f"WARN  {item['id']}  {item['description']}  qty={item['quantity']} (alert at {item['alert_threshold']})")


@click.group('sales')
def sales_group():
    """Sales reporting commands."""


@sales_group.command('report')
@click.option('--start', required=True, help='ISO date/datetime (inclusive)')
@click.option('--end', required=True, help='ISO date/datetime (a bare date includes the whole day)')
@click.option('--group-by', type=click.Choice(['day', 'week', 'month']), default='day')
@with_appcontext
def sales_report_cmd(start, end, group_by):
    """Summarize sales between two dates."""
    try:
        report = store_engine.engine.get_sales_report(start, end, group_by=group_by)
    except StoreError as e:
        click.echo(f"FAIL {e}")
        return

    summary = report["summary"]
    click.echo(f"Sales: {summary['sales_count']}  Revenue: {_money(summary['revenue_cents'])}  "
               f"Est. profit: {_money(summary['estimated_profit_cents'])}")
    for row in report["data"]:
        click.echo(f"  {row['period']}  {row['sales_count']:>4}  {_money(row['revenue_cents']):>14}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(store_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sales_group)
