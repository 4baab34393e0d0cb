# Overview: Flask CLI command groups for schema setup, background jobs, and inspection.

# backend/settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Schema:
# - python -m flask db upgrade
#   Apply migrations (Flask-Migrate).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Background jobs (run under a process supervisor, one instance each):
# - python -m flask sweeper run-once
#   Expire lapsed reservations and cancel abandoned pending orders, once.
# - python -m flask sweeper run [--interval 120]
#   Same, forever, every SWEEPER_INTERVAL_SECONDS.
# - python -m flask reconcile run-once
#   Pull provider status for stalled intents, retry refunds, replay failed events.
# - python -m flask reconcile run [--interval 60]
#
# Webhooks:
# - python -m flask webhooks failed
#   List stored provider events that failed to apply.
# - python -m flask webhooks replay <provider_event_id>
#   Re-run one stored event through the idempotent apply path.
#
# Stock:
# - python -m flask stock create --listing-id lst_1 --seller-id 4 --quantity 10 [--variant XL]
# - python -m flask stock restock <stock_unit_id> <quantity>
# - python -m flask stock show <stock_unit_id>
#
# Events:
# - python -m flask events tail [--after-id 0] [--type order.status_changed] [--follow]
#   Print the domain event feed.

import json
import time

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import (
    event_service,
    inventory_service,
    maintenance_service,
    payment_service,
    reconciliation_service,
)
from .services.inventory_service import InventoryError
from .services.payment_service import PaymentError
from .services.subscriptions import EventSubscriptionManager


@click.group('system')
def system_group():
    """Schema repair commands."""


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


# =============================================================================
# SWEEPER
# =============================================================================

@click.group('sweeper')
def sweeper_group():
    """Reservation expiry sweeper."""


def _print_sweep(stats: dict) -> None:
    click.echo(
        f"{stats['ran_at']}  expired={stats['reservations_expired']} "
        f"units_returned={stats['units_returned']} orders_canceled={stats['orders_canceled']} "
        f"skipped={stats['reservations_skipped'] + stats['orders_skipped']}"
    )


@sweeper_group.command('run-once')
@with_appcontext
def sweeper_run_once():
    _print_sweep(maintenance_service.run_sweep())


@sweeper_group.command('run')
@click.option('--interval', type=int, default=None, help='Seconds between sweeps (default SWEEPER_INTERVAL_SECONDS)')
@with_appcontext
def sweeper_run(interval):
    """Sweep forever. Stop with Ctrl+C."""
    interval = interval or current_app.config["SWEEPER_INTERVAL_SECONDS"]
    click.echo(f"Sweeping every {interval}s")
    while True:
        try:
            _print_sweep(maintenance_service.run_sweep())
        except Exception:
            current_app.logger.exception("Sweep failed")
        finally:
            db.session.remove()
        time.sleep(interval)


# =============================================================================
# RECONCILIATION
# =============================================================================

@click.group('reconcile')
def reconcile_group():
    """Provider reconciliation."""


@reconcile_group.command('run-once')
@with_appcontext
def reconcile_run_once():
    click.echo(json.dumps(reconciliation_service.run_reconciliation(), indent=2))


@reconcile_group.command('run')
@click.option('--interval', type=int, default=None, help='Seconds between passes (default RECONCILE_INTERVAL_SECONDS)')
@with_appcontext
def reconcile_run(interval):
    interval = interval or current_app.config["RECONCILE_INTERVAL_SECONDS"]
    click.echo(f"Reconciling every {interval}s")
    while True:
        try:
            click.echo(json.dumps(reconciliation_service.run_reconciliation()))
        except Exception:
            current_app.logger.exception("Reconciliation pass failed")
        finally:
            db.session.remove()
        time.sleep(interval)


# =============================================================================
# WEBHOOKS
# =============================================================================

@click.group('webhooks')
def webhooks_group():
    """Stored provider events."""


@webhooks_group.command('failed')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def webhooks_failed(limit):
    events = payment_service.list_failed_events(limit=limit)
    if not events:
        click.echo("No failed provider events.")
        return
    click.echo(f"{'ID':<8} {'EVENT ID':<40} {'TYPE':<12} {'SOURCE':<10} {'TRIES':<6} ERROR")
    for ev in events:
        click.echo(
            f"{ev.id:<8} {ev.provider_event_id[:40]:<40} {ev.event_type[:12]:<12} "
            f"{ev.source:<10} {ev.attempts:<6} {(ev.error or '-')[:60]}"
        )


@webhooks_group.command('replay')
@click.argument('provider_event_id')
@with_appcontext
def webhooks_replay(provider_event_id):
    try:
        record = payment_service.replay_event(provider_event_id)
    except PaymentError as e:
        raise click.ClickException(str(e))
    click.echo(f"Event {record.provider_event_id}: {record.status}")


# =============================================================================
# STOCK
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock unit administration."""


@stock_group.command('create')
@click.option('--listing-id', required=True)
@click.option('--seller-id', type=int, required=True)
@click.option('--quantity', type=int, default=0, show_default=True)
@click.option('--variant', default=None)
@click.option('--listing-status', default='approved', show_default=True)
@with_appcontext
def stock_create(listing_id, seller_id, quantity, variant, listing_status):
    try:
        unit = inventory_service.create_stock_unit(
            listing_id=listing_id,
            seller_id=seller_id,
            quantity_on_hand=quantity,
            variant=variant,
            listing_status=listing_status,
        )
    except InventoryError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created stock unit {unit.id} ({unit.listing_id} {unit.variant or ''}) on_hand={unit.quantity_on_hand}")


@stock_group.command('restock')
@click.argument('stock_unit_id', type=int)
@click.argument('quantity', type=int)
@with_appcontext
def stock_restock(stock_unit_id, quantity):
    try:
        inventory_service.restock(stock_unit_id, quantity)
    except InventoryError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(inventory_service.get_inventory(stock_unit_id)))


@stock_group.command('show')
@click.argument('stock_unit_id', type=int)
@with_appcontext
def stock_show(stock_unit_id):
    try:
        click.echo(json.dumps(inventory_service.get_inventory(stock_unit_id), indent=2))
    except InventoryError as e:
        raise click.ClickException(str(e))


# =============================================================================
# EVENTS
# =============================================================================

@click.group('events')
def events_group():
    """Domain event feed."""


def _echo_event(ev: dict) -> None:
    click.echo(f"{ev['id']:<8} {(ev['occurred_at'] or '')[:19]:<20} {ev['event_type']:<28} "
               f"{ev['entity_type']}:{ev['entity_id']} {json.dumps(ev['payload'])}")


@events_group.command('tail')
@click.option('--after-id', type=int, default=0, show_default=True)
@click.option('--limit', type=int, default=100, show_default=True)
@click.option('--type', 'event_types', multiple=True, help='Only this event type (repeatable)')
@click.option('--follow', is_flag=True, help='Keep polling for new events')
@click.option('--interval', type=float, default=2.0, show_default=True)
@with_appcontext
def events_tail(after_id, limit, event_types, follow, interval):
    if not follow:
        for ev in event_service.list_events(after_id=after_id, limit=limit, event_types=list(event_types)):
            _echo_event(ev.to_dict())
        return

    manager = EventSubscriptionManager(current_app._get_current_object(), poll_interval=interval, batch_size=limit)
    manager.subscribe(_echo_event, after_id=after_id, event_types=event_types or None)
    click.echo(f"Following events after id {after_id} (Ctrl+C to stop)", err=True)
    try:
        manager.run()
    except KeyboardInterrupt:
        manager.stop()


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sweeper_group)
    app.cli.add_command(reconcile_group)
    app.cli.add_command(webhooks_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(events_group)
