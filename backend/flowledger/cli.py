# Overview: Flask CLI command groups for bootstrap, sync control, notifications and ledger documents.

# backend/flowledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Offline queue:
# - python -m flask sync status
#   Counts by status plus online/syncing flags.
# - python -m flask sync drain [--ignore-backoff]
#   Mark online and deliver every ready item once.
# - python -m flask sync retry-failed
#   Reset failed items to pending with a fresh retry budget.
# - python -m flask sync watch [--interval 30] [--iterations N]
#   Poll loop: drain every interval seconds while items are queued.
#
# Notifications:
# - python -m flask notifications list [--severity critical] [--unread]
# - python -m flask notifications clear-old [--days 30]
#
# Ledger documents:
# - python -m flask ledger audit BAT-000001 [--output audit.json]
# - python -m flask ledger export [--days 30] [--output export.json]
# - python -m flask ledger backup [--output backup.json]
# - python -m flask ledger restore backup.json

import json
import time

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import FlowLedgerError
from .extensions import db
from .runtime import get_notification_bus, get_sync_queue
from .services import backup_service, report_service


def _emit_document(document: dict, output: str | None) -> None:
    text = report_service.render_json(document)
    if output:
        with open(output, "w", encoding="utf-8") as fh:
            fh.write(text)
        click.echo(f"PASS Wrote {output}")
    else:
        click.echo(text)


def _echo_status(status: dict) -> None:
    click.echo(
        f"online={status['is_online']} syncing={status['is_syncing']} total={status['total']} "
        f"pending={status['pending']} syncing_items={status['syncing']} failed={status['failed']}"
    )


# =============================================================================
# system
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the queued operations and notifications.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    get_sync_queue().reload()
    get_notification_bus().reload()
    click.echo("PASS Database reset complete.")


# =============================================================================
# sync
# =============================================================================

@click.group('sync')
def sync_group():
    """Offline operation queue commands."""


@sync_group.command('status')
@with_appcontext
def sync_status():
    _echo_status(get_sync_queue().get_status())


@sync_group.command('drain')
@click.option('--ignore-backoff', is_flag=True, help='Deliver items still inside their retry hold')
@with_appcontext
def sync_drain(ignore_backoff):
    """Go online and drain the queue once."""
    queue = get_sync_queue()
    # Coming online drains on its own
    result = queue.set_online(True)
    if result is None or ignore_backoff:
        result = queue.drain(ignore_backoff=ignore_backoff)
    if result is None:
        click.echo("WARN Drain skipped (already syncing).")
    else:
        click.echo(
            f"PASS attempted={result.attempted} succeeded={result.succeeded} "
            f"retrying={result.retrying} failed={result.failed} remaining={result.remaining}"
        )
        for failure in result.failures:
            click.echo(f"FAIL {failure['operation']} ({failure['id']}): {failure['error']}")
    _echo_status(queue.get_status())


@sync_group.command('retry-failed')
@with_appcontext
def sync_retry_failed():
    queue = get_sync_queue()
    reset = queue.retry_failed()
    click.echo(f"PASS Reset {reset} failed item(s) to pending.")
    _echo_status(queue.get_status())


@sync_group.command('watch')
@click.option('--interval', type=float, default=None, help='Seconds between drains (default: SYNC_POLL_INTERVAL_SECONDS)')
@click.option('--iterations', type=int, default=None, help='Stop after N polls (default: run until interrupted)')
@with_appcontext
def sync_watch(interval, iterations):
    """Poll loop that drains while items are queued."""
    queue = get_sync_queue()
    interval = interval if interval is not None else current_app.config["SYNC_POLL_INTERVAL_SECONDS"]
    queue.set_online(True)

    count = 0
    try:
        while iterations is None or count < iterations:
            status = queue.get_status()
            if status["total"] and not status["is_syncing"]:
                result = queue.drain()
                if result is not None and result.attempted:
                    click.echo(
                        f"SYNC succeeded={result.succeeded} retrying={result.retrying} "
                        f"failed={result.failed} remaining={result.remaining}"
                    )
            count += 1
            if iterations is None or count < iterations:
                time.sleep(interval)
    except KeyboardInterrupt:
        click.echo("STOP Watch interrupted.")


# =============================================================================
# notifications
# =============================================================================

@click.group('notifications')
def notifications_group():
    """Notification log commands."""


@notifications_group.command('list')
@click.option('--severity', type=click.Choice(['info', 'success', 'warning', 'critical']), default=None)
@click.option('--unread', is_flag=True, help='Only unread notifications')
@with_appcontext
def list_notifications(severity, unread):
    bus = get_notification_bus()
    items = bus.get_by_severity(severity) if severity else bus.get_all()
    if unread:
        items = [n for n in items if not n["read"]]
    for n in items:
        marker = " " if n["read"] else "*"
        click.echo(f"{marker} {n['timestamp']} [{n['severity']}] {n['type']}: {n['message']}")
    click.echo(f"{len(items)} notification(s), {bus.get_unread_count()} unread")


@notifications_group.command('clear-old')
@click.option('--days', type=int, default=None, help='Age threshold in days (default: NOTIFICATION_CLEAR_DAYS)')
@with_appcontext
def clear_old_notifications(days):
    days = days if days is not None else current_app.config["NOTIFICATION_CLEAR_DAYS"]
    removed = get_notification_bus().clear_old(days)
    click.echo(f"PASS Removed {removed} notification(s) older than {days} days.")


# =============================================================================
# ledger
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Audit, export and backup documents."""


@ledger_group.command('audit')
@click.argument('batch_id')
@click.option('--output', type=click.Path(dir_okay=False), default=None)
@with_appcontext
def ledger_audit(batch_id, output):
    try:
        document = report_service.build_audit_document(batch_id)
    except FlowLedgerError as e:
        raise click.ClickException(str(e))
    _emit_document(document, output)


@ledger_group.command('export')
@click.option('--days', type=int, default=None, help='Window in days (default: ANALYTICS_DEFAULT_DAYS)')
@click.option('--output', type=click.Path(dir_okay=False), default=None)
@with_appcontext
def ledger_export(days, output):
    days = days if days is not None else current_app.config["ANALYTICS_DEFAULT_DAYS"]
    try:
        document = report_service.build_export_document(days=days)
    except FlowLedgerError as e:
        raise click.ClickException(str(e))
    _emit_document(document, output)


@ledger_group.command('backup')
@click.option('--output', type=click.Path(dir_okay=False), default=None)
@with_appcontext
def ledger_backup(output):
    document = backup_service.export_state(bus=get_notification_bus(), queue=get_sync_queue())
    _emit_document(document, output)


@ledger_group.command('restore')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@with_appcontext
def ledger_restore(path):
    with open(path, encoding="utf-8") as fh:
        try:
            document = json.load(fh)
        except ValueError as e:
            raise click.ClickException(f"{path} is not valid JSON: {e}")

    try:
        counts = backup_service.import_state(document, bus=get_notification_bus(), queue=get_sync_queue())
    except FlowLedgerError as e:
        raise click.ClickException(str(e))

    for key, value in counts.items():
        click.echo(f"PASS {key}: {value}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(notifications_group)
    app.cli.add_command(ledger_group)
