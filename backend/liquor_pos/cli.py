# Overview: Flask CLI command groups for the stock jobs and user bootstrap.

# backend/liquor_pos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Scheduled stock jobs (cron, store time):
# - python -m flask stock daily [--date 2025-09-19]       (01:00)
#   Snapshots, opening carry-forward, live stock sync, integrity check, report.
# - python -m flask stock continuity [--start ... --end ...]  (02:00)
#   Continuity report over the trailing CONTINUITY_WINDOW_DAYS.
# - python -m flask stock low-stock                        (09:00)
#   List products at or below their minimum level.
# - python -m flask stock all
#   Run the three jobs above once, in order.
# - python -m flask stock validate [--date 2025-09-19]
#   Read-only integrity check of one day's ledger.
#
# Users and API tokens:
# - python -m flask users create --username alice --email alice@store.local --role manager
# - python -m flask users list
# - python -m flask users issue-token alice [--ttl-hours 12]
#   Prints a bearer token once; only its hash is stored.

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import ROLES
from .services import automation_service, daily_stock_service, session_service


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group("stock")
def stock_group():
    """Daily ledger jobs."""


@stock_group.command("daily")
@click.option("--date", "day", default=None, help="Business day (YYYY-MM-DD); defaults to today.")
@with_appcontext
def daily_command(day):
    """Run the daily stock process."""
    result = automation_service.daily_stock_process(day)
    snapshots = result["snapshots"] or {}
    sync = result["sync"] or {}
    validation = result["validation"] or {}
    click.echo(f"Daily stock process for {result['date']}")
    click.echo(f"  snapshots created: {snapshots.get('snapshots_created', 0)}, "
               f"existing: {snapshots.get('snapshots_existing', 0)}")
    click.echo(f"  opening stock repairs: {(result['carry_forward'] or {}).get('updates_made', 0)}")
    click.echo(f"  live stock syncs: {sync.get('syncs_made', 0)}")
    click.echo(f"  invalid records: {validation.get('summary', {}).get('invalid_records', 0)}")
    for error in result["errors"]:
        click.echo(f"  step {error['step']} failed: {error['error']}", err=True)
    if not result["success"]:
        raise click.exceptions.Exit(1)


@stock_group.command("continuity")
@click.option("--start", default=None, help="First day (YYYY-MM-DD).")
@click.option("--end", default=None, help="Last day (YYYY-MM-DD); defaults to today.")
@with_appcontext
def continuity_command(start, end):
    """Report opening/closing breaks between consecutive days."""
    result = automation_service.stock_continuity_check(start, end)
    if not result["success"]:
        raise click.ClickException(result["error"])
    click.echo(f"Continuity {result['start_date']}..{result['end_date']}: "
               f"{result['continuity_issues']} issues across {result['total_products']} products")
    for issue in result["issues"]:
        flag = " (adjusted)" if issue["explained"] else ""
        click.echo(f"  {issue['product_name']} {issue['date']}: expected {issue['expected_opening']}, "
                   f"got {issue['actual_opening']}{flag}")


@stock_group.command("low-stock")
@with_appcontext
def low_stock_command():
    """List products at or below their minimum level."""
    result = automation_service.low_stock_alert()
    click.echo(f"{result['low_stock_count']} products at or below minimum level")
    for product in result["products"]:
        click.echo(f"  {product['name']}: {product['current_stock']} (min {product['min_stock_level']})")


@stock_group.command("all")
@click.pass_context
def all_command(ctx):
    """Run daily, continuity and low-stock jobs in order."""
    ctx.invoke(daily_command)
    ctx.invoke(continuity_command)
    ctx.invoke(low_stock_command)


@stock_group.command("validate")
@click.option("--date", "day", default=None, help="Business day (YYYY-MM-DD); defaults to today.")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON.")
@with_appcontext
def validate_command(day, as_json):
    """Check one day's ledger entries against the closing/value formulas."""
    result = daily_stock_service.validate_integrity(day)
    if as_json:
        _echo_json(result)
        return
    summary = result["summary"]
    click.echo(f"{result['date']}: {summary['valid_records']} valid, {summary['invalid_records']} invalid")
    for item in result["issues"]:
        for message in item["issues"]:
            click.echo(f"  {item['product_name']}: {message}")


@click.group("users")
def users_group():
    """User and API token commands."""


@users_group.command("create")
@click.option("--username", prompt=True)
@click.option("--email", prompt=True)
@click.option("--role", type=click.Choice(ROLES), default="biller", show_default=True)
@with_appcontext
def create_user_command(username, email, role):
    """Create a user."""
    if db.session.query(User).filter_by(username=username).first():
        raise click.ClickException(f"User {username} already exists")
    user = User(username=username, email=email, role=role)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("Created user %s with role %s", username, role)
    click.echo(f"Created user {user.id}: {username} ({role})")


@users_group.command("list")
@with_appcontext
def list_users_command():
    """List users with roles and status."""
    for user in db.session.query(User).order_by(User.id).all():
        click.echo(f"{user.id}\t{user.username}\t{user.role}\t{user.status}")


@users_group.command("issue-token")
@click.argument("username")
@click.option("--ttl-hours", type=int, default=None, help="Token lifetime; defaults to SESSION_TTL_HOURS.")
@with_appcontext
def issue_token_command(username, ttl_hours):
    """Issue an API bearer token for USERNAME."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise click.ClickException(f"User {username} not found")
    try:
        session, token = session_service.create_session(user.id, ttl_hours=ttl_hours)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(token)
    click.echo(f"Expires at {session.expires_at.isoformat()}", err=True)


def register_commands(app):
    app.cli.add_command(stock_group)
    app.cli.add_command(users_group)
