# backend/commands.py
import os

import click
from flask.cli import with_appcontext

from backend.extensions import db, get_mpesa
from backend.models.user import User, ROLES, ROLE_ADMIN
from backend.services import notifications, order_status


@click.command("create-admin")
@click.option("--username", default=lambda: os.environ.get("ADMIN_USERNAME", "admin"),
              show_default=True, help="Login name")
@click.option("--email", default=lambda: os.environ.get("ADMIN_EMAIL", "admin@example.com"),
              show_default=True, help="E-mail address")
@click.option("--password", default=lambda: os.environ.get("ADMIN_PASSWORD"),
              help="Password (prompted when omitted)")
@click.option("--role", type=click.Choice(ROLES), default=ROLE_ADMIN, show_default=True)
@click.option("--force", is_flag=True, help="Reset password and role of an existing user")
@with_appcontext
def create_admin(username, email, password, role, force):
    """Create a staff user for the admin order listing."""
    db.create_all()  # empty database

    if not password:
        password = click.prompt("Password", hide_input=True, confirmation_prompt=True)

    u = User.query.filter_by(username=username).first()
    if u and not force:
        click.echo(f"User '{username}' already exists. Use --force to reset the password.")
        return

    if not u:
        u = User(username=username)
        db.session.add(u)
    u.email = (email or "").strip().lower() or None
    u.role = role
    u.is_active_flag = True
    u.set_password(password)

    db.session.commit()
    click.echo(f"User ready: {username} ({role})")


@click.command("dispatch-notifications")
@click.option("--limit", default=100, show_default=True, type=int)
@with_appcontext
def dispatch_notifications(limit):
    """Send queued or previously failed order e-mails."""
    stats = notifications.dispatch_pending(limit=limit)
    click.echo(f"considered={stats['considered']} sent={stats['sent']} failed={stats['failed']}")


@click.command("reconcile-pending")
@click.option("--older-than", "older_than", default=10, show_default=True, type=int,
              help="Only orders pushed at least this many minutes ago")
@click.option("--limit", default=200, show_default=True, type=int)
@with_appcontext
def reconcile_pending(older_than, limit):
    """Ask M-Pesa about pending orders whose callback never arrived."""
    stats = order_status.reconcile_pending(get_mpesa(), older_than_minutes=older_than, limit=limit)
    click.echo(" ".join(f"{k}={v}" for k, v in stats.items()))


def register_commands(app):
    app.cli.add_command(create_admin)
    app.cli.add_command(dispatch_notifications)
    app.cli.add_command(reconcile_pending)
