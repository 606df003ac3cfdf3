# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/optica/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Org Name"] [--store "Tienda Central"]
#   Idempotent bootstrap: creates tables, default org, store, zone and admin user.
#   This is how the schema gets built; no migration revisions ship. Flask-Migrate
#   is wired up, so `python -m flask db init` / `db migrate` can start a history
#   from the current models when one is needed.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users and tokens:
# - python -m flask users list [--org-id 1]
# - python -m flask users create --org-id 1 --username caja1 --name "Caja 1" --role cajero
# - python -m flask users issue-token --username admin [--hours 24]
#   Prints a bearer token once; only its hash is stored.
# - python -m flask users deactivate --username caja1
#   Blocks the user and revokes every token it holds.
#
# Sequences:
# - python -m flask sequences show
#   Current value of every named counter (ventaOt, recojoOptica, movimiento).

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import OpticaError
from .models import Organization, Store, Zone, User, Counter
from .models.auth import ROLE_ADMIN, VALID_ROLES
from .services import session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Organization', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--store', 'store_name', default='Tienda Principal', help='Store name')
@with_appcontext
def init_system(org_name, org_code, store_name):
    """
    Initialize an empty installation.

    Creates (when missing): tables, organization, store, a default zone and
    an 'admin' user. Issue a token for it with `users issue-token`.
    """
    click.echo("START Initializing system...")
    db.create_all()

    org = db.session.query(Organization).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    store = db.session.query(Store).filter_by(org_id=org.id).first()
    if not store:
        store = Store(org_id=org.id, name=store_name, code="T01")
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    zone = db.session.query(Zone).filter_by(store_id=store.id).first()
    if not zone:
        zone = Zone(store_id=store.id, code="Z1", name="Vitrina")
        db.session.add(zone)
        db.session.commit()
        click.echo(f"PASS Created zone: {zone.name} (ID: {zone.id})")

    admin = db.session.query(User).filter_by(org_id=org.id, username="admin").first()
    if not admin:
        admin = User(
            org_id=org.id,
            store_id=store.id,
            username="admin",
            name="Administrador",
            role=ROLE_ADMIN,
            is_active=True,
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"PASS Created admin user (ID: {admin.id})")
    else:
        click.echo(f"PASS Using existing admin user (ID: {admin.id})")

    click.echo("\nDONE System ready. Next: python -m flask users issue-token --username admin")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and token commands."""


@users_group.command('list')
@click.option('--org-id', type=int, help='Filter by organization ID')
@with_appcontext
def list_users(org_id):
    """List all users with their roles."""
    query = db.session.query(User)
    if org_id:
        query = query.filter_by(org_id=org_id)

    users = query.order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'Org':<5} {'Username':<20} {'Name':<25} {'Role':<14} {'Active'}")
    click.echo("=" * 80)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(
            f"{user.id:<5} {user.org_id:<5} {user.username:<20} {user.name:<25} {user.role:<14} {active_str}"
        )
    click.echo("=" * 80 + "\n")


@users_group.command('create')
@click.option('--org-id', type=int, prompt=True, help='Organization ID')
@click.option('--store-id', type=int, default=None, help='Home store ID')
@click.option('--username', prompt=True, help='Login name')
@click.option('--name', prompt=True, help='Display name (shown as salesperson)')
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True, help='Role')
@with_appcontext
def create_user(org_id, store_id, username, name, role):
    """Create a staff user."""
    if not db.session.get(Organization, org_id):
        raise click.ClickException(f"Organization {org_id} not found")
    if db.session.query(User).filter_by(org_id=org_id, username=username).first():
        raise click.ClickException(f"User '{username}' already exists in organization {org_id}")

    user = User(org_id=org_id, store_id=store_id, username=username, name=name, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")


@users_group.command('issue-token')
@click.option('--username', required=True, help='Login name')
@click.option('--org-id', type=int, default=None, help='Organization ID (when usernames repeat)')
@click.option('--hours', type=int, default=None, help='Token lifetime (default SESSION_TTL_HOURS)')
@with_appcontext
def issue_token(username, org_id, hours):
    """Issue a bearer token. The plaintext is shown once."""
    query = db.session.query(User).filter_by(username=username)
    if org_id:
        query = query.filter_by(org_id=org_id)
    user = query.first()
    if not user:
        raise click.ClickException(f"User '{username}' not found")

    try:
        session, token = session_service.create_session(user.id, ttl_hours=hours)
    except OpticaError as e:
        raise click.ClickException(e.message)

    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('deactivate')
@click.option('--username', required=True, help='Login name')
@click.option('--org-id', type=int, default=None, help='Organization ID (when usernames repeat)')
@with_appcontext
def deactivate_user(username, org_id):
    """Deactivate a user and revoke all of their tokens."""
    query = db.session.query(User).filter_by(username=username)
    if org_id:
        query = query.filter_by(org_id=org_id)
    user = query.first()
    if not user:
        raise click.ClickException(f"User '{username}' not found")

    user.is_active = False
    db.session.commit()
    revoked = session_service.revoke_user_sessions(user.id)
    click.echo(f"PASS Deactivated {user.username}; {revoked} token(s) revoked")


@click.group('sequences')
def sequences_group():
    """Named counter inspection."""


@sequences_group.command('show')
@with_appcontext
def show_sequences():
    """Show the last value handed out by every counter."""
    counters = db.session.query(Counter).order_by(Counter.name).all()
    if not counters:
        click.echo("No counters yet.")
        return
    for counter in counters:
        click.echo(f"{counter.name:<20} {counter.value}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(sequences_group)
