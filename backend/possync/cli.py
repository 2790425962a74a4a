# Overview: Flask CLI command groups for bootstrap, tenants, device tokens and the cache.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Org Name"] [--store "Main Store"]
#   Idempotent bootstrap: creates default org and store, and issues a device token.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Store (tenant) management:
# - python -m flask stores list
# - python -m flask stores create --org-id 1 --name "Downtown" --code "DT"
#
# Device tokens:
# - python -m flask tokens issue --store-id 1 --name "Front Counter"
#   Prints the plaintext token once; only its hash is stored.
# - python -m flask tokens revoke 3
#
# Tenant cache (per process):
# - python -m flask cache stats
# - python -m flask cache clear [--store-id 1]

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import DeviceToken, Organization, Store
from .services import token_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Organization', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--store', 'store_name', default='Main Store', help='Store name')
@with_appcontext
def init_system(org_name, org_code, store_name):
    """
    Initialize a syncing installation: organization, default store and a device token.

    MULTI-TENANT: Creates a default organization as the tenant root and a
    store inside it. The token binds a POS device to that store.
    """
    click.echo("START Initializing possync...")

    db.create_all()

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    store = db.session.query(Store).filter_by(org_id=org.id, name=store_name).first()
    if not store:
        store = Store(org_id=org.id, name=store_name)
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id}, Org: {org.name})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    _, plaintext = token_service.issue_token(store.id, name="bootstrap")

    click.echo("\n" + "="*60)
    click.echo("DONE possync initialized")
    click.echo("="*60)
    click.echo(f"\nOrganization: {org.name} (ID: {org.id})")
    click.echo(f"Store: {store.name} (ID: {store.id})")
    click.echo(f"Device token (shown once): {plaintext}")
    click.echo("")


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


@click.group('stores')
def stores_group():
    """Store (tenant) management commands."""


@stores_group.command('list')
@with_appcontext
def list_stores():
    """List all stores with their organization."""
    stores = db.session.query(Store).order_by(Store.org_id, Store.id).all()

    if not stores:
        click.echo("No stores found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Org':<5} {'Name':<30} {'Code':<10} {'Active'}")
    click.echo("="*70)
    for store in stores:
        active_str = "Yes" if store.is_active else "No"
        click.echo(f"{store.id:<5} {store.org_id:<5} {store.name:<30} {store.code or '-':<10} {active_str}")
    click.echo("="*70 + "\n")


@stores_group.command('create')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--name', required=True, help='Store name')
@click.option('--code', help='Store code (unique within org)')
@with_appcontext
def create_store_cli(org_id, name, code):
    """Add a store to an organization."""
    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org:
        click.echo(f"FAIL Organization ID {org_id} not found")
        return

    existing = db.session.query(Store).filter_by(org_id=org_id, name=name).first()
    if existing:
        click.echo(f"FAIL Store '{name}' already exists in this organization")
        return

    store = Store(org_id=org_id, name=name, code=code)
    db.session.add(store)
    db.session.commit()

    click.echo(f"PASS Created store: {store.name} (ID: {store.id}) in org '{org.name}'")


@click.group('tokens')
def tokens_group():
    """Device token commands."""


@tokens_group.command('issue')
@click.option('--store-id', type=int, required=True, help='Store the device belongs to')
@click.option('--name', help='Label for the device')
@with_appcontext
def issue_token_cli(store_id, name):
    """Issue a device token; the plaintext is printed once."""
    try:
        record, plaintext = token_service.issue_token(store_id, name=name)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Issued token ID {record.id} for store {record.store_id}")
    click.echo(plaintext)


@tokens_group.command('revoke')
@click.argument('token_id', type=int)
@with_appcontext
def revoke_token_cli(token_id):
    """Revoke a device token by ID."""
    if token_service.revoke_token(token_id):
        click.echo(f"PASS Revoked token {token_id}")
    else:
        click.echo(f"FAIL Token {token_id} not found or already revoked")


@tokens_group.command('list')
@click.option('--store-id', type=int, help='Filter by store ID')
@with_appcontext
def list_tokens_cli(store_id):
    """List device tokens (hashes are never shown)."""
    query = db.session.query(DeviceToken)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    for token in query.order_by(DeviceToken.id).all():
        state = "revoked" if token.is_revoked else "active"
        click.echo(f"{token.id:<5} store={token.store_id:<5} {token.name or '-':<25} {state}")


@click.group('cache')
def cache_group():
    """Tenant cache inspection (current process only)."""


@cache_group.command('stats')
@with_appcontext
def cache_stats_cli():
    """Print cache counters as JSON."""
    click.echo(json.dumps(current_app.extensions["tenant_cache"].stats(), indent=2, sort_keys=True))


@cache_group.command('clear')
@click.option('--store-id', type=int, help='Only clear this store')
@with_appcontext
def cache_clear_cli(store_id):
    """Drop cached entries."""
    removed = current_app.extensions["tenant_cache"].clear(store_id)
    click.echo(f"PASS Removed {removed} cache entries")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(tokens_group)
    app.cli.add_command(cache_group)
