# Overview: Flask CLI command groups for users, tiers, rental sweeps and maintenance.

# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py.
# - Use: python -m flask <group> <command> [options]
#
# Users:
# - python -m flask users create --email a@b.com --username admin --password "Password123!" [--admin] [--verified]
# - python -m flask users list
# - python -m flask users grant-admin admin
# - python -m flask users set-payout-account admin acct_123
#
# Tiers:
# - python -m flask tiers recalculate [--user-id 1]
#
# Rentals (also reachable as /api/cron/* for a hosted scheduler):
# - python -m flask rentals auto-decline
# - python -m flask rentals expire-checkouts
# - python -m flask rentals release-deposits
# - python -m flask rentals retry-payouts
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions
# - python -m flask maintenance recount-upvotes

import click
from flask.cli import with_appcontext

from .errors import ToolUnityError
from .extensions import db
from .models import User
from .services import auth_service, deposit_service, maintenance_service, rental_service


def _find_user(identifier: str) -> User:
    user = db.session.query(User).filter(
        db.or_(User.username == identifier, User.email == identifier.lower())
    ).first()
    if not user:
        raise click.ClickException(f"User '{identifier}' not found")
    return user


@click.group('users')
def users_group():
    """Member accounts."""


@users_group.command('create')
@click.option('--email', prompt=True)
@click.option('--username', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--phone', default=None)
@click.option('--admin', 'is_admin', is_flag=True, default=False, help='Grant admin access')
@click.option('--verified', is_flag=True, default=False, help='Mark the email as verified')
@with_appcontext
def create_user_cmd(email, username, password, phone, is_admin, verified):
    try:
        user = auth_service.signup(email, username, password, phone)
    except ToolUnityError as exc:
        raise click.ClickException(str(exc))

    user.is_admin = is_admin
    if verified:
        user.email_verified = True
        user.verification_token_hash = None
    db.session.commit()
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, admin={user.is_admin})")


@users_group.command('list')
@with_appcontext
def list_users_cmd():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found")
        return
    for u in users:
        flags = []
        if u.is_admin:
            flags.append("admin")
        if not u.email_verified:
            flags.append("unverified")
        if not u.is_active:
            flags.append("inactive")
        click.echo(
            f"{u.id:>4}  {u.username:<20} {u.email:<32} tier={u.subscription_tier}"
            f" ({u.tier_granted_by}) tools={u.tools_count} {' '.join(flags)}"
        )


@users_group.command('grant-admin')
@click.argument('identifier')
@with_appcontext
def grant_admin_cmd(identifier):
    user = _find_user(identifier)
    user.is_admin = True
    db.session.commit()
    click.echo(f"PASS {user.username} is now an admin")


@users_group.command('set-payout-account')
@click.argument('identifier')
@click.argument('account_id')
@with_appcontext
def set_payout_account_cmd(identifier, account_id):
    """Attach a Stripe Connect account id used for owner payouts."""
    if not account_id.startswith("acct_"):
        raise click.ClickException("Stripe Connect account ids start with acct_")
    user = _find_user(identifier)
    user.stripe_connect_account_id = account_id
    db.session.commit()
    click.echo(f"PASS Payout account for {user.username} set to {account_id}")


@click.group('tiers')
def tiers_group():
    """Membership tier repair."""


@tiers_group.command('recalculate')
@click.option('--user-id', type=int, default=None)
@with_appcontext
def recalculate_tiers_cmd(user_id):
    actions = maintenance_service.recalculate_all_tiers(user_id)
    if not actions:
        click.echo("No users to recalculate")
        return
    for action, count in sorted(actions.items()):
        click.echo(f"{action}: {count}")


@click.group('rentals')
def rentals_group():
    """Scheduled rental sweeps."""


@rentals_group.command('auto-decline')
@with_appcontext
def auto_decline_cmd():
    result = rental_service.auto_decline_expired()
    click.echo(f"Processed {result['processed']}, declined {len(result['declined'])}, errors {len(result['errors'])}")
    for err in result["errors"]:
        click.echo(f"  FAIL rental {err['rental_id']}: {err['error']}")


@rentals_group.command('expire-checkouts')
@with_appcontext
def expire_checkouts_cmd():
    result = rental_service.expire_stale_checkouts()
    click.echo(f"Processed {result['processed']}, expired {len(result['expired'])}")


@rentals_group.command('release-deposits')
@with_appcontext
def release_deposits_cmd():
    result = deposit_service.release_expired_deposits()
    click.echo(f"Processed {result['processed']}, released {len(result['released'])}, errors {len(result['errors'])}")
    for err in result["errors"]:
        click.echo(f"  FAIL rental {err['rental_id']}: {err['error']}")


@rentals_group.command('retry-payouts')
@with_appcontext
def retry_payouts_cmd():
    rentals = rental_service.list_failed_payouts()
    if not rentals:
        click.echo("No failed payouts")
        return
    for rental in rentals:
        try:
            rental = rental_service.retry_payout(rental.id)
        except ToolUnityError as exc:
            click.echo(f"FAIL rental {rental.id}: {exc}")
            continue
        click.echo(f"{'PASS' if rental.payout_status == 'paid' else 'FAIL'} rental {rental.id}: {rental.payout_status}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cmd():
    removed = maintenance_service.cleanup_sessions()
    click.echo(f"Removed {removed} sessions")


@maintenance_group.command('recount-upvotes')
@with_appcontext
def recount_upvotes_cmd():
    repaired = maintenance_service.repair_upvote_counts()
    click.echo(f"Repaired {repaired} tool requests")


def register_commands(app):
    app.cli.add_command(users_group)
    app.cli.add_command(tiers_group)
    app.cli.add_command(rentals_group)
    app.cli.add_command(maintenance_group)
