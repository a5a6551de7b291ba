import json

import click
from flask.cli import with_appcontext

from tiersync.billing import UserNotFound, get_reconciler, get_subscription_service
from tiersync.models import STATUSES, TIERS
from tiersync.storage import SqlBillingEventStore, SqlUserStore


def _resolve_user(ident: str):
    """Accept a user id or an email address."""
    users = SqlUserStore()
    user = users.get_user_by_email(ident) if "@" in ident else users.get_user_by_id(ident)
    if not user:
        raise click.ClickException("User not found")
    return user


@click.group()
def users():
    """User management."""


@users.command("create")
@click.option("--email", required=True)
@click.option("--stripe-customer-id", default=None, help="Existing Stripe customer id (cus_...)")
@with_appcontext
def users_create(email, stripe_customer_id):
    store = SqlUserStore()
    if store.get_user_by_email(email):
        raise click.ClickException("User already exists")
    if stripe_customer_id and store.get_user_by_stripe_customer_id(stripe_customer_id):
        raise click.ClickException("Stripe customer already attached to another user")
    user = store.create_user(email=email, stripe_customer_id=stripe_customer_id)
    click.echo(f"User created id={user.id} email={user.email} stripe_customer_id={user.stripe_customer_id}")


@click.group()
def subscriptions():
    """Subscription tier ops."""


@subscriptions.command("show")
@click.argument("user")
@with_appcontext
def subscriptions_show(user):
    u = _resolve_user(user)
    sub = get_subscription_service().get_user_subscription(u.id)
    click.echo(json.dumps(sub, indent=2))


@subscriptions.command("set-tier")
@click.argument("user")
@click.argument("tier", type=click.Choice(TIERS))
@click.option("--actor", default="admin", show_default=True, help="Actor recorded in the audit log")
@with_appcontext
def subscriptions_set_tier(user, tier, actor):
    u = _resolve_user(user)
    service = get_subscription_service()
    previous = service.get_user_subscription_tier(u.id)
    service.set_user_subscription_tier(u.id, tier, actor)
    click.echo(f"{u.email}: {previous} -> {tier}")


@click.group()
def billing():
    """Stripe reconciliation ops."""


@billing.command("sync")
@click.argument("user")
@with_appcontext
def billing_sync(user):
    """Re-derive USER's tier from Stripe's live subscriptions."""
    u = _resolve_user(user)
    try:
        result = get_reconciler().sync_user_subscription(u.id)
    except UserNotFound as e:
        raise click.ClickException(e.message)
    click.echo(f"{u.email}: {result.tier} ({result.message})")


@billing.command("replay")
@click.argument("stripe_event_id")
@with_appcontext
def billing_replay(stripe_event_id):
    """Run a stored Stripe event through the handlers again."""
    result = get_reconciler().replay_event(stripe_event_id)
    if result is None:
        raise click.ClickException(f"No billing event with id {stripe_event_id}")
    click.echo(f"{stripe_event_id}: {result.outcome.value} (status={result.billing_event.status})")


@billing.command("events")
@click.option("--user", "user_ident", default=None, help="User id or email")
@click.option("--customer", "customer_id", default=None, help="Stripe customer id")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def billing_events(user_ident, customer_id, status, limit):
    user_id = _resolve_user(user_ident).id if user_ident else None
    rows = SqlBillingEventStore().list_billing_events(
        user_id=user_id, customer_id=customer_id, status=status, limit=limit
    )
    if not rows:
        click.echo("No billing events")
        return
    for row in rows:
        line = f"{row.created_at:%Y-%m-%d %H:%M:%S} {row.stripe_event_id} {row.event_type} {row.status}"
        if row.retries:
            line += f" retries={row.retries}"
        if row.error:
            line += f" error={row.error!r}"
        click.echo(line)


def register_cli(app):
    app.cli.add_command(users)
    app.cli.add_command(subscriptions)
    app.cli.add_command(billing)
