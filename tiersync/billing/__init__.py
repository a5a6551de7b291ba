from datetime import timedelta

from flask import current_app

from tiersync.services.stripe_gateway import StripeGateway
from tiersync.services.subscriptions import SubscriptionService
from tiersync.storage import SqlBillingEventStore, SqlSubscriptionStore, SqlUserStore

from .errors import BillingError, EventInFlight, MalformedEvent, NoBillingCustomer, UserNotFound
from .events import EventKind, Outcome, ProcessResult
from .reconciler import BillingReconciler, SyncResult


def _gateway() -> StripeGateway:
    return StripeGateway(current_app.config.get("STRIPE_SECRET_KEY"))


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(SqlSubscriptionStore())


def get_reconciler() -> BillingReconciler:
    """Reconciler wired to the SQL stores of the current app."""
    cfg = current_app.config
    return BillingReconciler(
        billing_events=SqlBillingEventStore(),
        users=SqlUserStore(),
        subscriptions=get_subscription_service(),
        gateway=_gateway(),
        premium_product_id=cfg.get("STRIPE_PREMIUM_PRODUCT_ID"),
        claim_ttl=timedelta(seconds=cfg.get("BILLING_EVENT_CLAIM_TTL_SECONDS", 300)),
    )


def get_billing_accounts():
    from tiersync.services.billing import BillingAccounts

    return BillingAccounts(SqlUserStore(), _gateway())


__all__ = [
    "BillingError",
    "BillingReconciler",
    "EventInFlight",
    "EventKind",
    "MalformedEvent",
    "NoBillingCustomer",
    "Outcome",
    "ProcessResult",
    "SyncResult",
    "UserNotFound",
    "get_billing_accounts",
    "get_reconciler",
    "get_subscription_service",
]
