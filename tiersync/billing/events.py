import enum
from datetime import datetime, timezone
from typing import Any, Mapping, NamedTuple, Optional

from tiersync.models import BillingEvent
from .entitlements import stripe_id
from .errors import MalformedEvent


class EventKind(str, enum.Enum):
    """Stripe event types the reconciler knows how to handle."""

    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"

    CHECKOUT_COMPLETED = "checkout.session.completed"

    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_PAID = "invoice.payment.paid"
    INVOICE_PAYMENT_RECORD_PAID = "invoice_payment.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    INVOICE_CREATED = "invoice.created"
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_UPDATED = "invoice.updated"

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

    CHARGE_SUCCEEDED = "charge.succeeded"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"

    @classmethod
    def from_type(cls, event_type: str) -> Optional["EventKind"]:
        """None means "record it, but there is nothing to do"."""
        try:
            return cls(event_type)
        except ValueError:
            return None


class Outcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNHANDLED = "unhandled"


class ProcessResult(NamedTuple):
    billing_event: BillingEvent
    outcome: Outcome


def event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def previous_attributes(event: Mapping[str, Any]) -> Mapping[str, Any]:
    return (event.get("data") or {}).get("previous_attributes") or {}


def event_created_at(event: Mapping[str, Any]) -> datetime:
    ts = event.get("created")
    if ts is None:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise MalformedEvent(f"Event has an invalid created timestamp: {ts!r}") from None


def extract_customer_id(event: Mapping[str, Any]) -> Optional[str]:
    obj = event_object(event)
    customer_id = stripe_id(obj.get("customer"))
    if customer_id:
        return customer_id
    if obj.get("object") == "customer":
        return obj.get("id")
    return None


def metadata_user_id(event: Mapping[str, Any]) -> Optional[str]:
    return (event_object(event).get("metadata") or {}).get("user_id") or None


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    """
    Older API versions carry ``invoice.subscription``; newer ones only expose it
    on the line items or under ``parent.subscription_details``.
    """
    sub_id = stripe_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    for line in (invoice.get("lines") or {}).get("data") or []:
        sub_id = stripe_id(line.get("subscription"))
        if sub_id:
            return sub_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return stripe_id(details.get("subscription"))
