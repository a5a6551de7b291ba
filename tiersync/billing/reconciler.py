"""
Stripe webhook reconciliation.

Each delivery is recorded once per Stripe event id (the storage layer holds a
unique index on it), dispatched on its ``EventKind`` and marked ``processed``
or ``failed``. A failed handler re-raises so the webhook answers non-2xx and
Stripe redelivers; the redelivery re-opens the same row instead of creating
a second one.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

from tiersync.models import (
    TIER_FREE,
    TIER_PREMIUM,
    STATUS_FAILED,
    STATUS_PROCESSED,
    User,
)
from tiersync.services.stripe_gateway import StripeGateway
from tiersync.services.subscriptions import SubscriptionService
from tiersync.storage import BillingEventStore, UserStore

from .entitlements import is_active_premium, is_premium_subscription, resolve_tier, subscription_product_ids
from .errors import EventInFlight, MalformedEvent, UserNotFound
from .events import (
    EventKind,
    Outcome,
    ProcessResult,
    event_created_at,
    event_object,
    extract_customer_id,
    invoice_subscription_id,
    metadata_user_id,
    previous_attributes,
)

log = logging.getLogger(__name__)

ACTOR_STRIPE = "stripe"
ACTOR_SYNC = "sync"

Handler = Callable[[Mapping[str, Any]], None]


class SyncResult(NamedTuple):
    tier: str
    message: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingReconciler:
    def __init__(
        self,
        *,
        billing_events: BillingEventStore,
        users: UserStore,
        subscriptions: SubscriptionService,
        gateway: StripeGateway,
        premium_product_id: Optional[str],
        claim_ttl: timedelta = timedelta(minutes=5),
    ):
        self.billing_events = billing_events
        self.users = users
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.premium_product_id = premium_product_id
        self.claim_ttl = claim_ttl

        self._handlers: Dict[EventKind, Handler] = {
            EventKind.CUSTOMER_CREATED: self._on_customer_created,
            EventKind.CUSTOMER_UPDATED: self._audit_only,
            EventKind.SUBSCRIPTION_CREATED: self._on_subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EventKind.SUBSCRIPTION_TRIAL_WILL_END: self._on_trial_will_end,
            EventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventKind.INVOICE_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_RECORD_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            EventKind.INVOICE_PAYMENT_ACTION_REQUIRED: self._on_invoice_action_required,
            EventKind.INVOICE_CREATED: self._audit_only,
            EventKind.INVOICE_FINALIZED: self._audit_only,
            EventKind.INVOICE_UPDATED: self._audit_only,
            EventKind.PAYMENT_INTENT_SUCCEEDED: self._on_payment_intent_succeeded,
            EventKind.PAYMENT_INTENT_CREATED: self._audit_only,
            EventKind.PAYMENT_INTENT_FAILED: self._on_payment_intent_failed,
            EventKind.CHARGE_SUCCEEDED: self._audit_only,
            EventKind.PAYMENT_METHOD_ATTACHED: self._audit_only,
        }
        missing = set(EventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for: {sorted(k.value for k in missing)}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def process_event(self, event: Mapping[str, Any]) -> ProcessResult:
        ev_id = event.get("id")
        ev_type = event.get("type")
        if not ev_id or not ev_type:
            raise MalformedEvent("Event is missing id or type")

        kind = EventKind.from_type(ev_type)

        existing = self.billing_events.get_billing_event_by_stripe_event_id(ev_id)
        if existing is not None:
            if existing.status == STATUS_PROCESSED:
                log.info("billing.event.duplicate", extra={"stripe_event_id": ev_id, "event_type": ev_type})
                return ProcessResult(existing, Outcome.DUPLICATE)
            if kind is None:
                return ProcessResult(existing, Outcome.UNHANDLED)

        customer_id = extract_customer_id(event)
        record, created = self.billing_events.record_billing_event(
            stripe_event_id=ev_id,
            event_type=ev_type,
            event_data=dict(event),
            stripe_event_created_at=event_created_at(event),
            stripe_customer_id=customer_id,
            user_id=self._resolve_user_id(event, customer_id),
        )
        log.info(
            "billing.event.recorded",
            extra={"id": record.id, "stripe_event_id": ev_id, "event_type": ev_type, "inserted": created},
        )

        if not created:
            if record.status == STATUS_PROCESSED:
                return ProcessResult(record, Outcome.DUPLICATE)
            if kind is None:
                return ProcessResult(record, Outcome.UNHANDLED)
            claimed = self.billing_events.claim_billing_event(record.id, stale_before=_utcnow() - self.claim_ttl)
            if claimed is None:
                raise EventInFlight(ev_id)
            record = claimed
            log.info("billing.event.retry", extra={"stripe_event_id": ev_id, "retries": record.retries})

        if kind is None:
            log.info("billing.event.unhandled", extra={"stripe_event_id": ev_id, "event_type": ev_type})
            return ProcessResult(record, Outcome.UNHANDLED)

        try:
            self._handlers[kind](event)
        except Exception as exc:
            self.billing_events.update_billing_event(
                record.id,
                status=STATUS_FAILED,
                processed_at=_utcnow(),
                error=str(exc) or exc.__class__.__name__,
            )
            log.exception("billing.event.failed", extra={"stripe_event_id": ev_id, "event_type": ev_type})
            raise

        record = self.billing_events.update_billing_event(record.id, status=STATUS_PROCESSED, processed_at=_utcnow())
        return ProcessResult(record, Outcome.PROCESSED)

    def replay_event(self, stripe_event_id: str) -> Optional[ProcessResult]:
        """Run a stored event through ``process_event`` again. None if unknown."""
        record = self.billing_events.get_billing_event_by_stripe_event_id(stripe_event_id)
        if record is None:
            return None
        return self.process_event(record.event_data)

    def sync_user_subscription(self, user_id: str) -> SyncResult:
        """
        Re-derive the tier from Stripe's live subscription list, bypassing the
        event log. Used when webhooks were missed.
        """
        user = self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)

        current = self.subscriptions.get_user_subscription_tier(user_id)

        if not user.stripe_customer_id:
            if current != TIER_FREE:
                self.subscriptions.set_user_subscription_tier(user_id, TIER_FREE, ACTOR_SYNC)
                return SyncResult(TIER_FREE, "Synced to free tier (no Stripe customer)")
            return SyncResult(TIER_FREE, "Already on free tier (no Stripe customer)")

        active = self.gateway.list_subscriptions(user.stripe_customer_id, status="active", limit=10)
        target = resolve_tier(active, self.premium_product_id)
        log.info(
            "billing.sync.result",
            extra={
                "user_id": user_id,
                "stripe_customer_id": user.stripe_customer_id,
                "current_tier": current,
                "target_tier": target,
                "subscription_count": len(active),
            },
        )

        if target == current:
            return SyncResult(target, f"Already on {target} tier and in sync with Stripe")
        self.subscriptions.set_user_subscription_tier(user_id, target, ACTOR_SYNC)
        if target == TIER_PREMIUM:
            return SyncResult(TIER_PREMIUM, "Synced to premium tier")
        return SyncResult(TIER_FREE, "Synced to free tier (no active premium subscription)")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_user_id(self, event: Mapping[str, Any], customer_id: Optional[str]) -> Optional[str]:
        user_id = metadata_user_id(event)
        if user_id:
            return user_id
        if customer_id:
            user = self.users.get_user_by_stripe_customer_id(customer_id)
            return user.id if user else None
        return None

    def _user_for_customer(self, customer_id: Optional[str], **context: Any) -> Optional[User]:
        user = self.users.get_user_by_stripe_customer_id(customer_id) if customer_id else None
        if user is None:
            log.error("billing.user_not_found", extra={"stripe_customer_id": customer_id, **context})
        return user

    def _set_tier(self, user: User, tier: str, **context: Any) -> None:
        log.info("billing.tier_change", extra={"user_id": user.id, "tier": tier, **context})
        self.subscriptions.set_user_subscription_tier(user.id, tier, ACTOR_STRIPE)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _audit_only(self, event: Mapping[str, Any]) -> None:
        obj = event_object(event)
        log.info(
            "billing.event.audit",
            extra={"event_type": event.get("type"), "object_id": obj.get("id"), "stripe_customer_id": extract_customer_id(event)},
        )

    def _on_customer_created(self, event: Mapping[str, Any]) -> None:
        customer = event_object(event)
        user_id = metadata_user_id(event)
        if not user_id:
            return
        user = self.users.get_user_by_id(user_id)
        if user is not None and not user.stripe_customer_id:
            self.users.update_user(user.id, stripe_customer_id=customer.get("id"))
            log.info("billing.customer_attached", extra={"user_id": user.id, "stripe_customer_id": customer.get("id")})

    def _on_subscription_created(self, event: Mapping[str, Any]) -> None:
        sub = event_object(event)
        user = self._user_for_customer(extract_customer_id(event), subscription_id=sub.get("id"))
        if user is None:
            return
        log.info(
            "billing.subscription.created",
            extra={
                "subscription_id": sub.get("id"),
                "status": sub.get("status"),
                "product_ids": subscription_product_ids(sub),
                "premium_product_id": self.premium_product_id,
            },
        )
        if is_active_premium(sub, self.premium_product_id):
            self._set_tier(user, TIER_PREMIUM, subscription_id=sub.get("id"))

    def _on_subscription_updated(self, event: Mapping[str, Any]) -> None:
        sub = event_object(event)
        user = self._user_for_customer(extract_customer_id(event), subscription_id=sub.get("id"))
        if user is None or not is_premium_subscription(sub, self.premium_product_id):
            return

        status = sub.get("status")
        context = {
            "subscription_id": sub.get("id"),
            "status": status,
            "previous_status": previous_attributes(event).get("status"),
        }
        if status == "active":
            if sub.get("cancel_at_period_end"):
                # Grace period: access continues until the period ends
                log.info("billing.subscription.cancel_pending", extra={"user_id": user.id, **context})
                return
            self._set_tier(user, TIER_PREMIUM, **context)
        elif status == "past_due":
            # Grace period while Stripe retries the payment
            log.warning("billing.subscription.past_due", extra={"user_id": user.id, **context})
        elif status in ("canceled", "unpaid"):
            self._set_tier(user, TIER_FREE, **context)
        else:
            log.info("billing.subscription.status_changed", extra={"user_id": user.id, **context})

    def _on_subscription_deleted(self, event: Mapping[str, Any]) -> None:
        sub = event_object(event)
        user = self._user_for_customer(extract_customer_id(event), subscription_id=sub.get("id"))
        if user is None:
            return
        if is_premium_subscription(sub, self.premium_product_id):
            self._set_tier(user, TIER_FREE, subscription_id=sub.get("id"))

    def _on_trial_will_end(self, event: Mapping[str, Any]) -> None:
        sub = event_object(event)
        user = self._user_for_customer(extract_customer_id(event), subscription_id=sub.get("id"))
        if user is None:
            return
        # TODO: send the trial-ending email once a mail provider is wired in
        log.info(
            "billing.subscription.trial_will_end",
            extra={"user_id": user.id, "subscription_id": sub.get("id"), "trial_end": sub.get("trial_end")},
        )

    def _on_checkout_completed(self, event: Mapping[str, Any]) -> None:
        # customer.subscription.created drives the actual upgrade
        session = event_object(event)
        log.info(
            "billing.checkout.completed",
            extra={
                "session_id": session.get("id"),
                "user_id": metadata_user_id(event),
                "mode": session.get("mode"),
                "payment_status": session.get("payment_status"),
            },
        )

    def _on_invoice_paid(self, event: Mapping[str, Any]) -> None:
        invoice = event_object(event)
        sub_id = invoice_subscription_id(invoice)
        if not sub_id:
            log.info("billing.invoice.not_subscription", extra={"invoice_id": invoice.get("id")})
            return
        user = self._user_for_customer(extract_customer_id(event), invoice_id=invoice.get("id"))
        if user is None:
            return
        sub = self.gateway.retrieve_subscription(sub_id)
        if is_active_premium(sub, self.premium_product_id):
            self._set_tier(user, TIER_PREMIUM, invoice_id=invoice.get("id"), subscription_id=sub_id)

    def _on_invoice_payment_failed(self, event: Mapping[str, Any]) -> None:
        invoice = event_object(event)
        sub_id = invoice_subscription_id(invoice)
        log.warning(
            "billing.invoice.payment_failed",
            extra={
                "invoice_id": invoice.get("id"),
                "subscription_id": sub_id,
                "attempt_count": invoice.get("attempt_count"),
                "next_payment_attempt": invoice.get("next_payment_attempt"),
            },
        )
        # Stripe still has a retry scheduled: keep the current tier
        if not sub_id or invoice.get("next_payment_attempt"):
            return
        user = self._user_for_customer(extract_customer_id(event), invoice_id=invoice.get("id"))
        if user is None:
            return
        sub = self.gateway.retrieve_subscription(sub_id)
        if is_premium_subscription(sub, self.premium_product_id):
            self._set_tier(user, TIER_FREE, invoice_id=invoice.get("id"), subscription_id=sub_id)

    def _on_invoice_action_required(self, event: Mapping[str, Any]) -> None:
        invoice = event_object(event)
        sub_id = invoice_subscription_id(invoice)
        if not sub_id:
            return
        user = self._user_for_customer(extract_customer_id(event), invoice_id=invoice.get("id"))
        if user is None:
            return
        sub = self.gateway.retrieve_subscription(sub_id)
        if is_active_premium(sub, self.premium_product_id):
            self._set_tier(user, TIER_PREMIUM, invoice_id=invoice.get("id"), subscription_id=sub_id)

    def _intent_subscription(self, event: Mapping[str, Any]):
        intent = event_object(event)
        sub_id = (intent.get("metadata") or {}).get("subscription_id")
        if not sub_id:
            return None, None
        user = self._user_for_customer(extract_customer_id(event), payment_intent_id=intent.get("id"))
        if user is None:
            return None, None
        return user, self.gateway.retrieve_subscription(sub_id)

    def _on_payment_intent_succeeded(self, event: Mapping[str, Any]) -> None:
        user, sub = self._intent_subscription(event)
        if user is not None and is_active_premium(sub, self.premium_product_id):
            self._set_tier(user, TIER_PREMIUM, payment_intent_id=event_object(event).get("id"))

    def _on_payment_intent_failed(self, event: Mapping[str, Any]) -> None:
        user, sub = self._intent_subscription(event)
        if user is not None and is_active_premium(sub, self.premium_product_id):
            self._set_tier(user, TIER_FREE, payment_intent_id=event_object(event).get("id"))
