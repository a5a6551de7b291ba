import hashlib
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from flask import current_app

from tiersync.billing.errors import NoBillingCustomer, UserNotFound
from tiersync.storage import UserStore
from .stripe_gateway import StripeGateway

log = logging.getLogger(__name__)


def _absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _params_hash(d: Dict[str, Any]) -> str:
    # Changes whenever any Checkout param changes
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


class BillingAccounts:
    """Customer-facing Stripe calls: checkout, portal, invoices."""

    def __init__(self, users: UserStore, gateway: StripeGateway):
        self.users = users
        self.gateway = gateway

    def _user(self, user_id: str):
        user = self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def get_or_create_customer(self, user_id: str) -> str:
        user = self._user(user_id)
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer = self.gateway.create_customer(email=user.email, metadata={"user_id": user.id})
        self.users.update_user(user.id, stripe_customer_id=customer["id"])
        log.info("billing.customer_created", extra={"user_id": user.id, "stripe_customer_id": customer["id"]})
        return customer["id"]

    def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Subscription-mode Checkout Session for ``price_id``.
        Returns: {"id": <session_id>, "url": <redirect_url or None>}
        """
        customer_id = self.get_or_create_customer(user_id)
        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url or _absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
            "cancel_url": cancel_url or _absolute_url("billing/cancelled"),
            "allow_promotion_codes": True,
            "metadata": {"user_id": user_id},
            "subscription_data": {"metadata": {"user_id": user_id}},
        }
        idem = make_idempotency_key("checkout", "v1", user_id, price_id, _params_hash(params))
        session = self.gateway.create_checkout_session(params, idempotency_key=idem)
        return {"id": session.get("id"), "url": session.get("url")}

    def create_portal_session(self, user_id: str, return_url: Optional[str] = None) -> Dict[str, Any]:
        user = self._user(user_id)
        if not user.stripe_customer_id:
            raise NoBillingCustomer(user_id)
        session = self.gateway.create_portal_session(
            customer_id=user.stripe_customer_id,
            return_url=return_url or _absolute_url("billing"),
        )
        return {"url": session.get("url")}

    def get_billing_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        user = self._user(user_id)
        if not user.stripe_customer_id:
            return []
        invoices = self.gateway.list_invoices(user.stripe_customer_id, limit=limit)
        return [
            {
                "id": inv.get("id"),
                "number": inv.get("number"),
                "status": inv.get("status"),
                "amount_paid": inv.get("amount_paid"),
                "amount_due": inv.get("amount_due"),
                "currency": inv.get("currency"),
                "created": inv.get("created"),
                "hosted_invoice_url": inv.get("hosted_invoice_url"),
                "invoice_pdf": inv.get("invoice_pdf"),
            }
            for inv in invoices
        ]

    def get_current_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._user(user_id)
        if not user.stripe_customer_id:
            return None
        subs = self.gateway.list_subscriptions(user.stripe_customer_id, status="active", limit=1)
        if not subs:
            return None
        sub = subs[0]
        return {
            "id": sub.get("id"),
            "status": sub.get("status"),
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
            "current_period_end": sub.get("current_period_end"),
            "trial_end": sub.get("trial_end"),
        }
