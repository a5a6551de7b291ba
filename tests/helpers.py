import json
import time

PREMIUM_PRODUCT = "prod_premium_test"
OTHER_PRODUCT = "prod_other"


def stripe_subscription(
    sub_id="sub_1",
    *,
    customer="cus_1",
    status="active",
    product=PREMIUM_PRODUCT,
    cancel_at_period_end=False,
):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": int(time.time()) + 30 * 24 * 3600,
        "items": {"data": [{"quantity": 1, "price": {"id": "price_x", "product": product}}]},
    }


def stripe_event(event_type, obj, *, event_id="evt_1", previous=None, created=None):
    data = {"object": obj}
    if previous is not None:
        data["previous_attributes"] = previous
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "data": data,
    }


def post_webhook(client, event):
    return client.post(
        "/webhooks/stripe",
        data=json.dumps(event),
        headers={"Stripe-Signature": "t=1,v1=fake", "Content-Type": "application/json"},
    )


def login(client, user_id):
    # Simulate Flask-Login session
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True


class FakeGateway:
    """Stands in for StripeGateway; ``subscriptions`` maps id -> payload."""

    def __init__(self):
        self.subscriptions = {}
        self.invoices = []
        self.customers = []
        self.checkout_calls = []
        self.portal_calls = []
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def retrieve_subscription(self, subscription_id):
        self._maybe_fail()
        return self.subscriptions[subscription_id]

    def list_subscriptions(self, customer_id, *, status="active", limit=10):
        self._maybe_fail()
        subs = [
            s for s in self.subscriptions.values()
            if s.get("customer") == customer_id and (status is None or s.get("status") == status)
        ]
        return subs[:limit]

    def create_customer(self, *, email, metadata):
        self._maybe_fail()
        customer = {"id": f"cus_new_{len(self.customers) + 1}", "email": email, "metadata": metadata}
        self.customers.append(customer)
        return customer

    def create_checkout_session(self, params, *, idempotency_key=None):
        self._maybe_fail()
        self.checkout_calls.append((params, idempotency_key))
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def create_portal_session(self, *, customer_id, return_url):
        self._maybe_fail()
        self.portal_calls.append((customer_id, return_url))
        return {"url": f"https://billing.stripe.test/{customer_id}"}

    def list_invoices(self, customer_id, *, limit=10):
        self._maybe_fail()
        return [i for i in self.invoices if i.get("customer") == customer_id][:limit]
