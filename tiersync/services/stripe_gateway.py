from typing import Any, Dict, List, Optional

from stripe import StripeClient


def as_dict(obj: Any) -> Dict[str, Any]:
    """Stripe objects may need converting to plain dicts."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _list_data(result: Any) -> List[Dict[str, Any]]:
    data = getattr(result, "data", None)
    if data is None and isinstance(result, dict):
        data = result.get("data")
    return [as_dict(item) for item in (data or [])]


class StripeGateway:
    """Read/write calls to the Stripe API. No retries: Stripe redelivers webhooks."""

    def __init__(self, secret_key: Optional[str]):
        self._secret_key = secret_key

    def _client(self) -> StripeClient:
        if not self._secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        return StripeClient(self._secret_key)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return as_dict(self._client().subscriptions.retrieve(subscription_id))

    def list_subscriptions(self, customer_id: str, *, status: str = "active", limit: int = 10) -> List[Dict[str, Any]]:
        result = self._client().subscriptions.list(
            params={"customer": customer_id, "status": status, "limit": limit}
        )
        return _list_data(result)

    def create_customer(self, *, email: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        return as_dict(self._client().customers.create(params={"email": email, "metadata": metadata}))

    def create_checkout_session(self, params: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        return as_dict(self._client().checkout.sessions.create(params=params, options=options))

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        return as_dict(
            self._client().billing_portal.sessions.create(params={"customer": customer_id, "return_url": return_url})
        )

    def list_invoices(self, customer_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        result = self._client().invoices.list(params={"customer": customer_id, "limit": limit})
        return _list_data(result)
