from typing import Any, List, Mapping, Optional

from tiersync.models import TIER_FREE, TIER_PREMIUM

ACTIVE_STATUS = "active"


def stripe_id(value: Any) -> Optional[str]:
    # Stripe fields may be an id string or an expanded object
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def subscription_product_ids(subscription: Mapping[str, Any]) -> List[str]:
    items = (subscription.get("items") or {}).get("data") or []
    ids = []
    for item in items:
        price = item.get("price") or {}
        product_id = stripe_id(price.get("product"))
        if product_id:
            ids.append(product_id)
    return ids


def is_premium_subscription(subscription: Mapping[str, Any], premium_product_id: Optional[str]) -> bool:
    """
    The configured premium product id is the sole criterion: any line item
    priced under that product makes the subscription premium.
    """
    if not premium_product_id:
        return False
    return premium_product_id in subscription_product_ids(subscription)


def is_active_premium(subscription: Mapping[str, Any], premium_product_id: Optional[str]) -> bool:
    return subscription.get("status") == ACTIVE_STATUS and is_premium_subscription(subscription, premium_product_id)


def resolve_tier(subscriptions: List[Mapping[str, Any]], premium_product_id: Optional[str]) -> str:
    """Tier implied by a customer's currently active Stripe subscriptions."""
    for sub in subscriptions:
        if is_premium_subscription(sub, premium_product_id):
            return TIER_PREMIUM
    return TIER_FREE
