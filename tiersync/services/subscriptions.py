import logging
import uuid
from typing import Any, Dict, Optional

from tiersync.models import TIER_FREE, TIER_PREMIUM, TIERS
from tiersync.models.system_event import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
)
from tiersync.storage import SubscriptionStore

log = logging.getLogger(__name__)


class SubscriptionService:
    """
    Single place that turns a tier into rows.

    Free is never stored: moving to free deletes the user's row, and a user
    without a row reads back as free. Every real transition is written to the
    system-event log together with the actor that caused it.
    """

    def __init__(self, subscriptions: SubscriptionStore):
        self.subscriptions = subscriptions

    def get_user_subscription_tier(self, user_id: str) -> str:
        sub = self.subscriptions.get_subscription_by_user_id(user_id)
        if sub is None:
            return TIER_FREE
        return TIER_PREMIUM if sub.tier == TIER_PREMIUM else TIER_FREE

    def get_user_subscription(self, user_id: str) -> Dict[str, Any]:
        sub = self.subscriptions.get_subscription_by_user_id(user_id)
        if sub is None:
            return {"user_id": user_id, "tier": TIER_FREE, "created_at": None, "updated_at": None}
        return {
            "user_id": user_id,
            "tier": sub.tier,
            "created_at": sub.created_at.isoformat() if sub.created_at else None,
            "updated_at": sub.updated_at.isoformat() if sub.updated_at else None,
        }

    def set_user_subscription_tier(self, user_id: str, tier: str, actor_id: Optional[str] = None) -> None:
        """
        Move ``user_id`` to ``tier``. No-op (and no log entry) when nothing changes.
        ``actor_id`` defaults to the user, i.e. a self-service change.
        """
        if tier not in TIERS:
            raise ValueError(f"Unknown subscription tier: {tier!r}")

        log.info("subscription.set_tier", extra={"user_id": user_id, "tier": tier, "actor_id": actor_id})
        existing = self.subscriptions.get_subscription_by_user_id(user_id)

        if tier == TIER_FREE:
            if existing is None:
                return
            self.subscriptions.delete_subscription_by_user_id(user_id)
            self._log_event(
                SUBSCRIPTION_CANCELLED,
                user_id,
                existing.id,
                {"previousTier": existing.tier, "newTier": TIER_FREE},
                actor_id,
            )
            return

        if existing is None:
            sub_id = str(uuid.uuid4())
            self.subscriptions.create_subscription(id=sub_id, user_id=user_id, tier=tier)
            self._log_event(SUBSCRIPTION_CREATED, user_id, sub_id, {"tier": tier}, actor_id)
            return

        if existing.tier == tier:
            return

        previous = existing.tier
        self.subscriptions.update_subscription(user_id, tier)
        self._log_event(
            SUBSCRIPTION_UPDATED,
            user_id,
            existing.id,
            {"previousTier": previous, "newTier": tier},
            actor_id,
        )

    def _log_event(
        self,
        event_type: str,
        user_id: str,
        subscription_id: str,
        properties: Dict[str, Any],
        actor_id: Optional[str],
    ) -> None:
        actor = actor_id or user_id
        log.info(
            "subscription.event",
            extra={"event_type": event_type, "user_id": user_id, "subscription_id": subscription_id, "actor_id": actor},
        )
        self.subscriptions.create_system_event(
            id=str(uuid.uuid4()),
            event_type=event_type,
            user_id=user_id,
            actor_id=actor,
            entity_id=subscription_id,
            entity_type="subscription",
            properties=properties,
            description=describe_event(event_type, properties),
        )


def describe_event(event_type: str, properties: Dict[str, Any]) -> str:
    if event_type == SUBSCRIPTION_CREATED:
        return f"Subscription created with {properties.get('tier')} tier"
    if event_type == SUBSCRIPTION_UPDATED:
        return f"Subscription updated from {properties.get('previousTier')} to {properties.get('newTier')} tier"
    if event_type == SUBSCRIPTION_CANCELLED:
        return f"Subscription cancelled (moved from {properties.get('previousTier')} to free tier)"
    return f"Subscription event: {event_type}"
