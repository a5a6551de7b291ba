from .user import User
from .subscription import Subscription, TIER_FREE, TIER_PREMIUM, TIERS
from .system_event import SystemEvent
from .billing_event import BillingEvent, STATUS_PENDING, STATUS_PROCESSED, STATUS_FAILED, STATUSES

__all__ = [
    "User",
    "Subscription",
    "SystemEvent",
    "BillingEvent",
    "TIER_FREE",
    "TIER_PREMIUM",
    "TIERS",
    "STATUS_PENDING",
    "STATUS_PROCESSED",
    "STATUS_FAILED",
    "STATUSES",
]
