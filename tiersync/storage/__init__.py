from .base import BillingEventStore, SubscriptionStore, UserStore
from .memory import InMemoryBillingEventStore, InMemorySubscriptionStore, InMemoryUserStore
from .sql import SqlBillingEventStore, SqlSubscriptionStore, SqlUserStore

__all__ = [
    "BillingEventStore",
    "SubscriptionStore",
    "UserStore",
    "InMemoryBillingEventStore",
    "InMemorySubscriptionStore",
    "InMemoryUserStore",
    "SqlBillingEventStore",
    "SqlSubscriptionStore",
    "SqlUserStore",
]
