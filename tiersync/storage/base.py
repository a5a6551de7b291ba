"""
Storage interfaces consumed by the subscription service and the billing
reconciler. ``sql`` holds the SQLAlchemy implementations used by the app,
``memory`` the in-process ones used by tests and one-off scripts.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tiersync.models import BillingEvent, Subscription, SystemEvent, User


class UserStore(Protocol):
    def create_user(self, *, email: str, stripe_customer_id: Optional[str] = None) -> User: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_stripe_customer_id(self, customer_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> User: ...


class SubscriptionStore(Protocol):
    def get_subscription_by_user_id(self, user_id: str) -> Optional[Subscription]: ...

    def create_subscription(self, *, id: str, user_id: str, tier: str) -> Subscription: ...

    def update_subscription(self, user_id: str, tier: str) -> Subscription: ...

    def delete_subscription_by_user_id(self, user_id: str) -> None: ...

    def create_system_event(
        self,
        *,
        id: str,
        event_type: str,
        user_id: Optional[str],
        actor_id: Optional[str],
        entity_id: Optional[str],
        entity_type: Optional[str],
        properties: Dict[str, Any],
        description: Optional[str],
    ) -> SystemEvent: ...

    def list_system_events(self, user_id: Optional[str] = None) -> List[SystemEvent]: ...


class BillingEventStore(Protocol):
    def record_billing_event(
        self,
        *,
        stripe_event_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        stripe_event_created_at: datetime,
        user_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
    ) -> Tuple[BillingEvent, bool]:
        """
        Insert a pending row, or return the existing row for ``stripe_event_id``.
        The flag is True only for the caller whose insert created the row.
        """
        ...

    def get_billing_event_by_id(self, event_id: str) -> Optional[BillingEvent]: ...

    def get_billing_event_by_stripe_event_id(self, stripe_event_id: str) -> Optional[BillingEvent]: ...

    def claim_billing_event(self, event_id: str, *, stale_before: datetime) -> Optional[BillingEvent]:
        """
        Re-open a failed row (or a pending row last touched before ``stale_before``)
        for another attempt. Returns the row when this caller won the claim.
        """
        ...

    def update_billing_event(
        self,
        event_id: str,
        *,
        status: str,
        processed_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> BillingEvent: ...

    def list_billing_events(
        self,
        *,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BillingEvent]: ...
