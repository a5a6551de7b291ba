from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from tiersync.models import (
    BillingEvent,
    Subscription,
    SystemEvent,
    User,
    STATUS_FAILED,
    STATUS_PENDING,
)
from tiersync.models._types import utcnow


class InMemoryUserStore:
    def __init__(self):
        self._users: Dict[str, User] = {}

    def create_user(self, *, email: str, stripe_customer_id: Optional[str] = None) -> User:
        self._check_customer_unique(stripe_customer_id)
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            stripe_customer_id=stripe_customer_id,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self._users[user.id] = user
        return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        return next((u for u in self._users.values() if u.email == email), None)

    def get_user_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.stripe_customer_id == customer_id), None)

    def update_user(self, user_id: str, **fields: Any) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        if "stripe_customer_id" in fields:
            self._check_customer_unique(fields["stripe_customer_id"], exclude=user_id)
        for key, value in fields.items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        return user

    def _check_customer_unique(self, customer_id: Optional[str], exclude: Optional[str] = None) -> None:
        # Mirrors the unique index on users.stripe_customer_id
        if not customer_id:
            return
        if any(u.stripe_customer_id == customer_id and u.id != exclude for u in self._users.values()):
            raise ValueError(f"Stripe customer {customer_id} already belongs to another user")


class InMemorySubscriptionStore:
    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}  # user_id -> row
        self._system_events: List[SystemEvent] = []

    def get_subscription_by_user_id(self, user_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(user_id)

    def create_subscription(self, *, id: str, user_id: str, tier: str) -> Subscription:
        if user_id in self._subscriptions:
            raise ValueError(f"Subscription for user {user_id} already exists")
        now = utcnow()
        sub = Subscription(id=id, user_id=user_id, tier=tier, created_at=now, updated_at=now)
        self._subscriptions[user_id] = sub
        return sub

    def update_subscription(self, user_id: str, tier: str) -> Subscription:
        sub = self._subscriptions.get(user_id)
        if sub is None:
            raise LookupError(f"No subscription for user {user_id}")
        sub.tier = tier
        sub.updated_at = utcnow()
        return sub

    def delete_subscription_by_user_id(self, user_id: str) -> None:
        self._subscriptions.pop(user_id, None)

    def create_system_event(self, **fields: Any) -> SystemEvent:
        ev = SystemEvent(created_at=utcnow(), **fields)
        self._system_events.append(ev)
        return ev

    def list_system_events(self, user_id: Optional[str] = None) -> List[SystemEvent]:
        return [e for e in self._system_events if user_id is None or e.user_id == user_id]


class InMemoryBillingEventStore:
    """Lock-guarded so record/claim keep the same atomicity as the unique index."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, BillingEvent] = {}
        self._by_stripe_id: Dict[str, str] = {}

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
        with self._lock:
            existing_id = self._by_stripe_id.get(stripe_event_id)
            if existing_id is not None:
                return self._events[existing_id], False
            now = utcnow()
            row = BillingEvent(
                id=str(uuid.uuid4()),
                stripe_event_id=stripe_event_id,
                event_type=event_type,
                event_data=event_data,
                stripe_event_created_at=stripe_event_created_at,
                user_id=user_id,
                stripe_customer_id=stripe_customer_id,
                status=STATUS_PENDING,
                processed_at=None,
                error=None,
                retries=0,
                created_at=now,
                updated_at=now,
            )
            self._events[row.id] = row
            self._by_stripe_id[stripe_event_id] = row.id
            return row, True

    def get_billing_event_by_id(self, event_id: str) -> Optional[BillingEvent]:
        return self._events.get(event_id)

    def get_billing_event_by_stripe_event_id(self, stripe_event_id: str) -> Optional[BillingEvent]:
        event_id = self._by_stripe_id.get(stripe_event_id)
        return self._events.get(event_id) if event_id else None

    def claim_billing_event(self, event_id: str, *, stale_before: datetime) -> Optional[BillingEvent]:
        with self._lock:
            row = self._events.get(event_id)
            if row is None:
                return None
            stale = row.status == STATUS_PENDING and row.updated_at < stale_before
            if row.status != STATUS_FAILED and not stale:
                return None
            row.status = STATUS_PENDING
            row.error = None
            row.processed_at = None
            row.retries = (row.retries or 0) + 1
            row.updated_at = utcnow()
            return row

    def update_billing_event(
        self,
        event_id: str,
        *,
        status: str,
        processed_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> BillingEvent:
        with self._lock:
            row = self._events.get(event_id)
            if row is None:
                raise LookupError(f"Billing event {event_id} not found")
            row.status = status
            row.processed_at = processed_at
            row.error = error
            row.updated_at = utcnow()
            return row

    def list_billing_events(
        self,
        *,
        user_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BillingEvent]:
        rows = [
            e
            for e in self._events.values()
            if (user_id is None or e.user_id == user_id)
            and (customer_id is None or e.stripe_customer_id == customer_id)
            and (status is None or e.status == status)
        ]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[offset:offset + limit]

    # Test helper
    def all_events(self) -> List[BillingEvent]:
        return list(self._events.values())
