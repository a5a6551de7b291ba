from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tiersync.extensions import db
from tiersync.models import (
    BillingEvent,
    Subscription,
    SystemEvent,
    User,
    STATUS_FAILED,
    STATUS_PENDING,
)
from tiersync.models._types import utcnow


def _commit() -> None:
    try:
        db.session.commit()
    except SQLAlchemyError:
        # Leave the session usable for the caller's failure bookkeeping
        db.session.rollback()
        raise


class SqlUserStore:
    def create_user(self, *, email: str, stripe_customer_id: Optional[str] = None) -> User:
        user = User(id=str(uuid.uuid4()), email=email.strip().lower(), stripe_customer_id=stripe_customer_id)
        db.session.add(user)
        _commit()
        return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return db.session.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return User.query.filter_by(email=email.strip().lower()).one_or_none()

    def get_user_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        return User.query.filter_by(stripe_customer_id=customer_id).one_or_none()

    def update_user(self, user_id: str, **fields: Any) -> User:
        user = db.session.get(User, user_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        for key, value in fields.items():
            setattr(user, key, value)
        _commit()
        return user


class SqlSubscriptionStore:
    def get_subscription_by_user_id(self, user_id: str) -> Optional[Subscription]:
        return Subscription.query.filter_by(user_id=user_id).one_or_none()

    def create_subscription(self, *, id: str, user_id: str, tier: str) -> Subscription:
        sub = Subscription(id=id, user_id=user_id, tier=tier)
        db.session.add(sub)
        _commit()
        return sub

    def update_subscription(self, user_id: str, tier: str) -> Subscription:
        sub = self.get_subscription_by_user_id(user_id)
        if sub is None:
            raise LookupError(f"No subscription for user {user_id}")
        sub.tier = tier
        _commit()
        return sub

    def delete_subscription_by_user_id(self, user_id: str) -> None:
        Subscription.query.filter_by(user_id=user_id).delete()
        _commit()

    def create_system_event(self, **fields: Any) -> SystemEvent:
        ev = SystemEvent(**fields)
        db.session.add(ev)
        _commit()
        return ev

    def list_system_events(self, user_id: Optional[str] = None) -> List[SystemEvent]:
        q = SystemEvent.query
        if user_id is not None:
            q = q.filter_by(user_id=user_id)
        return q.order_by(SystemEvent.created_at.asc()).all()


class SqlBillingEventStore:
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
        row = BillingEvent(
            id=str(uuid.uuid4()),
            stripe_event_id=stripe_event_id,
            event_type=event_type,
            event_data=event_data,
            stripe_event_created_at=stripe_event_created_at,
            user_id=user_id,
            stripe_customer_id=stripe_customer_id,
            status=STATUS_PENDING,
            retries=0,
        )
        db.session.add(row)
        try:
            _commit()
            return row, True
        except IntegrityError:
            # Unique index on stripe_event_id: someone else recorded it first
            existing = self.get_billing_event_by_stripe_event_id(stripe_event_id)
            if existing is None:
                raise
            return existing, False

    def get_billing_event_by_id(self, event_id: str) -> Optional[BillingEvent]:
        return db.session.get(BillingEvent, event_id)

    def get_billing_event_by_stripe_event_id(self, stripe_event_id: str) -> Optional[BillingEvent]:
        return BillingEvent.query.filter_by(stripe_event_id=stripe_event_id).one_or_none()

    def claim_billing_event(self, event_id: str, *, stale_before: datetime) -> Optional[BillingEvent]:
        stmt = (
            update(BillingEvent)
            .where(
                BillingEvent.id == event_id,
                or_(
                    BillingEvent.status == STATUS_FAILED,
                    and_(BillingEvent.status == STATUS_PENDING, BillingEvent.updated_at < stale_before),
                ),
            )
            .values(
                status=STATUS_PENDING,
                error=None,
                processed_at=None,
                retries=BillingEvent.retries + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        _commit()
        if result.rowcount != 1:
            return None
        return db.session.get(BillingEvent, event_id, populate_existing=True)

    def update_billing_event(
        self,
        event_id: str,
        *,
        status: str,
        processed_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> BillingEvent:
        if not db.session.is_active:
            db.session.rollback()
        row = db.session.get(BillingEvent, event_id)
        if row is None:
            raise LookupError(f"Billing event {event_id} not found")
        row.status = status
        row.processed_at = processed_at
        row.error = error
        _commit()
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
        q = BillingEvent.query
        if user_id is not None:
            q = q.filter(BillingEvent.user_id == user_id)
        if customer_id is not None:
            q = q.filter(BillingEvent.stripe_customer_id == customer_id)
        if status is not None:
            q = q.filter(BillingEvent.status == status)
        return q.order_by(BillingEvent.created_at.desc()).offset(offset).limit(limit).all()
