from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from tiersync.extensions import db
from tiersync.models import BillingEvent, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSED
from tiersync.models._types import utcnow
from tiersync.storage import SqlBillingEventStore, SqlSubscriptionStore, SqlUserStore


def _record(store, stripe_event_id="evt_1", **kw):
    return store.record_billing_event(
        stripe_event_id=stripe_event_id,
        event_type=kw.pop("event_type", "invoice.paid"),
        event_data=kw.pop("event_data", {"id": stripe_event_id}),
        stripe_event_created_at=utcnow(),
        **kw,
    )


def test_record_is_insert_or_fetch(app):
    with app.app_context():
        store = SqlBillingEventStore()
        first, created = _record(store)
        second, created_again = _record(store, event_data={"other": True})

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert BillingEvent.query.count() == 1
        assert second.event_data == {"id": "evt_1"}


def test_stripe_event_id_is_unique_at_the_database(app):
    with app.app_context():
        _record(SqlBillingEventStore())
        db.session.add(
            BillingEvent(
                id="dupe",
                stripe_event_id="evt_1",
                event_type="invoice.paid",
                event_data={},
                stripe_event_created_at=utcnow(),
                status=STATUS_PENDING,
            )
        )
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_claim_reopens_failed_row_once(app):
    with app.app_context():
        store = SqlBillingEventStore()
        row, _ = _record(store)
        store.update_billing_event(row.id, status=STATUS_FAILED, processed_at=utcnow(), error="boom")

        claimed = store.claim_billing_event(row.id, stale_before=utcnow() - timedelta(minutes=5))
        assert claimed is not None
        assert claimed.status == STATUS_PENDING
        assert claimed.error is None
        assert claimed.processed_at is None
        assert claimed.retries == 1

        # Second concurrent redelivery loses
        assert store.claim_billing_event(row.id, stale_before=utcnow() - timedelta(minutes=5)) is None


def test_claim_skips_fresh_pending_and_processed(app):
    with app.app_context():
        store = SqlBillingEventStore()
        pending, _ = _record(store, "evt_p")
        done, _ = _record(store, "evt_d")
        store.update_billing_event(done.id, status=STATUS_PROCESSED, processed_at=utcnow())

        cutoff = utcnow() - timedelta(minutes=5)
        assert store.claim_billing_event(pending.id, stale_before=cutoff) is None
        assert store.claim_billing_event(done.id, stale_before=cutoff) is None


def test_claim_takes_over_stale_pending(app):
    with app.app_context():
        store = SqlBillingEventStore()
        row, _ = _record(store)
        db.session.execute(
            update(BillingEvent)
            .where(BillingEvent.id == row.id)
            .values(updated_at=utcnow() - timedelta(hours=1))
        )
        db.session.commit()

        claimed = store.claim_billing_event(row.id, stale_before=utcnow() - timedelta(minutes=5))
        assert claimed is not None
        assert claimed.retries == 1


def test_list_billing_events_filters(app):
    with app.app_context():
        store = SqlBillingEventStore()
        _record(store, "evt_a", stripe_customer_id="cus_a", user_id="u-a")
        b, _ = _record(store, "evt_b", stripe_customer_id="cus_b")
        store.update_billing_event(b.id, status=STATUS_FAILED, error="x")

        assert [e.stripe_event_id for e in store.list_billing_events(customer_id="cus_a")] == ["evt_a"]
        assert [e.stripe_event_id for e in store.list_billing_events(user_id="u-a")] == ["evt_a"]
        assert [e.stripe_event_id for e in store.list_billing_events(status=STATUS_FAILED)] == ["evt_b"]
        assert len(store.list_billing_events(limit=1)) == 1


def test_user_store_lookups(app):
    with app.app_context():
        users = SqlUserStore()
        u = users.create_user(email="Mixed@Example.com")
        assert users.get_user_by_email("mixed@example.com").id == u.id

        users.update_user(u.id, stripe_customer_id="cus_77")
        assert users.get_user_by_stripe_customer_id("cus_77").id == u.id
        assert users.get_user_by_stripe_customer_id("cus_missing") is None


def test_failed_commit_rolls_back_and_session_stays_usable(app):
    with app.app_context():
        users = SqlUserStore()
        users.create_user(email="a@example.com", stripe_customer_id="cus_taken")
        b = users.create_user(email="b@example.com")

        with pytest.raises(IntegrityError):
            users.update_user(b.id, stripe_customer_id="cus_taken")

        # Next write goes through without an explicit rollback
        store = SqlBillingEventStore()
        row, _ = _record(store)
        store.update_billing_event(row.id, status=STATUS_FAILED, error="boom")
        assert store.get_billing_event_by_id(row.id).status == STATUS_FAILED
        assert users.get_user_by_id(b.id).stripe_customer_id is None


def test_subscription_store_one_row_per_user(app):
    with app.app_context():
        u = SqlUserStore().create_user(email="one@example.com")
        subs = SqlSubscriptionStore()
        subs.create_subscription(id="s-1", user_id=u.id, tier="premium")

        with pytest.raises(IntegrityError):
            subs.create_subscription(id="s-2", user_id=u.id, tier="premium")
        db.session.rollback()

        subs.delete_subscription_by_user_id(u.id)
        assert subs.get_subscription_by_user_id(u.id) is None
