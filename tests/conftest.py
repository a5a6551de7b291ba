import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import timedelta

import pytest
from tiersync import create_app
from tiersync.billing import BillingReconciler
from tiersync.extensions import db
from tiersync.services.subscriptions import SubscriptionService
from tiersync.storage import InMemoryBillingEventStore, InMemorySubscriptionStore, InMemoryUserStore

from helpers import PREMIUM_PRODUCT, FakeGateway


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        STRIPE_SECRET_KEY="sk_test_x",
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
        STRIPE_PREMIUM_PRODUCT_ID=PREMIUM_PRODUCT,
        STRIPE_PREMIUM_PRICE_ID="price_premium_test",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


# ---- in-memory wiring for reconciler unit tests ----

@pytest.fixture()
def users():
    return InMemoryUserStore()


@pytest.fixture()
def subscription_store():
    return InMemorySubscriptionStore()


@pytest.fixture()
def subscriptions(subscription_store):
    return SubscriptionService(subscription_store)


@pytest.fixture()
def billing_events():
    return InMemoryBillingEventStore()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def reconciler(billing_events, users, subscriptions, gateway):
    return BillingReconciler(
        billing_events=billing_events,
        users=users,
        subscriptions=subscriptions,
        gateway=gateway,
        premium_product_id=PREMIUM_PRODUCT,
        claim_ttl=timedelta(minutes=5),
    )


@pytest.fixture()
def customer(users):
    """A user already linked to Stripe customer ``cus_1``."""
    return users.create_user(email="buyer@example.com", stripe_customer_id="cus_1")
