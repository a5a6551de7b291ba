import pytest

from tiersync.models import BillingEvent, STATUS_FAILED, STATUS_PROCESSED
from tiersync.models._types import utcnow
from tiersync.storage import SqlBillingEventStore, SqlSubscriptionStore, SqlUserStore

from helpers import FakeGateway, stripe_subscription


@pytest.fixture()
def runner(app):
    return app.test_cli_runner()


@pytest.fixture()
def fake_gateway(monkeypatch):
    gw = FakeGateway()
    monkeypatch.setattr("tiersync.billing._gateway", lambda: gw)
    return gw


def test_users_create_and_duplicate(app, runner):
    result = runner.invoke(args=["users", "create", "--email", "ops@example.com", "--stripe-customer-id", "cus_1"])
    assert result.exit_code == 0, result.output
    assert "email=ops@example.com" in result.output

    result = runner.invoke(args=["users", "create", "--email", "OPS@example.com"])
    assert result.exit_code != 0
    assert "User already exists" in result.output


def test_set_tier_and_show(app, runner):
    runner.invoke(args=["users", "create", "--email", "ops@example.com"])

    result = runner.invoke(args=["subscriptions", "set-tier", "ops@example.com", "premium"])
    assert result.exit_code == 0, result.output
    assert "free -> premium" in result.output

    result = runner.invoke(args=["subscriptions", "show", "ops@example.com"])
    assert '"tier": "premium"' in result.output

    with app.app_context():
        uid = SqlUserStore().get_user_by_email("ops@example.com").id
        ev = SqlSubscriptionStore().list_system_events(uid)[0]
        assert ev.actor_id == "admin"


def test_set_tier_rejects_unknown_tier(runner):
    result = runner.invoke(args=["subscriptions", "set-tier", "ops@example.com", "gold"])
    assert result.exit_code != 0


def test_unknown_user(runner):
    result = runner.invoke(args=["billing", "sync", "nobody@example.com"])
    assert result.exit_code != 0
    assert "User not found" in result.output


def test_billing_sync(app, runner, fake_gateway):
    runner.invoke(args=["users", "create", "--email", "ops@example.com", "--stripe-customer-id", "cus_1"])
    fake_gateway.subscriptions["sub_1"] = stripe_subscription("sub_1")

    result = runner.invoke(args=["billing", "sync", "ops@example.com"])

    assert result.exit_code == 0, result.output
    assert "premium" in result.output


def test_billing_replay_failed_event(app, runner, fake_gateway):
    runner.invoke(args=["users", "create", "--email", "ops@example.com", "--stripe-customer-id", "cus_1"])
    fake_gateway.subscriptions["sub_1"] = stripe_subscription("sub_1")
    event = {
        "id": "evt_9",
        "type": "invoice.paid",
        "created": 1_700_000_000,
        "data": {"object": {"id": "in_9", "customer": "cus_1", "subscription": "sub_1"}},
    }
    with app.app_context():
        store = SqlBillingEventStore()
        row, _ = store.record_billing_event(
            stripe_event_id="evt_9",
            event_type="invoice.paid",
            event_data=event,
            stripe_event_created_at=utcnow(),
            stripe_customer_id="cus_1",
        )
        store.update_billing_event(row.id, status=STATUS_FAILED, processed_at=utcnow(), error="boom")

    result = runner.invoke(args=["billing", "replay", "evt_9"])

    assert result.exit_code == 0, result.output
    assert "processed" in result.output
    with app.app_context():
        assert BillingEvent.query.filter_by(stripe_event_id="evt_9").one().status == STATUS_PROCESSED


def test_billing_replay_unknown_event(runner):
    result = runner.invoke(args=["billing", "replay", "evt_missing"])
    assert result.exit_code != 0
    assert "No billing event" in result.output


def test_billing_events_listing(app, runner):
    with app.app_context():
        store = SqlBillingEventStore()
        row, _ = store.record_billing_event(
            stripe_event_id="evt_f",
            event_type="invoice.paid",
            event_data={},
            stripe_event_created_at=utcnow(),
            stripe_customer_id="cus_1",
        )
        store.update_billing_event(row.id, status=STATUS_FAILED, error="boom")

    result = runner.invoke(args=["billing", "events", "--status", "failed"])
    assert "evt_f invoice.paid failed" in result.output
    assert "error='boom'" in result.output

    result = runner.invoke(args=["billing", "events", "--status", "processed"])
    assert "No billing events" in result.output
