import pytest

from tiersync.models import TIER_FREE, TIER_PREMIUM
from tiersync.models.system_event import SUBSCRIPTION_CANCELLED, SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED


def test_user_without_row_reads_as_free(subscriptions):
    assert subscriptions.get_user_subscription_tier("u-1") == TIER_FREE
    assert subscriptions.get_user_subscription("u-1")["tier"] == TIER_FREE


def test_upgrade_creates_row_and_logs_created(subscriptions, subscription_store):
    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM, "stripe")

    assert subscriptions.get_user_subscription_tier("u-1") == TIER_PREMIUM
    events = subscription_store.list_system_events("u-1")
    assert [e.event_type for e in events] == [SUBSCRIPTION_CREATED]
    assert events[0].actor_id == "stripe"
    assert events[0].properties == {"tier": TIER_PREMIUM}
    assert events[0].entity_type == "subscription"
    assert events[0].description == "Subscription created with premium tier"


def test_upgrade_twice_is_a_silent_noop(subscriptions, subscription_store):
    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM, "stripe")
    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM, "stripe")

    assert len(subscription_store.list_system_events("u-1")) == 1


def test_downgrade_deletes_row_and_logs_cancelled(subscriptions, subscription_store):
    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM, "stripe")
    subscriptions.set_user_subscription_tier("u-1", TIER_FREE, "stripe")

    assert subscription_store.get_subscription_by_user_id("u-1") is None
    last = subscription_store.list_system_events("u-1")[-1]
    assert last.event_type == SUBSCRIPTION_CANCELLED
    assert last.properties == {"previousTier": TIER_PREMIUM, "newTier": TIER_FREE}
    assert last.description == "Subscription cancelled (moved from premium to free tier)"


def test_downgrade_without_row_logs_nothing(subscriptions, subscription_store):
    subscriptions.set_user_subscription_tier("u-1", TIER_FREE)
    assert subscription_store.list_system_events() == []


def test_actor_defaults_to_user(subscriptions, subscription_store):
    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM)
    assert subscription_store.list_system_events("u-1")[0].actor_id == "u-1"


def test_row_with_other_tier_is_updated(subscriptions, subscription_store):
    # Rows written by an older tier scheme still upgrade cleanly
    subscription_store.create_subscription(id="s-legacy", user_id="u-1", tier="basic")

    subscriptions.set_user_subscription_tier("u-1", TIER_PREMIUM, "sync")

    assert subscription_store.get_subscription_by_user_id("u-1").tier == TIER_PREMIUM
    ev = subscription_store.list_system_events("u-1")[-1]
    assert ev.event_type == SUBSCRIPTION_UPDATED
    assert ev.properties == {"previousTier": "basic", "newTier": TIER_PREMIUM}
    assert ev.entity_id == "s-legacy"


def test_unknown_tier_is_rejected(subscriptions):
    with pytest.raises(ValueError):
        subscriptions.set_user_subscription_tier("u-1", "gold")
