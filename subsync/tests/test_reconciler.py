"""
Reconciler runner against the state store and the fake gateway.
"""
import itertools
import logging

import pytest

from subsync.core.database import reset_database
from subsync.core.errors import ConflictError, GatewayTimeoutError
from subsync.core.metrics import reconciler_transitions_total
from subsync.features.reconciler.service import apply_event
from subsync.features.subscriptions import store
from subsync.models.events import (
    CheckoutCompleted,
    CustomerCancelRequest,
    CustomerResumeRequest,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionUpserted,
)
from subsync.models.subscription import PlanTier, SubscriptionStatus


def _checkout(gateway, now, user_id="user_1", sub_id="sub_1", **snapshot):
    gateway.put_subscription(sub_id, user_id=user_id, **snapshot)
    return apply_event(CheckoutCompleted(user_id=user_id, subscription_id=sub_id, customer_id="cus_test"), now=now)


def test_checkout_completed_creates_subscription(gateway, now):
    stored = _checkout(gateway, now)

    assert stored.version == 1
    row = store.get_subscription("user_1")
    assert row.plan == PlanTier.PRO
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.external_customer_id == "cus_test"
    assert reconciler_transitions_total.value({"event": "checkout_completed", "status": "ACTIVE"}) == 1


def test_same_event_twice_does_not_change_state(gateway, now):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", price_id="price_team")

    first = apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)
    second = apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)

    assert first == second
    assert store.get_subscription("user_1").version == 2


def test_upsert_before_checkout_creates_row_from_metadata(gateway, now):
    gateway.put_subscription("sub_1", user_id="user_1", price_id="price_team")

    apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)
    apply_event(CheckoutCompleted(user_id="user_1", subscription_id="sub_1"), now=now)

    row = store.get_subscription("user_1")
    assert row.plan == PlanTier.TEAM
    assert row.version == 1


def test_upsert_without_known_user_is_noop(gateway, now):
    gateway.put_subscription("sub_orphan", user_id=None)
    assert apply_event(SubscriptionUpserted(subscription_id="sub_orphan"), now=now) is None
    assert store.get_subscription_by_external_id("sub_orphan") is None


def test_events_converge_in_any_order(gateway, now):
    events = [
        SubscriptionUpserted(subscription_id="sub_1"),
        PaymentFailed(subscription_id="sub_1"),
        PaymentSucceeded(subscription_id="sub_1"),
    ]
    final_states = set()
    for order in itertools.permutations(events):
        reset_database()
        _checkout(gateway, now, price_id="price_pro", status="active")
        # Latest canonical snapshot, regardless of which event is delivered first
        gateway.put_subscription("sub_1", user_id="user_1", price_id="price_team", status="past_due")
        for event in order:
            apply_event(event, now=now)
        row = store.get_subscription("user_1")
        final_states.add(row.model_copy(update={"version": 0}))

    assert len(final_states) == 1
    (state,) = final_states
    assert state.status == SubscriptionStatus.PAST_DUE
    assert state.plan == PlanTier.TEAM


def test_unmapped_price_applies_default_plan_and_warns(gateway, now, caplog):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", price_id="price_legacy")
    caplog.set_level(logging.WARNING, logger="subsync")

    apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)

    row = store.get_subscription("user_1")
    assert row.plan == PlanTier.PRO
    assert row.external_price_id == "price_legacy"
    assert any(r.getMessage() == "plan_catalog.unmapped_price" for r in caplog.records)


def test_subscription_deleted_marks_canceled(gateway, now):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", status="canceled", canceled_at=now)

    apply_event(SubscriptionCanceled(subscription_id="sub_1"), now=now)

    row = store.get_subscription("user_1")
    assert row.status == SubscriptionStatus.CANCELED
    assert row.canceled_at == now


def test_payment_failed_falls_back_to_past_due_when_gateway_lost_subscription(gateway, now):
    _checkout(gateway, now)
    del gateway.subscriptions["sub_1"]

    apply_event(PaymentFailed(subscription_id="sub_1"), now=now)

    assert store.get_subscription("user_1").status == SubscriptionStatus.PAST_DUE


def test_new_checkout_replaces_canceled_subscription(gateway, now):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", status="canceled")
    apply_event(SubscriptionCanceled(subscription_id="sub_1"), now=now)

    _checkout(gateway, now, sub_id="sub_2", price_id="price_enterprise")

    row = store.get_subscription("user_1")
    assert row.external_subscription_id == "sub_2"
    assert row.plan == PlanTier.ENTERPRISE
    assert row.status == SubscriptionStatus.ACTIVE


def test_cancel_then_resume_round_trip(gateway, now):
    _checkout(gateway, now)

    apply_event(CustomerCancelRequest(user_id="user_1"), now=now)
    row = store.get_subscription("user_1")
    assert row.status == SubscriptionStatus.CANCELLING
    assert gateway.subscriptions["sub_1"].cancel_at_period_end is True

    # Gateway confirms the flag through a webhook
    apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)
    assert store.get_subscription("user_1").status == SubscriptionStatus.CANCELLING

    apply_event(CustomerResumeRequest(user_id="user_1"), now=now)
    row = store.get_subscription("user_1")
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.canceled_at is None
    assert gateway.call_names().count("request_resume") == 1


def test_gateway_failure_leaves_state_untouched(gateway, now):
    _checkout(gateway, now)
    gateway.fail_with = GatewayTimeoutError("timed out")

    with pytest.raises(GatewayTimeoutError):
        apply_event(CustomerCancelRequest(user_id="user_1"), now=now)

    row = store.get_subscription("user_1")
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.version == 1


def test_version_conflicts_are_retried_then_surface(gateway, now, monkeypatch):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", price_id="price_team")

    def always_conflict(current, next_state, now=None):
        raise store.VersionConflict("lost the race")

    monkeypatch.setattr(store, "write_subscription", always_conflict)

    with pytest.raises(ConflictError):
        apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)


def test_stale_version_write_is_rejected(gateway, now):
    stored = _checkout(gateway, now)
    store.compare_and_set(stored, stored.model_copy(update={"calculations_used": 1}), now=now)

    with pytest.raises(store.VersionConflict):
        store.compare_and_set(stored, stored.model_copy(update={"calculations_used": 2}), now=now)

    assert store.get_subscription("user_1").calculations_used == 1


def test_conflict_then_success_is_applied_once(gateway, now, monkeypatch):
    _checkout(gateway, now)
    gateway.put_subscription("sub_1", user_id="user_1", price_id="price_team")
    real_write = store.write_subscription
    attempts = []

    def flaky_write(current, next_state, now=None):
        attempts.append(1)
        if len(attempts) == 1:
            raise store.VersionConflict("lost the race")
        return real_write(current, next_state, now=now)

    monkeypatch.setattr(store, "write_subscription", flaky_write)

    apply_event(SubscriptionUpserted(subscription_id="sub_1"), now=now)

    assert len(attempts) == 2
    row = store.get_subscription("user_1")
    assert row.plan == PlanTier.TEAM
    assert row.version == 2
