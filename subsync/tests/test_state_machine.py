"""
Pure state machine transitions (no store, no gateway).
"""
from datetime import datetime, timezone
from typing import get_args

import pytest

from subsync.core.errors import ConflictError, NotFoundError
from subsync.features.reconciler.state_machine import (
    TRANSITIONS,
    RequestCancelAtPeriodEnd,
    RequestResume,
    map_gateway_status,
    reconcile,
)
from subsync.models.events import (
    CanonicalEvent,
    CheckoutCompleted,
    CustomerCancelRequest,
    CustomerResumeRequest,
    GatewaySubscriptionSnapshot,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionUpserted,
    Unhandled,
)
from subsync.models.subscription import PlanTier, Subscription, SubscriptionStatus

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _snapshot(**overrides):
    fields = dict(
        subscription_id="sub_1",
        customer_id="cus_1",
        price_id="price_pro",
        status="active",
        current_period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2026, 4, 1, tzinfo=timezone.utc),
        user_id="user_1",
    )
    fields.update(overrides)
    return GatewaySubscriptionSnapshot(**fields)


def _subscription(**overrides):
    fields = dict(
        user_id="user_1",
        external_subscription_id="sub_1",
        external_customer_id="cus_1",
        external_price_id="price_pro",
        plan=PlanTier.PRO,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2026, 4, 1, tzinfo=timezone.utc),
        calculations_used=3,
        calculations_limit=-1,
        api_calls_used=10,
        api_calls_limit=1000,
        version=4,
    )
    fields.update(overrides)
    return Subscription(**fields)


def test_every_canonical_event_has_a_transition():
    assert set(get_args(CanonicalEvent)) == set(TRANSITIONS)


def test_unknown_event_type_raises(catalog):
    with pytest.raises(TypeError):
        reconcile(None, object(), None, catalog, NOW)


@pytest.mark.parametrize("status,flag,expected", [
    ("active", False, SubscriptionStatus.ACTIVE),
    ("active", True, SubscriptionStatus.CANCELLING),
    ("canceled", False, SubscriptionStatus.CANCELED),
    ("cancelled", False, SubscriptionStatus.CANCELED),
    ("past_due", False, SubscriptionStatus.PAST_DUE),
    ("trialing", False, SubscriptionStatus.TRIALING),
    ("incomplete_expired", False, SubscriptionStatus.INACTIVE),
    ("unpaid", False, SubscriptionStatus.INACTIVE),
])
def test_gateway_status_mapping(status, flag, expected):
    assert map_gateway_status(status, flag) == expected


def test_checkout_completed_creates_state_from_snapshot(catalog):
    decision = reconcile(None, CheckoutCompleted(user_id="user_1", subscription_id="sub_1"), _snapshot(), catalog, NOW)

    state = decision.next_state
    assert state.user_id == "user_1"
    assert state.plan == PlanTier.PRO
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.api_calls_limit == 1000
    assert state.calculations_used == 0


def test_checkout_does_not_replace_live_subscription(catalog):
    current = _subscription(external_subscription_id="sub_old")
    decision = reconcile(current, CheckoutCompleted(user_id="user_1", subscription_id="sub_1"), _snapshot(), catalog, NOW)
    assert decision.next_state is None


def test_upsert_overwrites_gateway_fields_and_keeps_counters(catalog):
    current = _subscription()
    snapshot = _snapshot(price_id="price_team", status="past_due")

    state = reconcile(current, SubscriptionUpserted(subscription_id="sub_1"), snapshot, catalog, NOW).next_state

    assert state.plan == PlanTier.TEAM
    assert state.status == SubscriptionStatus.PAST_DUE
    assert state.api_calls_limit == 5000
    assert state.calculations_used == 3
    assert state.api_calls_used == 10


def test_upsert_never_moves_period_start_to_earlier_month(catalog):
    rolled = datetime(2026, 4, 2, tzinfo=timezone.utc)
    current = _subscription(current_period_start=rolled, calculations_used=0)

    state = reconcile(current, SubscriptionUpserted(subscription_id="sub_1"), _snapshot(), catalog, NOW).next_state

    assert state.current_period_start == rolled


def test_renewal_into_next_month_resets_usage_counters(catalog):
    renewed = _snapshot(
        current_period_start=datetime(2026, 4, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2026, 5, 1, tzinfo=timezone.utc),
    )

    state = reconcile(_subscription(), SubscriptionUpserted(subscription_id="sub_1"), renewed, catalog, NOW).next_state

    assert state.current_period_start == datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert state.calculations_used == 0
    assert state.api_calls_used == 0


def test_upsert_for_superseded_subscription_is_noop(catalog):
    current = _subscription(external_subscription_id="sub_new")
    decision = reconcile(current, SubscriptionUpserted(subscription_id="sub_1"), _snapshot(), catalog, NOW)
    assert decision.next_state is None
    assert decision.reason == "superseded_subscription"


def test_subscription_canceled_forces_canceled(catalog):
    canceled_at = datetime(2026, 3, 20, tzinfo=timezone.utc)
    snapshot = _snapshot(status="active", canceled_at=canceled_at)

    state = reconcile(_subscription(), SubscriptionCanceled(subscription_id="sub_1"), snapshot, catalog, NOW).next_state

    assert state.status == SubscriptionStatus.CANCELED
    assert state.canceled_at == canceled_at


def test_payment_failed_without_snapshot_sets_past_due(catalog):
    state = reconcile(_subscription(), PaymentFailed(subscription_id="sub_1"), None, catalog, NOW).next_state
    assert state.status == SubscriptionStatus.PAST_DUE


def test_payment_succeeded_records_payment(catalog):
    current = _subscription(status=SubscriptionStatus.PAST_DUE)
    state = reconcile(current, PaymentSucceeded(subscription_id="sub_1"), _snapshot(), catalog, NOW).next_state
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.last_payment_at == NOW


def test_cancel_request_sets_cancelling_and_requests_gateway(catalog):
    decision = reconcile(_subscription(), CustomerCancelRequest(user_id="user_1"), None, catalog, NOW)

    assert decision.next_state.status == SubscriptionStatus.CANCELLING
    assert decision.next_state.canceled_at == NOW
    assert decision.effects == (RequestCancelAtPeriodEnd("sub_1"),)


def test_cancel_request_when_already_cancelling_is_noop(catalog):
    current = _subscription(status=SubscriptionStatus.CANCELLING)
    decision = reconcile(current, CustomerCancelRequest(user_id="user_1"), None, catalog, NOW)
    assert decision.next_state is None
    assert decision.effects == ()


def test_cancel_request_without_subscription_raises(catalog):
    with pytest.raises(NotFoundError):
        reconcile(None, CustomerCancelRequest(user_id="user_1"), None, catalog, NOW)


def test_cancel_request_on_canceled_subscription_conflicts(catalog):
    current = _subscription(status=SubscriptionStatus.CANCELED)
    with pytest.raises(ConflictError):
        reconcile(current, CustomerCancelRequest(user_id="user_1"), None, catalog, NOW)


def test_resume_only_from_cancelling(catalog):
    with pytest.raises(ConflictError, match="not set to cancel"):
        reconcile(_subscription(), CustomerResumeRequest(user_id="user_1"), None, catalog, NOW)

    current = _subscription(status=SubscriptionStatus.CANCELLING, canceled_at=NOW, cancel_at_period_end=True)
    decision = reconcile(current, CustomerResumeRequest(user_id="user_1"), None, catalog, NOW)

    assert decision.next_state.status == SubscriptionStatus.ACTIVE
    assert decision.next_state.canceled_at is None
    assert decision.effects == (RequestResume("sub_1"),)


def test_unhandled_event_changes_nothing(catalog):
    decision = reconcile(_subscription(), Unhandled(event_type="customer.created"), None, catalog, NOW)
    assert decision.next_state is None
