"""
Stripe gateway mapping (no network: the stripe SDK calls are patched).
"""
from datetime import datetime, timezone

import pytest
import stripe

from subsync.core.errors import GatewayError, GatewayTimeoutError
from subsync.features.billing.stripe_gateway import StripeGateway, snapshot_from_stripe

PERIOD_START = 1772323200  # 2026-03-01T00:00:00Z
PERIOD_END = 1775001600  # 2026-04-01T00:00:00Z


def _stripe_subscription(**overrides):
    data = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "canceled_at": None,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "metadata": {"user_id": "user_1"},
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    data.update(overrides)
    return data


@pytest.fixture
def stripe_gateway():
    return StripeGateway("sk_test_123", timeout_seconds=2)


def test_snapshot_from_subscription_object():
    snapshot = snapshot_from_stripe(_stripe_subscription())

    assert snapshot.subscription_id == "sub_1"
    assert snapshot.price_id == "price_pro"
    assert snapshot.user_id == "user_1"
    assert snapshot.current_period_start == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert snapshot.current_period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_snapshot_reads_period_from_items():
    data = _stripe_subscription(
        current_period_start=None,
        current_period_end=None,
        customer={"id": "cus_expanded"},
        items={"data": [{
            "price": {"id": "price_team"},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }]},
    )

    snapshot = snapshot_from_stripe(data)

    assert snapshot.customer_id == "cus_expanded"
    assert snapshot.price_id == "price_team"
    assert snapshot.current_period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_retrieve_returns_snapshot(stripe_gateway, monkeypatch):
    monkeypatch.setattr(stripe.Subscription, "retrieve", lambda sub_id: _stripe_subscription(id=sub_id))

    snapshot = stripe_gateway.retrieve_subscription("sub_9")

    assert snapshot.subscription_id == "sub_9"


def test_retrieve_missing_subscription_returns_none(stripe_gateway, monkeypatch):
    def missing(sub_id):
        raise stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Subscription, "retrieve", missing)

    assert stripe_gateway.retrieve_subscription("sub_gone") is None


def test_connection_errors_become_timeouts(stripe_gateway, monkeypatch):
    def unreachable(*args, **kwargs):
        raise stripe.APIConnectionError("connection timed out")

    monkeypatch.setattr(stripe.Subscription, "modify", unreachable)
    monkeypatch.setattr(stripe.Subscription, "retrieve", unreachable)

    with pytest.raises(GatewayTimeoutError):
        stripe_gateway.request_cancel_at_period_end("sub_1")
    with pytest.raises(GatewayTimeoutError):
        stripe_gateway.retrieve_subscription("sub_1")


def test_api_errors_become_gateway_errors(stripe_gateway, monkeypatch):
    def rejected(*args, **kwargs):
        raise stripe.CardError("card declined", "card", "card_declined")

    monkeypatch.setattr(stripe.checkout.Session, "create", rejected)

    with pytest.raises(GatewayError) as exc:
        stripe_gateway.create_checkout_session(
            user_id="user_1",
            customer_id="cus_1",
            price_id="price_pro",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/no",
        )
    assert not isinstance(exc.value, GatewayTimeoutError)


def test_checkout_session_carries_user_metadata_and_idempotency_key(stripe_gateway, monkeypatch):
    captured = {}

    class _Session:
        id = "cs_1"
        url = "https://checkout.stripe.test/cs_1"

    def create(**kwargs):
        captured.update(kwargs)
        return _Session()

    monkeypatch.setattr(stripe.checkout.Session, "create", create)

    session = stripe_gateway.create_checkout_session(
        user_id="user_1",
        customer_id="cus_1",
        price_id="price_pro",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/no",
    )

    assert session.session_id == "cs_1"
    assert captured["subscription_data"] == {"metadata": {"user_id": "user_1"}}
    assert captured["idempotency_key"].startswith("checkout-")
