"""
Stripe implementation of the PaymentGateway protocol.

Maps Stripe objects into gateway snapshots and Stripe exceptions into the
app error taxonomy (GatewayError / GatewayTimeoutError).
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from subsync.core.config import settings
from subsync.core.errors import GatewayError, GatewayTimeoutError
from subsync.core.logging import log_event
from subsync.features.billing.gateway import CheckoutSession
from subsync.models.events import GatewaySubscriptionSnapshot


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _idempotency_key(prefix: str, params: Dict[str, Any]) -> str:
    digest = hashlib.sha256(json.dumps(params, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:32]}"


def snapshot_from_stripe(data: Dict[str, Any]) -> GatewaySubscriptionSnapshot:
    """
    Build a snapshot from a Stripe subscription object (dict form).

    Newer API versions report the billing period per subscription item
    instead of on the subscription itself; both shapes are accepted.
    """
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    period_start = data.get("current_period_start") or first_item.get("current_period_start")
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return GatewaySubscriptionSnapshot(
        subscription_id=data["id"],
        customer_id=customer,
        price_id=price.get("id") if isinstance(price, dict) else price,
        status=data.get("status") or "incomplete",
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        canceled_at=_ts(data.get("canceled_at")),
        user_id=(data.get("metadata") or {}).get("user_id"),
    )


class StripeGateway:
    """Stripe-backed PaymentGateway."""

    def __init__(self, secret_key: str, timeout_seconds: Optional[float] = None, max_network_retries: int = 2):
        stripe.api_key = secret_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        )

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.APIConnectionError as e:
            log_event("warning", "gateway.timeout", error_code="gateway_timeout", extra={"operation": operation})
            raise GatewayTimeoutError(f"Payment gateway unreachable during {operation}") from e
        except stripe.StripeError as e:
            log_event(
                "error",
                "gateway.error",
                error_code="gateway_error",
                extra={"operation": operation, "stripe_code": getattr(e, "code", None)},
            )
            raise GatewayError(f"Payment gateway call {operation} failed: {e.user_message or e}") from e

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = self._call(
            "ensure_customer",
            stripe.Customer.create,
            idempotency_key=_idempotency_key("customer", {"user_id": user_id}),
            **params,
        )
        return customer.id

    def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        params = dict(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"user_id": user_id},
            subscription_data={"metadata": {"user_id": user_id}},
        )
        session = self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            idempotency_key=_idempotency_key("checkout", params),
            **params,
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_customer_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create_customer_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def request_cancel_at_period_end(self, subscription_id: str) -> None:
        self._call(
            "request_cancel_at_period_end",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    def request_resume(self, subscription_id: str) -> None:
        self._call(
            "request_resume",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )

    def retrieve_subscription(self, subscription_id: str) -> Optional[GatewaySubscriptionSnapshot]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise GatewayError(f"Payment gateway call retrieve_subscription failed: {e}") from e
        except stripe.APIConnectionError as e:
            raise GatewayTimeoutError("Payment gateway unreachable during retrieve_subscription") from e
        except stripe.StripeError as e:
            raise GatewayError(f"Payment gateway call retrieve_subscription failed: {e}") from e
        return snapshot_from_stripe(_as_dict(subscription))
