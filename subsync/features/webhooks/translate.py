"""
Webhook verification and translation.

Turns a raw, signed gateway request into a canonical event:
- verify_signature: HMAC check over the exact raw bytes (nothing is trusted before it passes)
- parse_envelope: id / type / data.object
- translate: gateway event type -> CanonicalEvent (unknown types -> Unhandled)
"""
import json
from typing import Any, Dict, Optional

import stripe

from subsync.core.errors import AuthenticationError, ValidationError
from subsync.models.events import (
    CanonicalEvent,
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionUpserted,
    Unhandled,
    WebhookEnvelope,
)


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str, tolerance: int = 300) -> None:
    """
    Check the gateway signature header against the raw request body.

    Raises:
        AuthenticationError: header missing, malformed, stale or not matching
    """
    if not signature_header:
        raise AuthenticationError("Missing webhook signature header")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationError("Webhook body is not valid UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError("Invalid webhook signature") from e


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    """
    Raises:
        ValidationError: body is not a JSON event with id and type
    """
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_id = body.get("id")
    event_type = body.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise ValidationError("Webhook event is missing id or type")

    data = body.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return WebhookEnvelope(
        event_id=event_id,
        event_type=event_type,
        payload=obj if isinstance(obj, dict) else {},
    )


def _object_id(value: Any) -> Optional[str]:
    # Expanded objects arrive as dicts; collapsed ones as bare ids
    if isinstance(value, dict):
        return value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _checkout_completed(obj: Dict[str, Any], event_type: str) -> CanonicalEvent:
    if obj.get("mode") not in (None, "subscription"):
        return Unhandled(event_type=event_type)
    user_id = (obj.get("metadata") or {}).get("user_id") or obj.get("client_reference_id")
    subscription_id = _object_id(obj.get("subscription"))
    if not user_id or not subscription_id:
        raise ValidationError("Checkout session is missing user_id or subscription")
    return CheckoutCompleted(
        user_id=str(user_id),
        subscription_id=subscription_id,
        customer_id=_object_id(obj.get("customer")),
    )


def _subscription_event(cls):
    def build(obj: Dict[str, Any], event_type: str) -> CanonicalEvent:
        subscription_id = _object_id(obj.get("id"))
        if not subscription_id:
            raise ValidationError("Subscription event is missing the subscription id")
        return cls(subscription_id=subscription_id)
    return build


def _invoice_event(cls):
    def build(obj: Dict[str, Any], event_type: str) -> CanonicalEvent:
        subscription_id = _invoice_subscription_id(obj)
        if not subscription_id:
            # One-off invoice, nothing to reconcile
            return Unhandled(event_type=event_type)
        return cls(subscription_id=subscription_id)
    return build


_TRANSLATORS = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.created": _subscription_event(SubscriptionUpserted),
    "customer.subscription.updated": _subscription_event(SubscriptionUpserted),
    "customer.subscription.deleted": _subscription_event(SubscriptionCanceled),
    "invoice.payment_failed": _invoice_event(PaymentFailed),
    "invoice.payment_succeeded": _invoice_event(PaymentSucceeded),
    "invoice.paid": _invoice_event(PaymentSucceeded),
}


def translate(envelope: WebhookEnvelope) -> CanonicalEvent:
    """
    Map a verified envelope to a canonical event.

    Raises:
        ValidationError: a recognized event type with a malformed payload
    """
    translator = _TRANSLATORS.get(envelope.event_type)
    if translator is None:
        return Unhandled(event_type=envelope.event_type)
    return translator(envelope.payload, envelope.event_type)
