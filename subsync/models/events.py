"""
subsync/models/events.py

Canonical billing events.

Gateway webhooks and customer actions are translated into one of the
event kinds below before they reach the reconciler. `CanonicalEvent` is a
closed union: every member must have a transition in the state machine,
including `Unhandled`.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class GatewaySubscriptionSnapshot(BaseModel):
    """The gateway's complete, current view of one subscription."""
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    status: str  # gateway spelling: active, canceled, past_due, trialing, ...
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    user_id: Optional[str] = None  # from subscription metadata


class WebhookEnvelope(BaseModel):
    """Verified, parsed webhook body."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class CheckoutCompleted(_Event):
    kind: Literal["checkout_completed"] = "checkout_completed"
    user_id: str
    subscription_id: str
    customer_id: Optional[str] = None


class SubscriptionUpserted(_Event):
    kind: Literal["subscription_upserted"] = "subscription_upserted"
    subscription_id: str


class SubscriptionCanceled(_Event):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    subscription_id: str


class PaymentFailed(_Event):
    kind: Literal["payment_failed"] = "payment_failed"
    subscription_id: str


class PaymentSucceeded(_Event):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    subscription_id: str


class CustomerCancelRequest(_Event):
    kind: Literal["customer_cancel_request"] = "customer_cancel_request"
    user_id: str


class CustomerResumeRequest(_Event):
    kind: Literal["customer_resume_request"] = "customer_resume_request"
    user_id: str


class Unhandled(_Event):
    kind: Literal["unhandled"] = "unhandled"
    event_type: str


CanonicalEvent = Union[
    CheckoutCompleted,
    SubscriptionUpserted,
    SubscriptionCanceled,
    PaymentFailed,
    PaymentSucceeded,
    CustomerCancelRequest,
    CustomerResumeRequest,
    Unhandled,
]

# Events that name a gateway subscription and are resolved against its snapshot
GATEWAY_EVENTS = (
    CheckoutCompleted,
    SubscriptionUpserted,
    SubscriptionCanceled,
    PaymentFailed,
    PaymentSucceeded,
)
