"""
Subscription state machine.

Pure mapping (current state, canonical event, gateway snapshot) ->
Decision(next state, gateway side effects). No I/O happens here; the
reconciler service reads the row, fetches the snapshot, runs the effects
and persists the decision.

Gateway-reported fields (status, period, cancel flag, price/plan) are always
overwritten from the canonical snapshot, never patched, so redelivered or
reordered events converge on the latest snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Type, Union

from subsync.core.errors import ConflictError, NotFoundError
from subsync.features.plans.catalog import PlanCatalog
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
from subsync.models.subscription import (
    Subscription,
    SubscriptionStatus,
    calendar_period_start,
    ensure_utc,
)


@dataclass(frozen=True)
class RequestCancelAtPeriodEnd:
    subscription_id: str


@dataclass(frozen=True)
class RequestResume:
    subscription_id: str


GatewayEffect = Union[RequestCancelAtPeriodEnd, RequestResume]


@dataclass(frozen=True)
class Decision:
    """Outcome of one transition. `next_state` None means leave the row alone."""
    next_state: Optional[Subscription]
    effects: Tuple[GatewayEffect, ...] = ()
    reason: str = "applied"


_GATEWAY_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
}

# Statuses a newer subscription of the same user may replace
_REPLACEABLE = {SubscriptionStatus.CANCELED, SubscriptionStatus.INACTIVE}

_CANCELLABLE = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
}


def map_gateway_status(status: str, cancel_at_period_end: bool = False) -> SubscriptionStatus:
    """Gateway status -> local status; an active subscription flagged to cancel is CANCELLING."""
    local = _GATEWAY_STATUS.get((status or "").lower(), SubscriptionStatus.INACTIVE)
    if local == SubscriptionStatus.ACTIVE and cancel_at_period_end:
        return SubscriptionStatus.CANCELLING
    return local


def overwrite_from_snapshot(
    current: Optional[Subscription],
    snapshot: GatewaySubscriptionSnapshot,
    catalog: PlanCatalog,
    *,
    user_id: str,
) -> Subscription:
    """Build the next state by overwriting every gateway-reported field."""
    plan = catalog.resolve(snapshot.price_id, subscription_id=snapshot.subscription_id)
    status = map_gateway_status(snapshot.status, snapshot.cancel_at_period_end)

    period_start = ensure_utc(snapshot.current_period_start)
    usage_reset = {}
    if current is not None:
        # A local usage rollover may already have advanced the period into a
        # later calendar month; never move it back (that would reset twice).
        stored = current.current_period_start
        if calendar_period_start(stored) > calendar_period_start(period_start):
            period_start = stored
        elif calendar_period_start(period_start) > calendar_period_start(stored):
            # Renewal reached us before any usage in the new month
            usage_reset = dict(calculations_used=0, api_calls_used=0)

    canceled_at = None
    if status in (SubscriptionStatus.CANCELLING, SubscriptionStatus.CANCELED):
        canceled_at = (current.canceled_at if current else None) or ensure_utc(snapshot.canceled_at)

    fields = dict(
        user_id=user_id,
        external_subscription_id=snapshot.subscription_id,
        external_customer_id=snapshot.customer_id or (current.external_customer_id if current else None),
        external_price_id=snapshot.price_id,
        plan=plan.tier,
        status=status,
        current_period_start=period_start,
        current_period_end=ensure_utc(snapshot.current_period_end),
        cancel_at_period_end=snapshot.cancel_at_period_end,
        calculations_limit=plan.calculations_limit,
        api_calls_limit=plan.api_calls_limit,
        canceled_at=canceled_at,
    )
    fields.update(usage_reset)
    if current is None:
        return Subscription(**fields)
    return current.model_copy(update=fields)


def _superseded(current: Optional[Subscription], snapshot: GatewaySubscriptionSnapshot) -> bool:
    """True when the event concerns an older subscription than the user's live one."""
    return (
        current is not None
        and current.external_subscription_id != snapshot.subscription_id
        and current.status not in _REPLACEABLE
    )


def _on_checkout_completed(current, event: CheckoutCompleted, snapshot, catalog, now) -> Decision:
    if snapshot is None:
        return Decision(None, reason="subscription_not_found_at_gateway")
    if current is not None and current.external_subscription_id != snapshot.subscription_id:
        if current.status not in _REPLACEABLE:
            return Decision(None, reason="user_has_live_subscription")
    snapshot = snapshot.model_copy(update={"customer_id": snapshot.customer_id or event.customer_id})
    return Decision(overwrite_from_snapshot(current, snapshot, catalog, user_id=event.user_id))


def _on_subscription_upserted(current, event: SubscriptionUpserted, snapshot, catalog, now) -> Decision:
    if snapshot is None:
        return Decision(None, reason="subscription_not_found_at_gateway")
    if _superseded(current, snapshot):
        return Decision(None, reason="superseded_subscription")
    user_id = current.user_id if current else snapshot.user_id
    if not user_id:
        return Decision(None, reason="unknown_user")
    return Decision(overwrite_from_snapshot(current, snapshot, catalog, user_id=user_id))


def _on_subscription_canceled(current, event: SubscriptionCanceled, snapshot, catalog, now) -> Decision:
    if current is None:
        return Decision(None, reason="unknown_subscription")
    if snapshot is not None and _superseded(current, snapshot):
        return Decision(None, reason="superseded_subscription")
    base = overwrite_from_snapshot(current, snapshot, catalog, user_id=current.user_id) if snapshot else current
    if current.status == SubscriptionStatus.CANCELED and current.canceled_at:
        canceled_at = current.canceled_at
    else:
        canceled_at = ensure_utc(snapshot.canceled_at) if snapshot and snapshot.canceled_at else now
    return Decision(base.model_copy(update={
        "status": SubscriptionStatus.CANCELED,
        "canceled_at": canceled_at,
    }))


def _on_payment_failed(current, event: PaymentFailed, snapshot, catalog, now) -> Decision:
    if current is None:
        return Decision(None, reason="unknown_subscription")
    if snapshot is None:
        return Decision(current.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))
    if _superseded(current, snapshot):
        return Decision(None, reason="superseded_subscription")
    return Decision(overwrite_from_snapshot(current, snapshot, catalog, user_id=current.user_id))


def _on_payment_succeeded(current, event: PaymentSucceeded, snapshot, catalog, now) -> Decision:
    if current is None:
        return Decision(None, reason="unknown_subscription")
    if snapshot is None:
        return Decision(current.model_copy(update={
            "status": SubscriptionStatus.ACTIVE,
            "last_payment_at": now,
        }))
    if _superseded(current, snapshot):
        return Decision(None, reason="superseded_subscription")
    next_state = overwrite_from_snapshot(current, snapshot, catalog, user_id=current.user_id)
    return Decision(next_state.model_copy(update={"last_payment_at": now}))


def _on_customer_cancel(current, event: CustomerCancelRequest, snapshot, catalog, now) -> Decision:
    if current is None:
        raise NotFoundError("No active subscription found")
    if current.status == SubscriptionStatus.CANCELLING:
        return Decision(None, reason="already_cancelling")
    if current.status not in _CANCELLABLE:
        raise ConflictError(f"Subscription cannot be cancelled from status {current.status.value}")
    return Decision(
        current.model_copy(update={
            "status": SubscriptionStatus.CANCELLING,
            "cancel_at_period_end": True,
            "canceled_at": now,
        }),
        effects=(RequestCancelAtPeriodEnd(current.external_subscription_id),),
    )


def _on_customer_resume(current, event: CustomerResumeRequest, snapshot, catalog, now) -> Decision:
    if current is None:
        raise NotFoundError("No subscription found")
    if current.status != SubscriptionStatus.CANCELLING:
        raise ConflictError("Subscription is not set to cancel")
    return Decision(
        current.model_copy(update={
            "status": SubscriptionStatus.ACTIVE,
            "cancel_at_period_end": False,
            "canceled_at": None,
        }),
        effects=(RequestResume(current.external_subscription_id),),
    )


def _on_unhandled(current, event: Unhandled, snapshot, catalog, now) -> Decision:
    return Decision(None, reason="unhandled_event_type")


Transition = Callable[
    [Optional[Subscription], CanonicalEvent, Optional[GatewaySubscriptionSnapshot], PlanCatalog, datetime],
    Decision,
]

TRANSITIONS: Dict[Type, Transition] = {
    CheckoutCompleted: _on_checkout_completed,
    SubscriptionUpserted: _on_subscription_upserted,
    SubscriptionCanceled: _on_subscription_canceled,
    PaymentFailed: _on_payment_failed,
    PaymentSucceeded: _on_payment_succeeded,
    CustomerCancelRequest: _on_customer_cancel,
    CustomerResumeRequest: _on_customer_resume,
    Unhandled: _on_unhandled,
}


def reconcile(
    current: Optional[Subscription],
    event: CanonicalEvent,
    snapshot: Optional[GatewaySubscriptionSnapshot],
    catalog: PlanCatalog,
    now: datetime,
) -> Decision:
    """
    Compute the transition for `event`.

    Raises:
        NotFoundError: customer action without a subscription
        ConflictError: customer action not allowed from the current status
        TypeError: event kind without a transition
    """
    transition = TRANSITIONS.get(type(event))
    if transition is None:
        raise TypeError(f"No transition defined for {type(event).__name__}")
    return transition(current, event, snapshot, catalog, ensure_utc(now))
