"""
Reconciler runner.

Applies one canonical event end to end:
1. Read the current subscription row
2. Fetch the canonical gateway snapshot (gateway-originated events)
3. Compute the transition (pure state machine)
4. Run gateway side effects (customer actions)
5. Compare-and-set the row; on a version conflict start over from 1
"""
from datetime import datetime
from typing import Optional, Tuple

from subsync.core.errors import BillingDisabledError
from subsync.core.logging import log_event
from subsync.core.metrics import reconciler_transitions_total
from subsync.features.billing.gateway import PaymentGateway, get_gateway
from subsync.features.plans.catalog import PlanCatalog, get_catalog
from subsync.features.reconciler.state_machine import (
    Decision,
    RequestCancelAtPeriodEnd,
    RequestResume,
    reconcile,
)
from subsync.features.subscriptions import store
from subsync.models.events import (
    GATEWAY_EVENTS,
    CanonicalEvent,
    CheckoutCompleted,
    CustomerCancelRequest,
    CustomerResumeRequest,
    GatewaySubscriptionSnapshot,
)
from subsync.models.subscription import Subscription, utc_now


def _require_gateway(gateway: Optional[PaymentGateway]) -> PaymentGateway:
    gw = gateway or get_gateway()
    if gw is None:
        raise BillingDisabledError("Billing is not configured")
    return gw


def _load(event: CanonicalEvent, gateway: Optional[PaymentGateway]) -> Tuple[Optional[Subscription], Optional[GatewaySubscriptionSnapshot]]:
    if isinstance(event, (CustomerCancelRequest, CustomerResumeRequest)):
        return store.get_subscription(event.user_id), None

    if not isinstance(event, GATEWAY_EVENTS):
        return None, None

    snapshot = _require_gateway(gateway).retrieve_subscription(event.subscription_id)

    if isinstance(event, CheckoutCompleted):
        return store.get_subscription(event.user_id), snapshot

    current = store.get_subscription_by_external_id(event.subscription_id)
    if current is None and snapshot is not None and snapshot.user_id:
        current = store.get_subscription(snapshot.user_id)
    return current, snapshot


def _run_effects(decision: Decision, gateway: Optional[PaymentGateway]) -> None:
    for effect in decision.effects:
        gw = _require_gateway(gateway)
        if isinstance(effect, RequestCancelAtPeriodEnd):
            gw.request_cancel_at_period_end(effect.subscription_id)
        elif isinstance(effect, RequestResume):
            gw.request_resume(effect.subscription_id)
        else:
            raise TypeError(f"Unknown gateway effect {type(effect).__name__}")


def _unchanged(current: Optional[Subscription], next_state: Subscription) -> bool:
    return current is not None and current == next_state.model_copy(update={"version": current.version})


def apply_event(
    event: CanonicalEvent,
    *,
    gateway: Optional[PaymentGateway] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """
    Apply a canonical event to the subscription store.

    Returns:
        The stored subscription after the event (None when the event
        touched no row)

    Raises:
        NotFoundError / ConflictError: customer action rejected
        GatewayError / GatewayTimeoutError: gateway call failed
        ConflictError: concurrent writers exhausted the retries
        TransientStoreError: store unavailable
    """
    cat = catalog or get_catalog()
    ts = now or utc_now()

    def attempt() -> Tuple[Decision, Optional[Subscription]]:
        current, snapshot = _load(event, gateway)
        decision = reconcile(current, event, snapshot, cat, ts)
        _run_effects(decision, gateway)
        if decision.next_state is None:
            return decision, current
        if _unchanged(current, decision.next_state):
            return decision, current
        return decision, store.write_subscription(current, decision.next_state, now=ts)

    user_id = getattr(event, "user_id", None)
    decision, stored = store.run_with_retry(attempt, what=f"apply {event.kind}", user_id=user_id)

    status = decision.next_state.status.value if decision.next_state else "noop"
    reconciler_transitions_total.inc({"event": event.kind, "status": status})
    log_event(
        "info",
        "reconciler.applied",
        user_id=stored.user_id if stored else user_id,
        subscription_id=stored.external_subscription_id if stored else getattr(event, "subscription_id", None),
        extra={"event_kind": event.kind, "outcome": status, "reason": decision.reason},
    )
    return stored
