"""
Billing service.

Customer-initiated billing actions:
- Customer management (user <-> gateway customer)
- Checkout by plan tier or price id
- Cancel at period end / resume (through the reconciler)
- Billing portal
- Subscription view (implicit FREE when no row exists)

Gateway calls go through the PaymentGateway protocol; nothing here is
Stripe-specific.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from subsync.core.config import settings
from subsync.core.database import billing_customers, get_db_session
from subsync.core.errors import BillingDisabledError, ConflictError, NotFoundError, ValidationError
from subsync.core.logging import log_event
from subsync.features.billing.gateway import CheckoutSession, PaymentGateway, get_gateway
from subsync.features.plans.catalog import PlanCatalog, get_catalog
from subsync.features.reconciler.service import apply_event
from subsync.features.subscriptions import store
from subsync.features.usage.service import MeterUsage, get_usage
from subsync.models.events import CustomerCancelRequest, CustomerResumeRequest
from subsync.models.plan import PlanEntry
from subsync.models.subscription import PlanTier, SubscriptionStatus

# A new checkout is refused while the user holds one of these
_LIVE_STATUSES = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELLING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.TRIALING,
}


class SubscriptionView(BaseModel):
    """What the customer sees about their billing state."""
    user_id: str
    plan: PlanTier
    status: Optional[SubscriptionStatus] = None
    subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    calculations: MeterUsage
    api_calls: MeterUsage


def _gateway(gateway: Optional[PaymentGateway]) -> PaymentGateway:
    gw = gateway or get_gateway()
    if gw is None:
        raise BillingDisabledError("Billing is not configured")
    return gw


def get_customer_id(user_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers.c.stripe_customer_id).where(
                billing_customers.c.user_id == user_id
            )
        ).fetchone()
    return row[0] if row else None


def ensure_customer_for_user(user_id: str, email: Optional[str] = None, *, gateway: Optional[PaymentGateway] = None) -> str:
    """
    Return the user's gateway customer id, creating the customer once.

    Raises:
        BillingDisabledError: no gateway configured
        GatewayError: customer creation failed
    """
    existing = get_customer_id(user_id)
    if existing:
        return existing

    customer_id = _gateway(gateway).ensure_customer(user_id, email)
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_customers).values(
                    user_id=user_id,
                    stripe_customer_id=customer_id,
                )
            )
    except IntegrityError:
        # Another request stored the mapping first
        winner = get_customer_id(user_id)
        if winner is None:
            raise
        return winner

    log_event("info", "billing.customer_created", user_id=user_id)
    return customer_id


def _resolve_checkout_plan(catalog: PlanCatalog, tier: Optional[str], price_id: Optional[str]) -> PlanEntry:
    if bool(tier) == bool(price_id):
        raise ValidationError("Provide exactly one of tier or price_id")
    if price_id:
        entry = catalog.lookup(price_id)
        if entry is None:
            raise ValidationError(f"Unknown price id: {price_id}")
        return entry
    try:
        entry = catalog.entry(PlanTier(tier.upper()))
    except ValueError as e:
        raise ValidationError(f"Unknown plan tier: {tier}") from e
    if entry.tier == PlanTier.FREE or not entry.price_id:
        raise ValidationError(f"Plan {entry.tier.value} cannot be purchased")
    return entry


def start_checkout(
    user_id: str,
    *,
    tier: Optional[str] = None,
    price_id: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    catalog: Optional[PlanCatalog] = None,
) -> CheckoutSession:
    """
    Start a hosted checkout for a paid plan.

    Raises:
        ValidationError: bad tier / price id
        ConflictError: the user already has a live subscription
        BillingDisabledError / GatewayError / GatewayTimeoutError
    """
    gw = _gateway(gateway)
    entry = _resolve_checkout_plan(catalog or get_catalog(), tier, price_id)

    current = store.get_subscription(user_id)
    if current is not None and current.status in _LIVE_STATUSES:
        raise ConflictError("User already has an active subscription; use the billing portal to change plans")

    customer_id = ensure_customer_for_user(user_id, gateway=gw)
    base = settings.FRONTEND_URL.rstrip("/")
    session = gw.create_checkout_session(
        user_id=user_id,
        customer_id=customer_id,
        price_id=entry.price_id,
        success_url=success_url or f"{base}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{base}/billing/canceled",
    )
    log_event("info", "billing.checkout_started", user_id=user_id, extra={"tier": entry.tier.value})
    return session


def cancel_subscription(user_id: str, *, gateway: Optional[PaymentGateway] = None) -> SubscriptionView:
    """Flag the subscription to cancel at period end."""
    apply_event(CustomerCancelRequest(user_id=user_id), gateway=_gateway(gateway))
    return get_subscription_view(user_id)


def resume_subscription(user_id: str, *, gateway: Optional[PaymentGateway] = None) -> SubscriptionView:
    """Clear a pending cancellation."""
    apply_event(CustomerResumeRequest(user_id=user_id), gateway=_gateway(gateway))
    return get_subscription_view(user_id)


def open_billing_portal(user_id: str, return_url: Optional[str] = None, *, gateway: Optional[PaymentGateway] = None) -> str:
    """
    Raises:
        NotFoundError: the user has no gateway customer yet
    """
    gw = _gateway(gateway)
    customer_id = get_customer_id(user_id)
    if not customer_id:
        subscription = store.get_subscription(user_id)
        customer_id = subscription.external_customer_id if subscription else None
    if not customer_id:
        raise NotFoundError("No billing account found for user")
    return gw.create_customer_portal_session(
        customer_id,
        return_url or f"{settings.FRONTEND_URL.rstrip('/')}/billing",
    )


def get_subscription_view(user_id: str, *, catalog: Optional[PlanCatalog] = None) -> SubscriptionView:
    subscription = store.get_subscription(user_id)
    usage = get_usage(user_id, catalog=catalog)
    if subscription is None:
        return SubscriptionView(
            user_id=user_id,
            plan=PlanTier.FREE,
            current_period_start=usage.period_start,
            calculations=usage.calculations,
            api_calls=usage.api_calls,
        )
    return SubscriptionView(
        user_id=user_id,
        plan=subscription.plan,
        status=subscription.status,
        subscription_id=subscription.external_subscription_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        canceled_at=subscription.canceled_at,
        last_payment_at=subscription.last_payment_at,
        calculations=usage.calculations,
        api_calls=usage.api_calls,
    )


def list_plans(catalog: Optional[PlanCatalog] = None) -> List[PlanEntry]:
    return (catalog or get_catalog()).entries()
