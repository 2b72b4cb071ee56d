"""
Billing API routes.

- POST /api/billing/webhook: Gateway webhooks (raw body, signature header)
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/cancel: Cancel at period end
- POST /api/billing/resume: Undo a pending cancellation
- GET  /api/billing/subscription: Current subscription (implicit FREE)
- GET  /api/billing/plans: Plan catalog
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from subsync.core.auth import get_current_user_id
from subsync.features.billing.service import (
    SubscriptionView,
    cancel_subscription,
    get_subscription_view,
    list_plans,
    open_billing_portal,
    resume_subscription,
    start_checkout,
)
from subsync.features.webhooks.service import handle_webhook
from subsync.models.plan import PlanEntry


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Exactly one of tier / price_id."""
    tier: Optional[str] = None
    price_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    outcome: str


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Receive a gateway webhook.

    The body is read as raw bytes and verified before parsing; any
    re-serialization would break the signature.

    Errors:
        400: Missing or invalid signature
        502/504: Gateway failed while reconciling (redelivery expected)
        503: State store unavailable or billing not configured (redelivery expected)
    """
    raw_body = await request.body()
    result = await run_in_threadpool(handle_webhook, raw_body, stripe_signature)
    return WebhookResponse(event_id=result.event_id, outcome=result.outcome)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create a hosted checkout session.

    Errors:
        400: Unknown tier / price id, or FREE requested
        409: User already has a live subscription
        503: Billing disabled
    """
    session = start_checkout(
        user_id,
        tier=body.tier,
        price_id=body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/portal", response_model=PortalResponse)
def create_portal(body: Optional[PortalRequest] = None, user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        404: User never checked out
        503: Billing disabled
    """
    url = open_billing_portal(user_id, body.return_url if body else None)
    return PortalResponse(url=url)


@router.post("/cancel", response_model=SubscriptionView)
def cancel(user_id: str = Depends(get_current_user_id)):
    return cancel_subscription(user_id)


@router.post("/resume", response_model=SubscriptionView)
def resume(user_id: str = Depends(get_current_user_id)):
    return resume_subscription(user_id)


@router.get("/subscription", response_model=SubscriptionView)
def subscription(user_id: str = Depends(get_current_user_id)):
    return get_subscription_view(user_id)


@router.get("/plans", response_model=List[PlanEntry])
def plans():
    return list_plans()
