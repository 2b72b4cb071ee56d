"""
Webhook ingress.

verify -> parse -> claim -> translate -> reconcile -> mark

Acknowledged outcomes: processed, duplicate, ignored, invalid. Signature
failures raise AuthenticationError. Retryable failures (gateway, store,
exhausted write retries, billing not configured) release the claim and
propagate so the gateway redelivers; any other failure keeps the claim
unfinished.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from subsync.core.config import settings
from subsync.core.errors import BillingDisabledError, ConflictError, ValidationError
from subsync.core.logging import log_event
from subsync.core.metrics import webhook_events_total
from subsync.features.billing.gateway import PaymentGateway
from subsync.features.plans.catalog import PlanCatalog
from subsync.features.reconciler.service import apply_event
from subsync.features.webhooks import ledger
from subsync.features.webhooks.translate import parse_envelope, translate, verify_signature
from subsync.models.events import Unhandled
from subsync.models.subscription import utc_now


@dataclass(frozen=True)
class WebhookResult:
    event_id: Optional[str]
    event_type: Optional[str]
    outcome: str


def _redeliverable(exc: Exception) -> bool:
    """Failures after which the claim is released so a redelivery is applied."""
    return getattr(exc, "retryable", False) or isinstance(exc, (ConflictError, BillingDisabledError))


def _record(result: WebhookResult) -> WebhookResult:
    webhook_events_total.inc({"type": result.event_type or "unknown", "outcome": result.outcome})
    log_event(
        "info",
        "webhook.handled",
        event_id=result.event_id,
        event_type=result.event_type,
        extra={"outcome": result.outcome},
    )
    return result


def handle_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    *,
    gateway: Optional[PaymentGateway] = None,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
    webhook_secret: Optional[str] = None,
) -> WebhookResult:
    """
    Verify and apply one gateway webhook delivery.

    Raises:
        AuthenticationError: bad or missing signature
        BillingDisabledError: no webhook secret configured
        GatewayError / GatewayTimeoutError / TransientStoreError: retry later
    """
    secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise BillingDisabledError("Webhook secret is not configured")

    verify_signature(raw_body, signature_header, secret, tolerance=settings.WEBHOOK_TOLERANCE_SECONDS)

    try:
        envelope = parse_envelope(raw_body)
    except ValidationError as e:
        log_event("warning", "webhook.invalid_envelope", error_code=e.code, extra={"reason": e.message})
        return _record(WebhookResult(None, None, ledger.OUTCOME_INVALID))

    ts = now or utc_now()
    payload_hash = hashlib.sha256(raw_body).hexdigest()
    if not ledger.claim_event(envelope.event_id, envelope.event_type, payload_hash, now=ts):
        return _record(WebhookResult(envelope.event_id, envelope.event_type, ledger.OUTCOME_DUPLICATE))

    try:
        try:
            event = translate(envelope)
        except ValidationError as e:
            # Redelivery would carry the same payload; keep the claim
            log_event(
                "warning",
                "webhook.invalid_payload",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                error_code=e.code,
                extra={"reason": e.message},
            )
            ledger.mark_event(envelope.event_id, ledger.OUTCOME_INVALID, now=ts)
            return _record(WebhookResult(envelope.event_id, envelope.event_type, ledger.OUTCOME_INVALID))

        if isinstance(event, Unhandled):
            ledger.mark_event(envelope.event_id, ledger.OUTCOME_IGNORED, now=ts)
            return _record(WebhookResult(envelope.event_id, envelope.event_type, ledger.OUTCOME_IGNORED))

        apply_event(event, gateway=gateway, catalog=catalog, now=ts)
        ledger.mark_event(envelope.event_id, ledger.OUTCOME_PROCESSED, now=ts)
    except Exception as e:
        log_event(
            "error",
            "webhook.processing_failed",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            error_code=getattr(e, "code", "internal_error"),
            extra={"error": str(e)},
        )
        if _redeliverable(e):
            ledger.release_claim(envelope.event_id)
        webhook_events_total.inc({"type": envelope.event_type, "outcome": "failed"})
        raise

    return _record(WebhookResult(envelope.event_id, envelope.event_type, ledger.OUTCOME_PROCESSED))
