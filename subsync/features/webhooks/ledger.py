"""
Processed-event ledger.

Durable record of gateway event ids. A row is claimed before the event is
applied; the unique constraint on external_event_id lets exactly one
delivery win. A claim whose processing fails with a retryable error is
released so the gateway's redelivery can claim it again.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError

from subsync.core.config import settings
from subsync.core.database import get_db_session, processed_events
from subsync.core.logging import log_event
from subsync.models.subscription import utc_now

OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_INVALID = "invalid"
OUTCOME_DUPLICATE = "duplicate"


def claim_event(event_id: str, event_type: str, payload_hash: str, now: Optional[datetime] = None) -> bool:
    """
    Record the event id.

    Returns:
        True if this call claimed the event, False if it was already recorded
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(processed_events).values(
                    external_event_id=event_id,
                    event_type=event_type,
                    payload_hash=payload_hash,
                    received_at=now or utc_now(),
                )
            )
    except IntegrityError:
        return False
    return True


def release_claim(event_id: str) -> None:
    """Forget an unfinished claim so a redelivery is processed again."""
    with get_db_session() as session:
        session.execute(
            delete(processed_events)
            .where(processed_events.c.external_event_id == event_id)
            .where(processed_events.c.processed_at.is_(None))
        )
    log_event("info", "webhook.claim_released", event_id=event_id)


def mark_event(event_id: str, outcome: str, now: Optional[datetime] = None) -> None:
    with get_db_session() as session:
        session.execute(
            update(processed_events)
            .where(processed_events.c.external_event_id == event_id)
            .values(outcome=outcome, processed_at=now or utc_now())
        )


def prune_processed_events(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
    """
    Delete finished ledger rows older than the retention window.

    Unfinished claims are kept; the window must exceed the gateway's
    redelivery horizon or duplicates could be applied again.

    Returns:
        Number of rows deleted
    """
    days = retention_days if retention_days is not None else settings.PROCESSED_EVENT_RETENTION_DAYS
    cutoff = (now or utc_now()) - timedelta(days=days)
    with get_db_session() as session:
        result = session.execute(
            delete(processed_events)
            .where(processed_events.c.received_at < cutoff)
            .where(processed_events.c.processed_at.is_not(None))
        )
        deleted = result.rowcount or 0
    log_event("info", "webhook.ledger_pruned", extra={"deleted": deleted, "retention_days": days})
    return deleted
