"""
subsync/models/subscription.py

Subscription state model.

One Subscription per user, mirroring the gateway-reported billing facts
(plan, status, billing period) plus locally enforced usage counters.
Absence of a row means the implicit FREE tier.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class PlanTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    TEAM = "TEAM"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLING = "CANCELLING"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    TRIALING = "TRIALING"
    INACTIVE = "INACTIVE"


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calendar_period_start(moment: datetime) -> datetime:
    """Start of the calendar month containing `moment` (UTC)."""
    moment = ensure_utc(moment)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class Subscription(BaseModel):
    """Persisted subscription record. `version` increases on every mutation."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    external_price_id: Optional[str] = None
    plan: PlanTier
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    calculations_used: int = 0
    calculations_limit: int
    api_calls_used: int = 0
    api_calls_limit: int
    canceled_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls(
            user_id=row.user_id,
            external_subscription_id=row.external_subscription_id,
            external_customer_id=row.external_customer_id,
            external_price_id=row.external_price_id,
            plan=PlanTier(row.plan),
            status=SubscriptionStatus(row.status),
            current_period_start=ensure_utc(row.current_period_start),
            current_period_end=ensure_utc(row.current_period_end),
            cancel_at_period_end=bool(row.cancel_at_period_end),
            calculations_used=row.calculations_used,
            calculations_limit=row.calculations_limit,
            api_calls_used=row.api_calls_used,
            api_calls_limit=row.api_calls_limit,
            canceled_at=ensure_utc(row.canceled_at),
            last_payment_at=ensure_utc(row.last_payment_at),
            version=row.version,
        )
