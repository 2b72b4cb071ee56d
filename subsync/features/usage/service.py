"""
subsync/features/usage/service.py

Usage meter.

Handles:
- Quota-gated consumption for the calculations and api_calls meters
- Calendar-month period rollover (reset counters, advance period start)
- Usage report per meter ({used, limit, remaining})

Check, rollover and increment are one compare-and-set on the row's
version, so concurrent requests can neither overshoot a quota nor reset a
period twice.
"""

from datetime import datetime
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel

from subsync.core.database import free_tier_usage, subscriptions
from subsync.core.errors import QuotaExceededError, ValidationError
from subsync.core.logging import log_event
from subsync.core.metrics import quota_rejections_total
from subsync.features.plans.catalog import PlanCatalog, get_catalog
from subsync.features.subscriptions import store
from subsync.models.subscription import (
    UNLIMITED,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    calendar_period_start,
    ensure_utc,
    utc_now,
)

METER_CALCULATIONS = "calculations"
METER_API_CALLS = "api_calls"
METERS = (METER_CALCULATIONS, METER_API_CALLS)

# Statuses that no longer grant paid quotas
_LAPSED = {SubscriptionStatus.CANCELED, SubscriptionStatus.INACTIVE}


class MeterUsage(BaseModel):
    used: int
    limit: int
    remaining: Union[int, str]  # "unlimited" for the -1 sentinel


class UsageReport(BaseModel):
    user_id: str
    plan: PlanTier
    status: Optional[SubscriptionStatus] = None  # None = implicit FREE
    period_start: datetime
    calculations: MeterUsage
    api_calls: MeterUsage


def meter_usage(used: int, limit: int) -> MeterUsage:
    if limit == UNLIMITED:
        return MeterUsage(used=used, limit=limit, remaining="unlimited")
    return MeterUsage(used=used, limit=limit, remaining=max(limit - used, 0))


def needs_rollover(period_start: datetime, now: datetime) -> bool:
    """True when `period_start` lies in an earlier calendar month than `now`."""
    return calendar_period_start(period_start) < calendar_period_start(now)


def effective_limits(subscription: Optional[Subscription], catalog: PlanCatalog) -> Tuple[PlanTier, Dict[str, int]]:
    """Plan and per-meter limits actually enforced for a user."""
    if subscription is None or subscription.status in _LAPSED:
        free = catalog.free()
        return PlanTier.FREE, {
            METER_CALCULATIONS: free.calculations_limit,
            METER_API_CALLS: free.api_calls_limit,
        }
    return subscription.plan, {
        METER_CALCULATIONS: subscription.calculations_limit,
        METER_API_CALLS: subscription.api_calls_limit,
    }


def _check_meter(meter: str) -> None:
    if meter not in METERS:
        raise ValidationError(f"Unknown usage meter: {meter}")


def _counters(row) -> Dict[str, int]:
    return {
        METER_CALCULATIONS: row.calculations_used,
        METER_API_CALLS: row.api_calls_used,
    }


def _consume(table, row, limits: Dict[str, int], meter: str, amount: int, user_id: str, now: datetime) -> Tuple[Dict[str, int], datetime]:
    counters = _counters(row)
    period_start = ensure_utc(row.current_period_start)
    values = {}

    if needs_rollover(period_start, now):
        counters = {name: 0 for name in METERS}
        period_start = now
        values.update(
            current_period_start=now,
            calculations_used=0,
            api_calls_used=0,
        )

    limit = limits[meter]
    used = counters[meter]
    if limit != UNLIMITED and used + amount > limit:
        quota_rejections_total.inc({"meter": meter})
        log_event(
            "warning",
            "usage.quota_exceeded",
            user_id=user_id,
            error_code="quota_exceeded",
            extra={"meter": meter, "used": used, "limit": limit},
        )
        raise QuotaExceededError(
            f"{meter} quota exceeded ({used}/{limit}) for this billing period",
            meter=meter,
            used=used,
            limit=limit,
        )

    counters[meter] = used + amount
    values[f"{meter}_used"] = counters[meter]
    store.cas_update(table, user_id, row.version, values, now=now)
    if "current_period_start" in values:
        log_event("info", "usage.period_rolled_over", user_id=user_id, extra={"meter": meter})
    return counters, period_start


def record_usage(
    user_id: str,
    meter: str = METER_CALCULATIONS,
    amount: int = 1,
    *,
    catalog: Optional[PlanCatalog] = None,
    now: Optional[datetime] = None,
) -> UsageReport:
    """
    Consume `amount` units of `meter` for the user.

    Returns:
        Usage report after the increment

    Raises:
        QuotaExceededError: the increment would pass the limit
        ValidationError: unknown meter or non-positive amount
        ConflictError: concurrent writers exhausted the retries
    """
    _check_meter(meter)
    if amount < 1:
        raise ValidationError("Usage amount must be positive")
    cat = catalog or get_catalog()
    ts = ensure_utc(now) if now else utc_now()

    def attempt() -> UsageReport:
        subscription = store.get_subscription(user_id)
        plan, limits = effective_limits(subscription, cat)
        if subscription is not None:
            row, table, status = subscription, subscriptions, subscription.status
        else:
            row, table, status = store.ensure_free_usage(user_id, now=ts), free_tier_usage, None

        counters, period_start = _consume(table, row, limits, meter, amount, user_id, ts)
        return UsageReport(
            user_id=user_id,
            plan=plan,
            status=status,
            period_start=period_start,
            calculations=meter_usage(counters[METER_CALCULATIONS], limits[METER_CALCULATIONS]),
            api_calls=meter_usage(counters[METER_API_CALLS], limits[METER_API_CALLS]),
        )

    return store.run_with_retry(attempt, what=f"record {meter} usage", user_id=user_id)


def get_usage(user_id: str, *, catalog: Optional[PlanCatalog] = None, now: Optional[datetime] = None) -> UsageReport:
    """Current usage per meter (a due rollover is reported as zero usage, not written)."""
    cat = catalog or get_catalog()
    ts = ensure_utc(now) if now else utc_now()

    subscription = store.get_subscription(user_id)
    plan, limits = effective_limits(subscription, cat)
    row = subscription if subscription is not None else store.get_free_usage(user_id)

    if row is None:
        counters, period_start = {name: 0 for name in METERS}, calendar_period_start(ts)
    else:
        counters, period_start = _counters(row), ensure_utc(row.current_period_start)
        if needs_rollover(period_start, ts):
            counters, period_start = {name: 0 for name in METERS}, calendar_period_start(ts)

    return UsageReport(
        user_id=user_id,
        plan=plan,
        status=subscription.status if subscription else None,
        period_start=period_start,
        calculations=meter_usage(counters[METER_CALCULATIONS], limits[METER_CALCULATIONS]),
        api_calls=meter_usage(counters[METER_API_CALLS], limits[METER_API_CALLS]),
    )
