"""
Subscription state store.

Persisted, versioned subscription rows (plus the implicit-FREE usage rows).
Every write is a compare-and-set on the `version` column: the update only
lands if the row still carries the version the writer read. Losers get
VersionConflict and re-read; `run_with_retry` drives that loop.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import Table, insert, select, update
from sqlalchemy.exc import IntegrityError

from subsync.core.config import settings
from subsync.core.database import get_db_session, subscriptions, free_tier_usage
from subsync.core.errors import ConflictError
from subsync.core.logging import log_event
from subsync.core.metrics import state_write_conflicts_total
from subsync.models.subscription import Subscription, ensure_utc, utc_now

T = TypeVar("T")

# Fields the store manages itself
_MANAGED_FIELDS = {"user_id", "version"}


class VersionConflict(Exception):
    """Another writer changed the row since it was read."""


def get_subscription(user_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).fetchone()
    return Subscription.from_row(row) if row else None


def get_subscription_by_external_id(external_subscription_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(
                subscriptions.c.external_subscription_id == external_subscription_id
            )
        ).fetchone()
    return Subscription.from_row(row) if row else None


def insert_subscription(state: Subscription, now: Optional[datetime] = None) -> Subscription:
    """
    Create the user's subscription row at version 1.

    Raises:
        VersionConflict: a row for this user (or external id) appeared concurrently
    """
    ts = now or utc_now()
    values = _to_values(state)
    values.update(user_id=state.user_id, version=1, created_at=ts, updated_at=ts)
    try:
        with get_db_session() as session:
            session.execute(insert(subscriptions).values(**values))
    except IntegrityError as e:
        raise VersionConflict(f"Subscription for {state.user_id} already exists") from e
    return state.model_copy(update={"version": 1})


def compare_and_set(current: Subscription, next_state: Subscription, now: Optional[datetime] = None) -> Subscription:
    """
    Overwrite `current` with `next_state` if nobody wrote in between.

    Raises:
        VersionConflict: the stored version no longer matches `current.version`
    """
    values = {
        key: value
        for key, value in _to_values(next_state).items()
        if getattr(current, key) != getattr(next_state, key)
    }
    new_version = cas_update(subscriptions, current.user_id, current.version, values, now=now)
    return next_state.model_copy(update={"version": new_version})


def write_subscription(current: Optional[Subscription], next_state: Subscription, now: Optional[datetime] = None) -> Subscription:
    """Insert or compare-and-set, depending on whether a row was read."""
    if current is None:
        return insert_subscription(next_state, now=now)
    return compare_and_set(current, next_state, now=now)


def cas_update(table: Table, user_id: str, expected_version: int, values: Dict[str, Any], now: Optional[datetime] = None) -> int:
    """
    Conditional update keyed on (user_id, version).

    Returns:
        The new version

    Raises:
        VersionConflict: zero rows matched
    """
    ts = now or utc_now()
    with get_db_session() as session:
        result = session.execute(
            update(table)
            .where(table.c.user_id == user_id)
            .where(table.c.version == expected_version)
            .values(**values, version=expected_version + 1, updated_at=ts)
        )
        if result.rowcount != 1:
            raise VersionConflict(
                f"{table.name} row for {user_id} is no longer at version {expected_version}"
            )
    return expected_version + 1


def get_free_usage(user_id: str):
    with get_db_session() as session:
        return session.execute(
            select(free_tier_usage).where(free_tier_usage.c.user_id == user_id)
        ).fetchone()


def ensure_free_usage(user_id: str, now: Optional[datetime] = None):
    """Fetch (creating on first use) the usage counter row of an implicit-FREE user."""
    row = get_free_usage(user_id)
    if row is not None:
        return row
    ts = now or utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(free_tier_usage).values(
                    user_id=user_id,
                    current_period_start=ensure_utc(ts),
                    calculations_used=0,
                    api_calls_used=0,
                    version=1,
                    updated_at=ts,
                )
            )
    except IntegrityError:
        # Created concurrently; read the winner's row
        pass
    return get_free_usage(user_id)


def run_with_retry(operation: Callable[[], T], *, what: str, user_id: Optional[str] = None, max_retries: Optional[int] = None) -> T:
    """
    Run a read-compute-CAS operation until it commits.

    Raises:
        ConflictError: still conflicting after max_retries attempts
    """
    attempts = max_retries or settings.STATE_WRITE_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except VersionConflict:
            state_write_conflicts_total.inc()
            log_event(
                "info",
                "state_store.version_conflict",
                user_id=user_id,
                extra={"operation": what, "attempt": attempt},
            )
    raise ConflictError(f"Concurrent updates prevented {what}; retry the request")


def _to_values(state: Subscription) -> Dict[str, Any]:
    values = state.model_dump(exclude=_MANAGED_FIELDS)
    values["plan"] = state.plan.value
    values["status"] = state.status.value
    for key in ("current_period_start", "current_period_end", "canceled_at", "last_payment_at"):
        values[key] = ensure_utc(values[key])
    return values
