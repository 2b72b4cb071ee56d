"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for subscription state, the dedupe ledger and usage counters
"""
import logging
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint, false, select
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from subsync.core.config import settings
from subsync.core.errors import TransientStoreError


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # SQLite serializes writers itself; wait on the file lock instead of failing fast
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (next use re-initializes)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Driver-level failures (lost connection, locked database) are raised as
    TransientStoreError so callers can surface a retryable error.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        raise TransientStoreError(f"State store unavailable: {exc.orig}") from exc
    except DBAPIError as exc:
        session.rollback()
        if exc.connection_invalidated:
            raise TransientStoreError("State store connection lost") from exc
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logging.getLogger("subsync").warning(f"Database connection check failed: {e}")
        return False


# Billing customers (user <-> gateway customer)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_billing_customers_stripe_id', 'stripe_customer_id'),
)

# Subscription state (one row per user, versioned for compare-and-set)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('external_subscription_id', String(100), nullable=False),
    Column('external_customer_id', String(100), nullable=True),
    Column('external_price_id', String(100), nullable=True),
    Column('plan', String(20), nullable=False),  # FREE, PRO, TEAM, ENTERPRISE
    Column('status', String(20), nullable=False),  # ACTIVE, CANCELLING, CANCELED, PAST_DUE, TRIALING, INACTIVE
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('calculations_used', Integer, nullable=False, server_default='0'),
    Column('calculations_limit', Integer, nullable=False),  # -1 = unlimited
    Column('api_calls_used', Integer, nullable=False, server_default='0'),
    Column('api_calls_limit', Integer, nullable=False),  # -1 = unlimited
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('last_payment_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', name='uq_subscriptions_user_id'),
    UniqueConstraint('external_subscription_id', name='uq_subscriptions_external_id'),
    Index('idx_subscriptions_status', 'status'),
)

# Processed gateway events (dedupe ledger)
processed_events = Table(
    'processed_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('external_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(20), nullable=True),  # processed, ignored, invalid
    UniqueConstraint('external_event_id', name='uq_processed_events_external_id'),
    Index('idx_processed_events_received_at', 'received_at'),
)

# Usage counters for users on the implicit FREE tier (no subscription row)
free_tier_usage = Table(
    'free_tier_usage',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('calculations_used', Integer, nullable=False, server_default='0'),
    Column('api_calls_used', Integer, nullable=False, server_default='0'),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', name='uq_free_tier_usage_user_id'),
)
