"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite)
- Table definitions for entitlements and webhook bookkeeping
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, JSON, Text, Index, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from planwise.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Engine and session factory, built on first use
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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


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

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # SQLite: one connection per thread, wait on the write lock
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
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
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


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


# Entitlements: one row per user (tier, status, daily quota, provider ids)
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('provider_customer_id', String(100), nullable=True, unique=True),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('quota_used', Integer, nullable=False, server_default='0'),
    Column('quota_reset_date', Date, nullable=True),  # NULL only for legacy/corrupt rows
    Column('tier_changed_at', DateTime(timezone=True), nullable=True),
    Column('billing_period', String(20), nullable=True),  # monthly | yearly
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # Identity resolver lookups are indexed equality or most-recent-N only
    Index('idx_entitlements_subscription_id', 'provider_subscription_id'),
    Index('idx_entitlements_email', 'email'),
    Index('idx_entitlements_updated_at', 'updated_at'),
    Index('idx_entitlements_reset_date', 'quota_reset_date'),
)

# Processed webhook events (dedup log, append-only)
processed_webhook_events = Table(
    'processed_webhook_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('canonical_action', String(50), nullable=False),
    Column('user_id', String(100), nullable=True, index=True),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    Index('idx_processed_webhook_events_processed_at', 'processed_at'),
)

# Webhook events whose identity could not be resolved (follow-up queue)
deferred_webhook_events = Table(
    'deferred_webhook_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('canonical_action', String(50), nullable=False),
    Column('reason', Text, nullable=False),
    Column('payload', JSON, nullable=False),
    Column('attempts', Integer, nullable=False, server_default='1'),
    Column('first_seen_at', DateTime(timezone=True), nullable=False),
    Column('last_seen_at', DateTime(timezone=True), nullable=False),
    Index('idx_deferred_webhook_events_last_seen', 'last_seen_at'),
)

# Admin audit log
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('action', String(100), nullable=False),  # "reset_usage", "reassign_customer", ...
    Column('target_user_id', String(100), nullable=True, index=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
    Index('idx_billing_admin_audit_action', 'action'),
)
