"""
Database engine, sessions and the marketplace schema (SQLAlchemy Core).

Server databases get a pre-pinged connection pool; SQLite (tests, local
runs) is opened so the TestClient thread can share it. Services open a
transaction with ``get_db_session()``; everything inside one ``with`` block
commits or rolls back together.
"""
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from agrilease.core.config import settings

logger = logging.getLogger("agrilease")

metadata = MetaData()

SERVER_POOL_OPTIONS = dict(pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=3600, pool_pre_ping=True)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when both are set."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(url, **SERVER_POOL_OPTIONS)
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.info("db.engine_ready", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    """Drop the engine so the next call re-reads the database URL."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """One transaction: commit on clean exit, roll back on any exception."""
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate every table. Tests only."""
    engine = get_engine()
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)


# Users (farmers and landowners). Subscription columns are written by billing only.
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('full_name', Text, nullable=True),
    Column('role', String(20), nullable=False, server_default='farmer'),
    Column('region', String(100), nullable=True),
    Column('is_beneficiary_discount_eligible', Boolean, nullable=False, server_default='0'),
    Column('is_priority_membership_eligible', Boolean, nullable=False, server_default='0'),
    Column('subscription_tier', String(20), nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='inactive'),
    Column('subscription_period_start', DateTime(timezone=True), nullable=True),
    Column('subscription_period_end', DateTime(timezone=True), nullable=True),
    Column('payment_customer_ref', String(100), nullable=True),
    Column('subscription_ref', String(100), nullable=True),
    Column('free_trial_used', Boolean, nullable=False, server_default='0'),
    Column('subscription_claimed_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_region', 'region'),
    Index('idx_users_subscription_status', 'subscription_status'),
    Index('idx_users_payment_customer_ref', 'payment_customer_ref'),
    Index('idx_users_subscription_ref', 'subscription_ref'),
)

# Land listings offered by landowners
listings = Table(
    'listings',
    metadata,
    Column('listing_id', String(100), primary_key=True),
    Column('owner_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('title', Text, nullable=False),
    Column('region', String(100), nullable=False),
    Column('acreage', Float, nullable=False),
    Column('rent_per_acre', Integer, nullable=False),
    Column('security_deposit', Integer, nullable=True),
    Column('lease_duration_min', Integer, nullable=True),
    Column('lease_duration_max', Integer, nullable=True),
    Column('status', String(20), nullable=False, server_default='available'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_listings_owner_status', 'owner_id', 'status'),
    Index('idx_listings_status_region', 'status', 'region'),
)

# Rental requests (never deleted, they are the audit trail of a tenancy proposal)
rental_requests = Table(
    'rental_requests',
    metadata,
    Column('request_id', String(100), primary_key=True),
    Column('listing_id', String(100), ForeignKey('listings.listing_id'), nullable=False),
    Column('farmer_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('land_owner_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('proposed_terms', JSON, nullable=False),
    Column('final_terms', JSON, nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Column('terms_locked_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('responded_at', DateTime(timezone=True), nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Index('idx_rental_requests_farmer_status', 'farmer_id', 'status'),
    Index('idx_rental_requests_owner_status', 'land_owner_id', 'status'),
    Index('idx_rental_requests_listing', 'listing_id'),
    Index('idx_rental_requests_status', 'status'),
)

# Escrow holds bound 1:1 to a provider manual-capture payment intent
escrows = Table(
    'escrows',
    metadata,
    Column('escrow_id', String(100), primary_key=True),
    Column('request_id', String(100), ForeignKey('rental_requests.request_id'), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('status', String(20), nullable=False, server_default='hold'),
    Column('provider_hold_ref', String(100), nullable=False),
    Column('release_conditions', Text, nullable=True),
    Column('auto_release_date', DateTime(timezone=True), nullable=True),
    Column('pending_action', String(20), nullable=True),
    Column('claimed_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_escrows_request', 'request_id'),
    Index('idx_escrows_status', 'status'),
    Index('idx_escrows_status_auto_release', 'status', 'auto_release_date'),
    Index('idx_escrows_provider_hold_ref', 'provider_hold_ref'),
    # At most one live hold per rental request
    Index(
        'uq_escrows_request_hold',
        'request_id',
        unique=True,
        sqlite_where=text("status = 'hold'"),
        postgresql_where=text("status = 'hold'"),
    ),
)

# Local mirror of every provider-facing monetary operation
payments = Table(
    'payments',
    metadata,
    Column('payment_id', String(100), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('purpose', String(20), nullable=False),
    Column('type', String(20), nullable=False, server_default='one_time'),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('provider_ref', String(100), nullable=True),
    Column('invoice_ref', String(100), nullable=True),
    Column('failure_reason', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_payments_user_created', 'user_id', 'created_at'),
    Index('idx_payments_status', 'status'),
    Index('idx_payments_provider_ref', 'provider_ref'),
    Index('uq_payments_invoice_ref', 'invoice_ref', unique=True),
)

# Provisioned subscription plans (region NULL = national plan)
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('plan_id', String(100), primary_key=True),
    Column('tier', String(20), nullable=False),
    Column('name', String(200), nullable=False),
    Column('region', String(100), nullable=True),
    Column('monthly_price', Integer, nullable=False),
    Column('yearly_price', Integer, nullable=False),
    Column('avg_region_income', Integer, nullable=True),
    Column('features', JSON, nullable=False),
    Column('limits', JSON, nullable=False),
    Column('free_trial_days', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('region', 'tier', name='uq_subscription_plans_region_tier'),
    Index('idx_subscription_plans_tier', 'tier'),
)

# Webhook idempotency ledger
provider_events = Table(
    'provider_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('command', String(50), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_provider_events_type_received', 'event_type', 'received_at'),
)
