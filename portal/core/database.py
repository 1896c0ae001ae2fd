"""
Database engine, sessions and the portal schema.

Everything is SQLAlchemy Core: tables live on one MetaData below and services
issue statements through short-lived sessions from get_db_session(). Counter
changes and claims are single UPDATE statements so concurrent requests never
read-modify-write.

Tests point TEST_DATABASE_URL at sqlite://; the in-memory database then lives
on one shared connection (StaticPool) for the whole run.
"""
from contextlib import contextmanager
import logging
import os
from typing import Iterator, Optional

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Date,
    Boolean,
    Float,
    JSON,
    Text,
    Index,
    UniqueConstraint,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from portal.core.config import settings

logger = logging.getLogger("portal.database")

metadata = MetaData()

# Per worker process
POSTGRES_POOL = {"pool_size": 5, "max_overflow": 10, "pool_timeout": 30, "pool_recycle": 1800, "pool_pre_ping": True}

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def database_url() -> Optional[str]:
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(url: Optional[str] = None) -> Engine:
    """Create the process-wide engine (and session factory) for url or the configured database."""
    global _engine, _session_factory

    url = url or database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured")

    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        _engine = create_engine(url, **POSTGRES_POOL)

    _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.info("database.engine_ready", extra={"dialect": _engine.dialect.name})
    return _engine


def _engine_or_init() -> Engine:
    return _engine if _engine is not None else init_engine()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    _engine_or_init()
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
    metadata.create_all(bind=_engine_or_init())


def reset_database() -> None:
    """Delete every row, children first. Test helper."""
    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(table.delete())


def check_connection() -> bool:
    try:
        with _engine_or_init().connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning("database.check_failed", extra={"error": str(e)})
        return False


# Users keyed by identity-provider subject id
users = Table(
    'users',
    metadata,
    Column('id', String(255), primary_key=True),
    Column('email', String(320), nullable=False),
    Column('name', Text, nullable=True),
    Column('billing_mode', String(20), nullable=True),  # free | prepaid | postpaid
    Column('status', String(20), nullable=False, server_default='active'),  # active | suspended | deleted
    Column('account_owner_id', String(255), nullable=True),
    Column('stripe_customer_id', String(255), nullable=True),
    Column('stripe_subscription_id', String(255), nullable=True),
    Column('stripe_subscription_status', String(50), nullable=True),
    Column('hopsworks_user_id', Integer, nullable=True),
    Column('hopsworks_username', String(255), nullable=True),
    Column('spending_cap', Float, nullable=True),
    Column('spending_alerts_sent', JSON, nullable=True),
    Column('downgrade_deadline', DateTime(timezone=True), nullable=True),
    Column('feature_flags', JSON, nullable=True),
    Column('login_count', Integer, nullable=False, server_default='0'),
    Column('last_login_at', DateTime(timezone=True), nullable=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('deletion_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_email', 'email'),
    Index('idx_users_account_owner', 'account_owner_id'),
    Index('idx_users_stripe_customer', 'stripe_customer_id'),
)

# Shared Hopsworks clusters; current_users is advisory
hopsworks_clusters = Table(
    'hopsworks_clusters',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('name', String(255), nullable=False),
    Column('api_url', String(500), nullable=False),
    Column('api_key', Text, nullable=False),
    Column('verify_tls', Boolean, nullable=False, server_default='1'),
    Column('current_users', Integer, nullable=False, server_default='0'),
    Column('max_users', Integer, nullable=False, server_default='100'),
    Column('status', String(20), nullable=False, server_default='active'),  # active | maintenance | full | inactive
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_hopsworks_clusters_status', 'status'),
)

# One assignment per user
user_hopsworks_assignments = Table(
    'user_hopsworks_assignments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=False),
    Column('hopsworks_cluster_id', String(64), nullable=False),
    Column('hopsworks_user_id', Integer, nullable=True),
    Column('hopsworks_username', String(255), nullable=True),
    Column('assigned_by', String(50), nullable=True),
    Column('assigned_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', name='uq_user_hopsworks_assignments_user'),
    Index('idx_assignments_cluster', 'hopsworks_cluster_id'),
)

team_invites = Table(
    'team_invites',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('token', String(128), nullable=False, unique=True),
    Column('account_owner_id', String(255), nullable=False),
    Column('email', String(320), nullable=False),
    Column('project_role', String(50), nullable=False, server_default='Data scientist'),
    Column('auto_assign_projects', Boolean, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('accepted_at', DateTime(timezone=True), nullable=True),
    Column('accepted_by_user_id', String(255), nullable=True),
    Index('idx_team_invites_owner_email', 'account_owner_id', 'email'),
)

usage_daily = Table(
    'usage_daily',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=False),
    Column('date', Date, nullable=False),
    Column('cpu_hours', Float, nullable=False, server_default='0'),
    Column('gpu_hours', Float, nullable=False, server_default='0'),
    Column('ram_gb_hours', Float, nullable=False, server_default='0'),
    Column('online_storage_gb', Float, nullable=False, server_default='0'),
    Column('offline_storage_gb', Float, nullable=False, server_default='0'),
    Column('network_egress_gb', Float, nullable=False, server_default='0'),
    Column('total_cost', Float, nullable=False, server_default='0'),
    Column('account_owner_id', String(255), nullable=True),
    Column('hopsworks_cluster_id', String(64), nullable=True),
    Column('reported_to_stripe', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'date', name='uq_usage_daily_user_date'),
    Index('idx_usage_daily_date_reported', 'date', 'reported_to_stripe'),
    Index('idx_usage_daily_owner', 'account_owner_id'),
)

# Repair queue for external drift; rows are only ever flipped to resolved
health_check_failures = Table(
    'health_check_failures',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=True),
    Column('email', String(320), nullable=True),
    Column('check_type', String(100), nullable=False),
    Column('error', Text, nullable=False),
    Column('details', JSON, nullable=True),
    Column('resolved', Boolean, nullable=False, server_default='0'),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    Column('resolution', Text, nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_health_failures_unresolved', 'resolved', 'check_type'),
)

project_member_roles = Table(
    'project_member_roles',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('member_id', String(255), nullable=False),
    Column('account_owner_id', String(255), nullable=False),
    Column('project_name', String(255), nullable=False),
    Column('project_role', String(50), nullable=False),
    Column('synced_to_hopsworks', Boolean, nullable=False, server_default='0'),
    Column('added_by', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('member_id', 'project_name', name='uq_project_member_roles_member_project'),
)

# Prepaid balance per billed owner, in dollars
user_credits = Table(
    'user_credits',
    metadata,
    Column('user_id', String(255), primary_key=True),
    Column('total_purchased', Float, nullable=False, server_default='0'),
    Column('total_used', Float, nullable=False, server_default='0'),
    Column('free_credits_granted', Float, nullable=False, server_default='0'),
    Column('free_credits_used', Float, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Ledger of purchases (positive) and usage deductions (negative)
credit_transactions = Table(
    'credit_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(255), nullable=False),
    Column('amount', Float, nullable=False),
    Column('kind', String(20), nullable=False),  # purchase | usage
    Column('description', Text, nullable=True),
    Column('stripe_session_id', String(255), nullable=True, unique=True),
    Column('usage_id', Integer, nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_credit_transactions_user', 'user_id', 'created_at'),
)

# Webhook dedup: the unique event_id is the concurrency guard
stripe_processed_events = Table(
    'stripe_processed_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('status', String(20), nullable=False, server_default='processing'),  # processing | processed | failed
    Column('error', Text, nullable=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
