"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (static pool for SQLite)
- Table definitions for tenants, products, API keys, the entitlement
  cache and the webhook audit log
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, String, DateTime, Boolean, JSON, Text, Index
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from paywall.core.config import settings


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
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
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

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
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
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

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

def upsert(session, table: Table, values: dict, index_elements: list) -> None:
    """
    INSERT ... ON CONFLICT (index_elements) DO UPDATE in one statement.

    Concurrent writers to the same key never collide on the primary key;
    the last statement to commit wins.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(table).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values)
    else:
        raise ValueError(f"upsert not supported for dialect: {dialect}")
    updates = {k: stmt.excluded[k] for k in values if k not in index_elements}
    session.execute(stmt.on_conflict_do_update(index_elements=index_elements, set_=updates))


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


tenants = Table(
    'tenants',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('admin_email', String(320), nullable=False),
    Column('credentials_configured', Boolean, nullable=False, default=False),
    Column('credentials_validated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

products = Table(
    'products',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('product_id', String(100), primary_key=True),
    Column('product_name', String(200), nullable=False),
    Column('checkout_domain', String(500), nullable=True),
    Column('allowed_return_urls', JSON, nullable=False, default=list),
    Column('subscription_callback_url', String(1000), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

api_keys = Table(
    'api_keys',
    metadata,
    Column('api_key_hash', String(64), primary_key=True),  # SHA256 hex
    Column('tenant_id', String(100), nullable=False),
    Column('product_id', String(100), nullable=False),  # '*' for admin keys
    Column('key_type', String(20), nullable=False),  # admin | product
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_api_keys_tenant_id', 'tenant_id'),
)

# Entitlement cache: one row per (tenant#product, user), fully overwritten on every write
entitlement_cache = Table(
    'entitlement_cache',
    metadata,
    Column('tenant_product_key', String(201), primary_key=True),  # tenantId#productId
    Column('user_id', String(320), primary_key=True),
    Column('has_access', Boolean, nullable=False),
    Column('subscription_id', String(100), nullable=True),
    Column('plan_code', String(100), nullable=True),
    Column('status', String(50), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('user_email', String(320), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Index('idx_entitlement_cache_expires_at', 'expires_at'),
)

# Webhook audit (idempotency + audit trail)
webhook_audit = Table(
    'webhook_audit',
    metadata,
    Column('tenant_event_key', String(201), primary_key=True),  # tenantId#eventId
    Column('tenant_id', String(100), nullable=False),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    Column('result', String(20), nullable=False),  # success | error
    Column('error_message', Text, nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Index('idx_webhook_audit_tenant_id', 'tenant_id'),
    Index('idx_webhook_audit_expires_at', 'expires_at'),
)
