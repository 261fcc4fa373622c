"""
Storage for planbot: one SQLAlchemy engine per process and the Core tables.

PostgreSQL in production, a SQLite file in tests. Sessions come from
get_db_session(), which commits on success and rolls back on error.
"""
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    create_engine,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from planbot.core.config import settings

metadata = MetaData()

# Integer surrogate keys autoincrement on SQLite only when declared INTEGER
SurrogateKey = BigInteger().with_variant(Integer, "sqlite")

_SERVER_POOL = dict(poolclass=QueuePool, pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=3600, pool_pre_ping=True)
_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    url = os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL
    # Hosting providers hand out postgres:// which SQLAlchemy no longer accepts
    if url and url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Build the process engine, replacing any previous one's session factory.

    SQLite gets a 30s busy timeout so concurrent quota writers wait instead of
    failing; server databases get a pre-pinged QueuePool.
    """
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not set (environment or .env)")

    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in _IN_MEMORY_URLS:
            options["poolclass"] = StaticPool
    else:
        options = dict(_SERVER_POOL)

    _engine = create_engine(url, echo=False, **options)
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine, _session_factory = None, None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session():
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


def upsert(session: Session, table: Table):
    """INSERT for `table` with on_conflict_do_update/do_nothing (PostgreSQL, SQLite)."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


# Users: one row per Telegram identity, holds tier, premium expiry and daily counters
users = Table(
    'app_users',
    metadata,
    Column('tg_id', BigInteger, primary_key=True, autoincrement=False),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('premium_until', DateTime(timezone=True), nullable=True),
    Column('plans_left', Integer, nullable=False, server_default='0'),
    Column('media_left', Integer, nullable=False, server_default='0'),
    Column('quota_next_reset_at', DateTime(timezone=True), nullable=False),
    Column('current_plan', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('plans_left >= 0', name='ck_app_users_plans_left_non_negative'),
    CheckConstraint('media_left >= 0', name='ck_app_users_media_left_non_negative'),
    # Sweep worker scans by (tier, deadline)
    Index('idx_app_users_tier_reset', 'tier', 'quota_next_reset_at'),
)

# Chats: client-chosen chat ids scoped per user
chats = Table(
    'chats',
    metadata,
    Column('tg_id', BigInteger, ForeignKey('app_users.tg_id'), primary_key=True, autoincrement=False),
    Column('chat_id', String(100), primary_key=True),
    Column('title', Text, nullable=True),
    Column('emoji', String(32), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_chats_user_updated', 'tg_id', 'updated_at'),
)

# Messages: msg_id is client-generated and optional; NULLs never conflict
messages = Table(
    'messages',
    metadata,
    Column('id', SurrogateKey, primary_key=True, autoincrement=True),
    Column('tg_id', BigInteger, ForeignKey('app_users.tg_id'), nullable=False),
    Column('msg_id', String(100), nullable=True),
    Column('chat_id', String(100), nullable=False),
    Column('role', String(20), nullable=False),
    Column('content', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('tg_id', 'msg_id', name='uq_messages_user_msg_id'),
    Index('idx_messages_user_chat_created', 'tg_id', 'chat_id', 'created_at'),
    Index('idx_messages_user_created', 'tg_id', 'created_at'),
)

# Task state: one opaque JSON document per user
task_states = Table(
    'task_states',
    metadata,
    Column('tg_id', BigInteger, ForeignKey('app_users.tg_id'), primary_key=True, autoincrement=False),
    Column('state', JSON, nullable=False),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)

# Payments: (tg_id, provider_charge_id) is the idempotency barrier
payments = Table(
    'payments',
    metadata,
    Column('id', SurrogateKey, primary_key=True, autoincrement=True),
    Column('tg_id', BigInteger, ForeignKey('app_users.tg_id'), nullable=False, index=True),
    Column('provider_charge_id', String(255), nullable=False),
    Column('telegram_charge_id', String(255), nullable=True),
    Column('currency', String(10), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('plan', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('tg_id', 'provider_charge_id', name='uq_payments_user_charge'),
)

# Idempotency keys table (webhook update dedupe)
idempotency_keys = Table(
    'idempotency_keys',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('scope', String(100), nullable=True, index=True),
    Index('idx_idempotency_keys_scope_created', 'scope', 'created_at'),
)
