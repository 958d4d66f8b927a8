"""
Database tables and engine helpers for checkout sessions and webhook events.

Uses async SQLAlchemy; PostgreSQL via asyncpg in production, any other
async driver (e.g. aiosqlite) works for tests and local development.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, even on backends that drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name != "postgresql":
            # stored naive, always UTC
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# ── Checkout sessions ────────────────────────────────────────────────────

class CheckoutSessionRow(Base):
    __tablename__ = "acp_sessions"

    session_id = Column(String(255), primary_key=True)
    intent_id = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(String(50), nullable=False, default="pending", index=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    buyer = Column(JSONType, nullable=True)
    line_items = Column(JSONType, default=list)
    total_details = Column(JSONType, default=dict)
    fulfillment_options = Column(JSONType, default=list)
    fulfillment_address = Column(JSONType, nullable=True)
    session_metadata = Column("metadata", JSONType, default=dict)
    order_id = Column(String(255), nullable=True)
    payment_id = Column(String(255), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    # set while a completion is charging; cleared when the outcome is written
    completing_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


# ── Webhook events ───────────────────────────────────────────────────────

class WebhookEventRow(Base):
    __tablename__ = "acp_webhooks"

    webhook_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    order_id = Column(String(255), nullable=False, index=True)
    session_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSONType, nullable=False)
    status = Column(String(50), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(UTCDateTime, nullable=True, index=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)


# ── Helpers ──────────────────────────────────────────────────────────────

def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    if database_url.startswith("postgresql"):
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)
    return create_async_engine(database_url, echo=False, **kwargs)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, metadata=Base.metadata) -> None:
    """Create all tables (for development — use Alembic for production)."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
