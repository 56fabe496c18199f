"""
Database models and session management for CostLens.

Tables
------
* ``api_keys`` -- hashed API keys that resolve a caller to a user id.
* ``cloud_provider_connections`` -- stored credential sets per provider.
* ``resource_summaries`` -- per-provider resource counts.
* ``cloud_resources`` -- provider resources, including the cost snapshot.
* ``cost_recommendations`` -- parsed AI optimization recommendations.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    key_prefix = Column(String(8), nullable=False, index=True)
    key_hash = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CloudProviderConnection(Base):
    __tablename__ = "cloud_provider_connections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    credentials = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connection_user_provider"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize without credential values; only their key names leak."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "credential_fields": sorted((self.credentials or {}).keys()),
            "is_active": bool(self.is_active),
            "last_sync_at": _iso(self.last_sync_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ResourceSummary(Base):
    __tablename__ = "resource_summaries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    resource_type = Column(String(128), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    usage_percentage = Column(Float, nullable=True)
    cost = Column(Float, nullable=True)
    last_updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "resource_type", name="uq_summary_user_provider_type"
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "provider": self.provider,
            "resource_type": self.resource_type,
            "count": self.count,
            "usage_percentage": self.usage_percentage,
            "cost": self.cost,
            "last_updated_at": _iso(self.last_updated_at),
        }


class CloudResource(Base):
    __tablename__ = "cloud_resources"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    resource_id = Column(String(512), nullable=False)
    resource_type = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False)
    region = Column(String(64), nullable=True)
    tags = Column(JSON, nullable=True)
    cost_data = Column(JSON, nullable=True)
    usage_data = Column(JSON, nullable=True)
    last_updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "resource_id", name="uq_resource_user_provider_id"
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "provider": self.provider,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "name": self.name,
            "region": self.region,
            "tags": self.tags,
            "cost_data": self.cost_data,
            "usage_data": self.usage_data,
            "last_updated_at": _iso(self.last_updated_at),
        }


class CostRecommendation(Base):
    __tablename__ = "cost_recommendations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    priority = Column(String(16), nullable=False, default="medium")
    potential_savings = Column(Float, nullable=False, default=0.0)
    # Order of appearance in the source text.
    position = Column(Integer, nullable=False, default=0)
    resource_ids = Column(JSON, nullable=True)
    ai_analysis = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="open")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "provider": self.provider,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "potential_savings": self.potential_savings,
            "position": self.position,
            "resource_ids": self.resource_ids or [],
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Engine / session management
# ---------------------------------------------------------------------------


def init_engine(url: str, **kwargs: Any) -> Engine:
    """Create the global engine and session factory."""
    global _engine, _SessionLocal
    _engine = create_engine(url, pool_pre_ping=True, **kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autocommit=False, autoflush=False)
    logger.info("Database engine initialized (%s)", _engine.url.render_as_string())
    return _engine


def create_tables() -> None:
    """Create all tables that do not exist yet."""
    if _engine is None:
        raise RuntimeError("Database engine not initialized; call init_engine()")
    Base.metadata.create_all(_engine)


def get_session() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session."""
    if _SessionLocal is None:
        raise RuntimeError("Database engine not initialized; call init_engine()")
    session = _SessionLocal()
    try:
        yield session
    finally:
        session.close()
