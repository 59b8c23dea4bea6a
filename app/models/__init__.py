"""
SQLAlchemy models for credentials, webhook receipts, mirrored entity records,
derived-results cache and per-integration sync status.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, UniqueConstraint, Index
from app.database import Base
import enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class EntityType(str, enum.Enum):
    CONTACT = "contact"
    OPPORTUNITY = "opportunity"

class SyncState(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    NEEDS_RECONNECT = "needs_reconnect"

# Models
class ApiCredential(Base):
    """One row per (service, owner). Tokens are Fernet-encrypted; the row is never deleted."""
    __tablename__ = "api_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    service = Column("service", String, nullable=False, index=True)
    user_id = Column("user_id", String, nullable=False, index=True)
    access_token = Column("access_token", String, nullable=True)  # Encrypted
    refresh_token = Column("refresh_token", String, nullable=True)  # Encrypted
    expires_at = Column("expires_at", DateTime(timezone=True), nullable=True)
    realm_id = Column("realm_id", String, nullable=True, index=True)
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    version = Column("version", Integer, nullable=False)
    created_at = Column("created_at", DateTime(timezone=True), default=_utcnow)
    updated_at = Column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("service", "user_id", name="uq_api_credentials_service_user"),)
    __mapper_args__ = {"version_id_col": version}


class WebhookReceipt(Base):
    """One inbound webhook delivery. Payload is immutable; processed flips false->true once."""
    __tablename__ = "webhook_receipts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    service = Column("service", String, nullable=False, index=True)
    event_type = Column("event_type", String, nullable=False, index=True)
    object_id = Column("object_id", String, nullable=True)
    realm_id = Column("realm_id", String, nullable=False, index=True)
    payload = Column("payload", Text, nullable=False)
    processed = Column("processed", Boolean, default=False, nullable=False)
    processed_at = Column("processed_at", DateTime(timezone=True), nullable=True)
    error_message = Column("error_message", String, nullable=True)
    attempts = Column("attempts", Integer, default=0, nullable=False)
    user_id = Column("user_id", String, nullable=False, index=True)
    created_at = Column("created_at", DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_webhook_receipts_processed_created", "processed", "created_at"),)


class EntityRecord(Base):
    """Local mirror of one remote Contact or Opportunity, deduplicated by (type, external id, owner)."""
    __tablename__ = "entity_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type = Column("entity_type", String, nullable=False, index=True)
    external_id = Column("external_id", String, nullable=False)
    user_id = Column("user_id", String, nullable=False, index=True)
    service = Column("service", String, nullable=True)
    realm_id = Column("realm_id", String, nullable=True)
    attributes = Column("attributes", JSON, nullable=False, default=dict)
    source_updated_at = Column("source_updated_at", DateTime(timezone=True), nullable=True)
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime(timezone=True), default=_utcnow)
    updated_at = Column("updated_at", DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "external_id", "user_id", name="uq_entity_records_type_external_user"),
    )


class CacheEntry(Base):
    """Derived-results blob owned by the reporting layer; the sync core only deletes rows."""
    __tablename__ = "cache_entries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column("user_id", String, nullable=False, index=True)
    cache_key = Column("cache_key", String, nullable=False)
    cache_data = Column("cache_data", Text, nullable=False)
    updated_at = Column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "cache_key", name="uq_cache_entries_user_key"),)


class SyncStatus(Base):
    """Outcome of the latest reconciliation resync per (owner, service)."""
    __tablename__ = "sync_statuses"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column("user_id", String, nullable=False, index=True)
    service = Column("service", String, nullable=False)
    status = Column("status", String, nullable=False)
    error_message = Column("error_message", String, nullable=True)
    last_synced_at = Column("last_synced_at", DateTime(timezone=True), nullable=True)
    updated_at = Column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "service", name="uq_sync_statuses_user_service"),)
