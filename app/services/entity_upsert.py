"""
Entity upsert layer: last-write-wins mirror of remote contacts/opportunities keyed by
(entity_type, external_id, owner). Deletes are soft (is_active=False).

Writes carrying a remote last-modified timestamp older than the stored one are skipped,
so a late webhook cannot overwrite newer data from a resync.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import EntityRecord, EntityType
from app.services.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


def _type_value(entity_type) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)


def get_entity(db: Session, entity_type, external_id: str, owner: str) -> Optional[EntityRecord]:
    return (
        db.query(EntityRecord)
        .filter(
            EntityRecord.entity_type == _type_value(entity_type),
            EntityRecord.external_id == str(external_id),
            EntityRecord.user_id == owner,
        )
        .first()
    )


def _apply(
    record: EntityRecord,
    account_id: Optional[str],
    attributes: dict[str, Any],
    service: Optional[str],
    source_updated_at: Optional[datetime],
    now: datetime,
) -> None:
    record.attributes = dict(attributes or {})
    record.realm_id = account_id
    if service:
        record.service = service
    if source_updated_at is not None:
        record.source_updated_at = source_updated_at
    record.updated_at = now


def _update_existing(
    record: EntityRecord,
    account_id: Optional[str],
    attributes: dict[str, Any],
    service: Optional[str],
    incoming_ts: Optional[datetime],
    now: datetime,
    reactivate: bool,
) -> bool:
    """Apply an update to a stored row. Returns False when the incoming write is stale."""
    stored_ts = as_utc(record.source_updated_at)
    if incoming_ts is not None and stored_ts is not None and incoming_ts < stored_ts:
        logger.info(
            "Skipping stale %s %s for owner %s (incoming %s < stored %s)",
            record.entity_type, record.external_id, record.user_id, incoming_ts, stored_ts,
        )
        return False
    _apply(record, account_id, attributes, service, incoming_ts, now)
    if reactivate and not record.is_active:
        record.is_active = True
        logger.info("Reactivated %s %s for owner %s", record.entity_type, record.external_id, record.user_id)
    return True


def upsert_entity(
    db: Session,
    entity_type,
    external_id: str,
    owner: str,
    account_id: Optional[str],
    attributes: dict[str, Any],
    *,
    service: Optional[str] = None,
    source_updated_at: Optional[datetime] = None,
    reactivate: bool = False,
) -> EntityRecord:
    """
    Create or update the record for (entity_type, external_id, owner). Commits.

    New rows are created active. An existing soft-deleted row is only reactivated
    when reactivate=True.
    """
    now = utcnow()
    type_value = _type_value(entity_type)
    external_id = str(external_id)
    incoming_ts = as_utc(source_updated_at)

    record = get_entity(db, type_value, external_id, owner)
    if record is not None:
        if _update_existing(record, account_id, attributes, service, incoming_ts, now, reactivate):
            db.commit()
        return record

    record = EntityRecord(
        entity_type=type_value,
        external_id=external_id,
        user_id=owner,
        is_active=True,
        created_at=now,
    )
    _apply(record, account_id, attributes, service, incoming_ts, now)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # concurrent insert of the same key; the winner's row gets the same checks as any update
        db.rollback()
        record = get_entity(db, type_value, external_id, owner)
        if record is None:
            raise
        if _update_existing(record, account_id, attributes, service, incoming_ts, now, reactivate):
            db.commit()
    return record


def soft_delete_entity(db: Session, entity_type, external_id: str, owner: str) -> bool:
    """Mark the record inactive. Returns False (no-op) when no such record exists."""
    record = get_entity(db, entity_type, external_id, owner)
    if record is None:
        logger.info("Soft delete for unknown %s %s (owner %s); nothing to do", _type_value(entity_type), external_id, owner)
        return False
    record.is_active = False
    record.updated_at = utcnow()
    db.commit()
    return True
