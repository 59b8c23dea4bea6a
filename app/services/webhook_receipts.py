"""
Webhook receipt store. A receipt is written and committed before any processing so a crash
mid-dispatch leaves a durable, retryable record. Receipts are never deleted.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models import WebhookReceipt
from app.services.time_utils import utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX = 500


def create_receipt(
    db: Session,
    *,
    service: str,
    event_type: str,
    object_id: Optional[str],
    realm_id: str,
    payload: str,
    owner: str,
) -> WebhookReceipt:
    receipt = WebhookReceipt(
        service=service,
        event_type=event_type or "unknown",
        object_id=object_id,
        realm_id=realm_id,
        payload=payload,
        processed=False,
        attempts=0,
        user_id=owner,
        created_at=utcnow(),
    )
    db.add(receipt)
    db.commit()
    db.refresh(receipt)
    return receipt


def get_receipt(db: Session, receipt_id: str) -> Optional[WebhookReceipt]:
    return db.query(WebhookReceipt).filter(WebhookReceipt.id == receipt_id).first()


def mark_processed(db: Session, receipt: WebhookReceipt, error: Optional[str] = None) -> None:
    """processed=True. An error here is informational (e.g. orphaned receipt), not a retry signal."""
    receipt.processed = True
    receipt.processed_at = utcnow()
    receipt.attempts = (receipt.attempts or 0) + 1
    receipt.error_message = error[:ERROR_MESSAGE_MAX] if error else None
    db.commit()


def mark_failed(db: Session, receipt: WebhookReceipt, error: str) -> None:
    """Record the failure; processed stays False so the drain picks it up again."""
    receipt.error_message = (error or "Processing failed")[:ERROR_MESSAGE_MAX]
    receipt.attempts = (receipt.attempts or 0) + 1
    db.commit()


def _lookback_cutoff(now: Optional[datetime], lookback_hours: Optional[int]) -> datetime:
    hours = settings.RECEIPT_LOOKBACK_HOURS if lookback_hours is None else lookback_hours
    return (now or utcnow()) - timedelta(hours=hours)


def list_pending(
    db: Session,
    *,
    now: Optional[datetime] = None,
    lookback_hours: Optional[int] = None,
    limit: Optional[int] = None,
) -> list[WebhookReceipt]:
    """Unprocessed receipts inside the lookback window, oldest first."""
    cutoff = _lookback_cutoff(now, lookback_hours)
    limit = settings.RECEIPT_DRAIN_BATCH_SIZE if limit is None else limit
    return (
        db.query(WebhookReceipt)
        .filter(WebhookReceipt.processed == False, WebhookReceipt.created_at >= cutoff)
        .order_by(WebhookReceipt.created_at.asc())
        .limit(limit)
        .all()
    )


def count_abandoned(db: Session, *, now: Optional[datetime] = None, lookback_hours: Optional[int] = None) -> int:
    """Unprocessed receipts older than the lookback window; the drain will never retry them."""
    cutoff = _lookback_cutoff(now, lookback_hours)
    return (
        db.query(WebhookReceipt)
        .filter(WebhookReceipt.processed == False, WebhookReceipt.created_at < cutoff)
        .count()
    )


def list_receipts(
    db: Session,
    *,
    owner: Optional[str] = None,
    processed: Optional[bool] = None,
    limit: int = 50,
) -> list[WebhookReceipt]:
    q = db.query(WebhookReceipt)
    if owner:
        q = q.filter(WebhookReceipt.user_id == owner)
    if processed is not None:
        q = q.filter(WebhookReceipt.processed == processed)
    return q.order_by(WebhookReceipt.created_at.desc()).limit(limit).all()
