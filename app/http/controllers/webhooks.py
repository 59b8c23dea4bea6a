"""
Webhook routes: inbound platform webhooks and receipt administration.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.auth import require_internal_token
from app.database import get_db
from app.http.dependencies import get_platform_registry
from app.http.requests.schemas import ReceiptListResponse, WebhookAcceptedResponse, WebhookReceiptResponse
from app.models import WebhookReceipt
from app.services.platforms import PlatformRegistry
from app.services.webhook_handler import WebhookPipeline
from app.services.webhook_receipts import get_receipt, list_receipts

logger = logging.getLogger(__name__)
router = APIRouter()


def _receipt_response(r: WebhookReceipt) -> WebhookReceiptResponse:
    return WebhookReceiptResponse(
        id=r.id,
        service=r.service,
        eventType=r.event_type,
        objectId=r.object_id,
        realmId=r.realm_id,
        owner=r.user_id,
        processed=bool(r.processed),
        processedAt=r.processed_at,
        errorMessage=r.error_message,
        attempts=r.attempts or 0,
        createdAt=r.created_at,
    )


@router.get("/receipts", response_model=ReceiptListResponse, dependencies=[Depends(require_internal_token)])
async def get_webhook_receipts(
    owner: Optional[str] = Query(None),
    processed: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Most recent webhook receipts, optionally filtered by owner and processed flag."""
    receipts = list_receipts(db, owner=owner, processed=processed, limit=limit)
    return ReceiptListResponse(receipts=[_receipt_response(r) for r in receipts])


@router.post(
    "/receipts/{receipt_id}/retry",
    response_model=WebhookReceiptResponse,
    dependencies=[Depends(require_internal_token)],
)
async def retry_webhook_receipt(
    receipt_id: str,
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Re-run dispatch for one stored receipt. Processed receipts are returned unchanged."""
    receipt = get_receipt(db, receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    if not receipt.processed:
        await WebhookPipeline(db, registry).dispatch_receipt(receipt)
        db.refresh(receipt)
    return _receipt_response(receipt)


@router.post("/{service}", response_model=WebhookAcceptedResponse, response_model_exclude_none=True)
async def receive_webhook(
    service: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """
    Receive a platform webhook. Persist first, process second.
    Processing failures still answer 2xx (status=accepted_with_error) so the platform
    does not retry; the stored receipt is retried by the reconciliation drain.
    """
    raw_body = await request.body()
    logger.info("Received %s webhook (%s bytes)", service, len(raw_body))
    result = await WebhookPipeline(db, registry).ingest(service, raw_body, request.headers)
    return result.to_response()
