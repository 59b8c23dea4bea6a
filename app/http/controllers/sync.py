"""
Sync routes: reconciliation trigger (cron), single-integration resync, scheduler status.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.auth import require_internal_token
from app.database import get_db
from app.http.dependencies import get_platform_registry
from app.http.requests.schemas import ReconciliationSummaryResponse
from app.services.credentials import get_credential
from app.services.platforms import PlatformRegistry
from app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_internal_token)])


@router.api_route("/cron", methods=["GET", "POST"], response_model=ReconciliationSummaryResponse)
async def run_reconciliation(
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Full resync of every active integration, then drain pending webhook receipts."""
    logger.info("Reconciliation triggered via HTTP")
    return await SyncEngine(db, registry).run_reconciliation()


@router.get("/workers")
async def get_workers():
    """Status of the in-process scheduler."""
    from app.workers.scheduler import get_workers_status
    return get_workers_status()


@router.post("/{service}/{owner}")
async def resync_integration(
    service: str,
    owner: str,
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Resync one integration now."""
    platform = registry.get(service)
    cred = get_credential(db, platform.service, owner)
    if not cred or not cred.is_active:
        raise HTTPException(status_code=404, detail="Integration not found")
    return await SyncEngine(db, registry).resync_credential(cred)
