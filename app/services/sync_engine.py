"""
Reconciliation engine: periodic full resync of every active integration, then a drain of
webhook receipts that were stored but never processed.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import DispatchFailed, NeedsReconnect
from app.models import ApiCredential, SyncState, SyncStatus
from app.services.cache import invalidate_cache
from app.services.credentials import get_credential, list_resyncable_credentials
from app.services.entity_upsert import upsert_entity
from app.services.platforms import PlatformRegistry
from app.services.time_utils import utcnow
from app.services.token_refresh import ensure_valid
from app.services.webhook_handler import WebhookPipeline
from app.services.webhook_receipts import count_abandoned, list_pending, mark_processed

logger = logging.getLogger(__name__)

NO_INTEGRATION_ERROR = "No active integration found"


def get_sync_status(db: Session, owner: str, service: str) -> Optional[SyncStatus]:
    return (
        db.query(SyncStatus)
        .filter(SyncStatus.user_id == owner, SyncStatus.service == service)
        .first()
    )


def record_sync_status(
    db: Session,
    owner: str,
    service: str,
    state: SyncState,
    error: Optional[str] = None,
) -> SyncStatus:
    """Upsert the latest resync outcome for (owner, service)."""
    row = get_sync_status(db, owner, service)
    if row is None:
        row = SyncStatus(user_id=owner, service=service)
        db.add(row)
    now = utcnow()
    row.status = state.value
    row.error_message = error[:500] if error else None
    row.updated_at = now
    if state == SyncState.SUCCESS:
        row.last_synced_at = now
    db.commit()
    return row


class SyncEngine:
    """Background sync engine for automated reconciliation"""

    def __init__(
        self,
        db: Session,
        registry: PlatformRegistry,
        *,
        delay_seconds: Optional[float] = None,
        lookback_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.registry = registry
        self.delay_seconds = settings.RECONCILIATION_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.lookback_hours = settings.RECEIPT_LOOKBACK_HOURS if lookback_hours is None else lookback_hours
        self.batch_size = settings.RECEIPT_DRAIN_BATCH_SIZE if batch_size is None else batch_size

    async def resync_credential(self, cred: ApiCredential) -> dict[str, Any]:
        """Full fetch of every supported entity type for one credential. Never raises."""
        service, owner = cred.service, cred.user_id
        result: dict[str, Any] = {"service": service, "owner": owner}
        try:
            platform = self.registry.get(service)
            token = await ensure_valid(self.db, self.registry, service, owner)
            realm_id = token.account_id or cred.realm_id
            counts: dict[str, int] = {}
            for entity_type in platform.supported_entities:
                remote_entities = await platform.fetch_entities(token.access_token, realm_id, entity_type)
                for remote in remote_entities:
                    upsert_entity(
                        self.db,
                        entity_type,
                        remote.external_id,
                        owner,
                        realm_id,
                        remote.attributes,
                        service=service,
                        source_updated_at=remote.source_updated_at,
                        reactivate=True,
                    )
                counts[entity_type.value] = len(remote_entities)
            record_sync_status(self.db, owner, service, SyncState.SUCCESS)
            invalidate_cache(self.db, owner, service)
            logger.info(f"Resynced {service} for owner {owner}: {counts}")
            result.update({"status": "success", "counts": counts, "tokenRefreshed": token.was_refreshed})
        except NeedsReconnect as e:
            self.db.rollback()
            logger.warning(f"Resync {service} for owner {owner} needs reconnect: {e.message}")
            record_sync_status(self.db, owner, service, SyncState.NEEDS_RECONNECT, e.message)
            result.update({"status": "error", "error": e.message, "needsReconnect": True})
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Resync {service} for owner {owner} failed: {e}")
            record_sync_status(self.db, owner, service, SyncState.ERROR, str(e))
            result.update({"status": "error", "error": str(e)})
        return result

    async def drain_receipts(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Retry unprocessed receipts inside the lookback window, oldest first."""
        pipeline = WebhookPipeline(self.db, self.registry)
        pending = list_pending(self.db, now=now, lookback_hours=self.lookback_hours, limit=self.batch_size)
        logger.info(f"Processing {len(pending)} unprocessed webhook receipts")
        processed = failed = 0
        for receipt in pending:
            cred = None
            if receipt.service in self.registry:
                cred = get_credential(self.db, receipt.service, receipt.user_id)
            if cred is None or not cred.is_active or cred.realm_id != receipt.realm_id:
                mark_processed(self.db, receipt, error=NO_INTEGRATION_ERROR)
                processed += 1
                continue
            try:
                if await pipeline.dispatch_receipt(receipt):
                    processed += 1
            except DispatchFailed as e:
                logger.warning(f"Receipt {receipt.id} still failing: {e.message}")
                failed += 1
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Unexpected error draining receipt {receipt.id}: {e}")
                failed += 1

        abandoned = count_abandoned(self.db, now=now, lookback_hours=self.lookback_hours)
        if abandoned:
            logger.warning(
                f"{abandoned} unprocessed webhook receipts are older than {self.lookback_hours}h and will not be retried"
            )
        return {"processed": processed, "failed": failed, "abandoned": abandoned}

    async def run_reconciliation(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Resync every active integration sequentially, then drain pending receipts."""
        credentials = list_resyncable_credentials(self.db)
        logger.info(f"Starting reconciliation for {len(credentials)} integrations")
        results: list[dict[str, Any]] = []
        for index, cred in enumerate(credentials):
            if index and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)
            results.append(await self.resync_credential(cred))

        drained = await self.drain_receipts(now=now)
        successful = sum(1 for r in results if r.get("status") == "success")
        summary = {
            "totalIntegrations": len(credentials),
            "successfulSyncs": successful,
            "failedSyncs": len(results) - successful,
            "webhooksProcessed": drained["processed"],
            "webhooksFailed": drained["failed"],
            "webhooksAbandoned": drained["abandoned"],
            "completedAt": utcnow().isoformat(),
            "results": results,
        }
        logger.info(
            f"Reconciliation complete: {successful}/{len(credentials)} integrations synced, "
            f"{drained['processed']} receipts processed, {drained['failed']} failed"
        )
        return summary
