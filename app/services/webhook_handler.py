"""
Webhook ingestion pipeline: validate, attribute to a credential, persist a receipt, then dispatch.

Persist first, process second: the receipt is committed before any remote call, so a failed or
interrupted dispatch leaves an unprocessed receipt for the reconciliation drain to retry.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.errors import DispatchFailed, IntegrationNotFound, InvalidSignature, MalformedPayload
from app.models import ApiCredential, WebhookReceipt
from app.services.cache import invalidate_cache
from app.services.credentials import find_active_by_realm
from app.services.entity_upsert import soft_delete_entity, upsert_entity
from app.services.platforms import EntityAction, PlatformRegistry
from app.services.token_refresh import ensure_valid
from app.services.webhook_receipts import create_receipt, mark_failed, mark_processed

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    receipt_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return "accepted_with_error" if self.errors else "received"

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "receiptId": self.receipt_ids[0] if self.receipt_ids else None,
        }
        if len(self.receipt_ids) > 1:
            body["receiptIds"] = list(self.receipt_ids)
        if self.errors:
            body["warning"] = "; ".join(self.errors.values())
        return body


def _lower_headers(headers) -> dict[str, str]:
    return {str(k).lower(): v for k, v in dict(headers or {}).items()}


class WebhookPipeline:
    """Ingest and dispatch webhook deliveries for every registered platform."""

    def __init__(self, db: Session, registry: PlatformRegistry):
        self.db = db
        self.registry = registry

    async def ingest(self, service: str, raw_body: bytes, headers) -> IngestResult:
        """
        Validate and record an inbound webhook, then process each delivery it carries.

        Raises UnknownService, InvalidSignature, MalformedPayload or IntegrationNotFound
        before anything is written. Dispatch failures do not raise; they are reported on
        the result and kept on the receipt.
        """
        platform = self.registry.get(service)
        headers = _lower_headers(headers)

        if not platform.verify_signature(raw_body, headers):
            logger.warning("%s webhook: signature verification failed", platform.service)
            raise InvalidSignature("Invalid webhook signature")

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("%s webhook: invalid JSON %s", platform.service, e)
            raise MalformedPayload("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise MalformedPayload("Webhook payload must be a JSON object")

        deliveries = platform.extract_deliveries(payload, headers)
        if not deliveries:
            raise MalformedPayload("Webhook payload contains no events")
        if any(not d.realm_id for d in deliveries):
            raise MalformedPayload(f"Missing account id ({', '.join(platform.realm_fields)})")
        for d in deliveries:
            if platform.parse_event(d.event_type) is not None and not d.object_id:
                raise MalformedPayload(
                    f"Missing object id ({', '.join(platform.object_id_fields)}) for {d.event_type}"
                )

        # attribute every delivery before writing any of them
        owners: dict[str, ApiCredential] = {}
        for d in deliveries:
            if d.realm_id not in owners:
                cred = find_active_by_realm(self.db, platform.service, d.realm_id)
                if cred is None:
                    logger.warning("No active %s integration found for account %s", platform.service, d.realm_id)
                    raise IntegrationNotFound(platform.service, d.realm_id)
                owners[d.realm_id] = cred

        body_text = raw_body.decode("utf-8")
        result = IngestResult()
        receipts: list[WebhookReceipt] = []
        for d in deliveries:
            receipt = create_receipt(
                self.db,
                service=platform.service,
                event_type=d.event_type,
                object_id=d.object_id,
                realm_id=d.realm_id,
                payload=body_text,
                owner=owners[d.realm_id].user_id,
            )
            logger.info("Stored %s webhook receipt %s (%s)", platform.service, receipt.id, receipt.event_type)
            receipts.append(receipt)
            result.receipt_ids.append(receipt.id)

        for receipt in receipts:
            try:
                await self.dispatch_receipt(receipt)
            except DispatchFailed as e:
                result.errors[receipt.id] = e.message
        return result

    async def dispatch_receipt(self, receipt: WebhookReceipt) -> bool:
        """
        Apply one stored receipt to the entity store.

        Returns True when the receipt was processed now, False if it already was.
        On failure the error is recorded on the receipt (processed stays False) and
        DispatchFailed is raised.
        """
        if receipt.processed:
            return False
        platform = self.registry.get(receipt.service)
        event = platform.parse_event(receipt.event_type)
        owner = receipt.user_id
        if event is not None and not receipt.object_id:
            # unprocessable; close it out
            logger.warning("Receipt %s (%s) carries no object id", receipt.id, receipt.event_type)
            mark_processed(self.db, receipt, error=f"{receipt.event_type} webhook carries no object id")
            return True
        try:
            if event is None:
                logger.info("Unhandled %s event type %s; marking processed", receipt.service, receipt.event_type)
            elif event.action == EntityAction.DELETE:
                soft_delete_entity(self.db, event.kind, receipt.object_id, owner)
            else:
                token = await ensure_valid(self.db, self.registry, receipt.service, owner)
                remote = await platform.fetch_entity(
                    token.access_token, receipt.realm_id, event.kind, receipt.object_id
                )
                if remote is None:
                    logger.info(
                        "%s %s %s no longer exists remotely; nothing to upsert",
                        receipt.service, event.kind.value, receipt.object_id,
                    )
                else:
                    upsert_entity(
                        self.db,
                        event.kind,
                        remote.external_id,
                        owner,
                        receipt.realm_id,
                        remote.attributes,
                        service=receipt.service,
                        source_updated_at=remote.source_updated_at,
                    )
            if event is not None:
                invalidate_cache(self.db, owner, receipt.service)
            mark_processed(self.db, receipt)
        except Exception as e:
            self.db.rollback()
            logger.exception("Failed to process webhook receipt %s: %s", receipt.id, e)
            mark_failed(self.db, receipt, str(e) or e.__class__.__name__)
            raise DispatchFailed(receipt.id, f"Webhook {receipt.id} stored but processing failed: {e}") from e

        logger.info("Processed webhook receipt %s", receipt.id)
        return True
