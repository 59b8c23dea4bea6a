"""
QuickBooks Online Accounting API client.
Customers map to contact records, estimates to opportunity records.
Webhooks arrive as eventNotifications envelopes that may batch several entity changes.
"""
import logging
from typing import Any, Optional

import httpx

from app.models import EntityType
from app.services.oauth_service import OAuthPlatform
from app.services.platforms import Delivery, EntityAction, PlatformConfig, RemoteEntity, WebhookEvent
from app.services.time_utils import parse_remote_timestamp

QBO_MINOR_VERSION = "65"
logger = logging.getLogger(__name__)

# entity type -> (QBO entity name, single-read path)
_QBO_ENTITIES = {
    EntityType.CONTACT: ("Customer", "customer"),
    EntityType.OPPORTUNITY: ("Estimate", "estimate"),
}


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_entity(entity_type: EntityType, obj: dict) -> Optional[RemoteEntity]:
    if not obj.get("Id"):
        return None
    if entity_type == EntityType.CONTACT:
        attributes = {
            "name": obj.get("DisplayName"),
            "firstName": obj.get("GivenName"),
            "lastName": obj.get("FamilyName"),
            "companyName": obj.get("CompanyName"),
            "email": (obj.get("PrimaryEmailAddr") or {}).get("Address"),
            "phone": (obj.get("PrimaryPhone") or {}).get("FreeFormNumber"),
            "balance": _amount(obj.get("Balance")),
            "active": obj.get("Active", True),
        }
    else:
        attributes = {
            "name": obj.get("DocNumber"),
            "status": obj.get("TxnStatus"),
            "monetaryValue": _amount(obj.get("TotalAmt")),
            "contactId": (obj.get("CustomerRef") or {}).get("value"),
            "clientName": (obj.get("CustomerRef") or {}).get("name"),
            "txnDate": obj.get("TxnDate"),
            "expirationDate": obj.get("ExpirationDate"),
        }
    return RemoteEntity(
        external_id=str(obj["Id"]),
        attributes=attributes,
        source_updated_at=parse_remote_timestamp((obj.get("MetaData") or {}).get("LastUpdatedTime")),
    )


class QuickBooksPlatform(OAuthPlatform):
    supported_entities = (EntityType.CONTACT, EntityType.OPPORTUNITY)
    realm_fields = ("realmId",)
    signature_header = "intuit-signature"
    event_map = {
        "Customer.Create": WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT),
        "Customer.Update": WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT),
        "Customer.Merge": WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT),
        "Customer.Delete": WebhookEvent(EntityType.CONTACT, EntityAction.DELETE),
        "Estimate.Create": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "Estimate.Update": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "Estimate.Emailed": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "Estimate.Void": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "Estimate.Delete": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.DELETE),
    }

    def __init__(
        self,
        config: PlatformConfig,
        *,
        api_base_url: str = "https://quickbooks.api.intuit.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        page_size: int = 100,
        max_pages: int = 50,
    ):
        super().__init__(
            config,
            transport=transport,
            timeout=timeout,
            max_retries=max_retries,
            page_size=page_size,
            max_pages=max_pages,
        )
        self.api_base_url = api_base_url.rstrip("/")

    def _company_url(self, realm_id: str) -> str:
        return f"{self.api_base_url}/v3/company/{realm_id}"

    async def fetch_entities(self, access_token: str, realm_id: str, entity_type: EntityType) -> list[RemoteEntity]:
        """Page through the query endpoint with STARTPOSITION/MAXRESULTS."""
        qbo_name, _ = _QBO_ENTITIES[entity_type]
        url = f"{self._company_url(realm_id)}/query"
        start = 1
        out: list[RemoteEntity] = []
        for _ in range(self.max_pages):
            query = f"select * from {qbo_name} STARTPOSITION {start} MAXRESULTS {self.page_size}"
            data = await self._get_json(url, access_token, params={"query": query, "minorversion": QBO_MINOR_VERSION}) or {}
            batch = (data.get("QueryResponse") or {}).get(qbo_name) or []
            for obj in batch:
                entity = _to_entity(entity_type, obj)
                if entity is not None:
                    out.append(entity)
            if len(batch) < self.page_size:
                break
            start += self.page_size
        logger.info("QuickBooks: fetched %s %s records for realm %s", len(out), qbo_name, realm_id)
        return out

    async def fetch_entity(
        self, access_token: str, realm_id: str, entity_type: EntityType, external_id: str
    ) -> Optional[RemoteEntity]:
        qbo_name, path = _QBO_ENTITIES[entity_type]
        data = await self._get_json(
            f"{self._company_url(realm_id)}/{path}/{external_id}",
            access_token,
            params={"minorversion": QBO_MINOR_VERSION},
            allow_404=True,
        )
        if data is None:
            return None
        return _to_entity(entity_type, data.get(qbo_name) or {})

    async def verify_connection(self, access_token: str, realm_id: str) -> dict[str, Any]:
        data = await self._get_json(
            f"{self._company_url(realm_id)}/companyinfo/{realm_id}",
            access_token,
            params={"minorversion": QBO_MINOR_VERSION},
        ) or {}
        info = data.get("CompanyInfo") or {}
        return {"id": realm_id, "name": info.get("CompanyName")}

    def extract_deliveries(self, payload: dict[str, Any], headers: dict[str, str]) -> list[Delivery]:
        """
        Split an eventNotifications envelope into one delivery per changed entity:
        {"eventNotifications": [{"realmId": "...", "dataChangeEvent": {"entities": [
            {"name": "Customer", "id": "1", "operation": "Update", "lastUpdated": "..."}]}}]}
        Event type is "<name>.<operation>", e.g. "Customer.Update".
        """
        notifications = payload.get("eventNotifications")
        if not isinstance(notifications, list):
            return super().extract_deliveries(payload, headers)
        out: list[Delivery] = []
        for notification in notifications:
            if not isinstance(notification, dict):
                continue
            realm_id = notification.get("realmId")
            entities = (notification.get("dataChangeEvent") or {}).get("entities") or []
            for entity in entities:
                if not isinstance(entity, dict):
                    continue
                out.append(
                    Delivery(
                        event_type=f"{entity.get('name')}.{entity.get('operation')}",
                        realm_id=str(realm_id).strip() if realm_id else None,
                        object_id=str(entity["id"]) if entity.get("id") else None,
                        payload=entity,
                    )
                )
        return out
