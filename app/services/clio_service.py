"""
Clio Manage API v4 client. Contacts map to contact records, matters to opportunity records.
"""
import logging
from typing import Any, Optional

from app.models import EntityType
from app.services.oauth_service import OAuthPlatform
from app.services.platforms import EntityAction, RemoteEntity, WebhookEvent
from app.services.time_utils import parse_remote_timestamp

CLIO_API_BASE = "https://app.clio.com/api/v4"
logger = logging.getLogger(__name__)

CONTACT_FIELDS = "id,etag,name,first_name,last_name,type,primary_email_address,primary_phone_number,created_at,updated_at"
MATTER_FIELDS = "id,etag,display_number,description,status,client{id,name},practice_area{name},open_date,close_date,created_at,updated_at"


def _to_entity(entity_type: EntityType, obj: dict) -> Optional[RemoteEntity]:
    if not obj.get("id"):
        return None
    if entity_type == EntityType.CONTACT:
        attributes = {
            "name": obj.get("name"),
            "firstName": obj.get("first_name"),
            "lastName": obj.get("last_name"),
            "type": obj.get("type"),
            "email": obj.get("primary_email_address"),
            "phone": obj.get("primary_phone_number"),
            "dateAdded": obj.get("created_at"),
        }
    else:
        client = obj.get("client") or {}
        attributes = {
            "name": obj.get("display_number"),
            "description": obj.get("description"),
            "status": obj.get("status"),
            "contactId": str(client["id"]) if client.get("id") else None,
            "clientName": client.get("name"),
            "practiceArea": (obj.get("practice_area") or {}).get("name"),
            "openDate": obj.get("open_date"),
            "closeDate": obj.get("close_date"),
            "dateCreated": obj.get("created_at"),
        }
    return RemoteEntity(
        external_id=str(obj["id"]),
        attributes=attributes,
        source_updated_at=parse_remote_timestamp(obj.get("updated_at")),
    )


class ClioPlatform(OAuthPlatform):
    supported_entities = (EntityType.CONTACT, EntityType.OPPORTUNITY)
    event_type_headers = ("x-clio-event-type", "x-event-type")
    realm_fields = ("accountId", "account_id")
    object_id_fields = ("id", "objectId")
    signature_header = "x-hook-signature"
    event_map = {
        "contact.created": WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT),
        "contact.updated": WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT),
        "contact.deleted": WebhookEvent(EntityType.CONTACT, EntityAction.DELETE),
        "matter.created": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "matter.updated": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT),
        "matter.deleted": WebhookEvent(EntityType.OPPORTUNITY, EntityAction.DELETE),
    }

    def _realm_from_token_response(self, payload: dict[str, Any]) -> Optional[str]:
        account_id = payload.get("account_id") or payload.get("accountId")
        return str(account_id) if account_id else None

    @staticmethod
    def _collection(entity_type: EntityType) -> tuple[str, str]:
        if entity_type == EntityType.CONTACT:
            return "contacts", CONTACT_FIELDS
        return "matters", MATTER_FIELDS

    async def fetch_entities(self, access_token: str, realm_id: str, entity_type: EntityType) -> list[RemoteEntity]:
        """All pages of contacts.json / matters.json, following meta.paging.next."""
        collection, fields = self._collection(entity_type)
        url: Optional[str] = f"{CLIO_API_BASE}/{collection}.json"
        params: Optional[dict[str, Any]] = {"limit": self.page_size, "fields": fields}
        out: list[RemoteEntity] = []
        for _ in range(self.max_pages):
            if not url:
                break
            data = await self._get_json(url, access_token, params=params) or {}
            for obj in data.get("data") or []:
                entity = _to_entity(entity_type, obj)
                if entity is not None:
                    out.append(entity)
            # next is an absolute URL that already carries the page_token
            url = ((data.get("meta") or {}).get("paging") or {}).get("next")
            params = None
        logger.info("Clio: fetched %s %s records for account %s", len(out), entity_type.value, realm_id)
        return out

    async def fetch_entity(
        self, access_token: str, realm_id: str, entity_type: EntityType, external_id: str
    ) -> Optional[RemoteEntity]:
        collection, fields = self._collection(entity_type)
        data = await self._get_json(
            f"{CLIO_API_BASE}/{collection}/{external_id}.json", access_token, params={"fields": fields}, allow_404=True
        )
        if data is None:
            return None
        return _to_entity(entity_type, data.get("data") or {})

    async def verify_connection(self, access_token: str, realm_id: str) -> dict[str, Any]:
        data = await self._get_json(f"{CLIO_API_BASE}/users/who_am_i.json", access_token) or {}
        user = data.get("data") or {}
        return {"id": str(user.get("id") or realm_id), "name": user.get("name")}
