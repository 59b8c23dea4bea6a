"""
GoHighLevel (LeadConnector) API client - contacts and opportunities for one location.
Uses API version 2021-07-28. Never log access tokens.
Contacts paginate with startAfterId/startAfter cursors; opportunity search paginates by page.
"""
import logging
from typing import Any, Optional

from app.models import EntityType
from app.services.oauth_service import OAuthPlatform
from app.services.platforms import EntityAction, RemoteEntity, WebhookEvent
from app.services.time_utils import parse_remote_timestamp

GHL_API_BASE = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
logger = logging.getLogger(__name__)

_CONTACT_UPSERT = WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT)
_CONTACT_DELETE = WebhookEvent(EntityType.CONTACT, EntityAction.DELETE)
_OPPORTUNITY_UPSERT = WebhookEvent(EntityType.OPPORTUNITY, EntityAction.UPSERT)
_OPPORTUNITY_DELETE = WebhookEvent(EntityType.OPPORTUNITY, EntityAction.DELETE)


def _contact_attributes(c: dict) -> dict[str, Any]:
    first = (c.get("firstName") or "").strip()
    last = (c.get("lastName") or "").strip()
    return {
        "firstName": c.get("firstName"),
        "lastName": c.get("lastName"),
        "name": c.get("contactName") or f"{first} {last}".strip() or None,
        "email": c.get("email"),
        "phone": c.get("phone"),
        "source": c.get("source"),
        "tags": c.get("tags") or [],
        "customFields": c.get("customFields") or [],
        "dateAdded": c.get("dateAdded"),
        "lastActivity": c.get("lastActivity"),
        "locationId": c.get("locationId"),
    }


def _opportunity_attributes(o: dict) -> dict[str, Any]:
    try:
        monetary_value = float(o.get("monetaryValue") or 0)
    except (TypeError, ValueError):
        monetary_value = 0.0
    return {
        "name": o.get("name"),
        "status": o.get("status"),
        "pipelineId": o.get("pipelineId"),
        "pipelineStageId": o.get("pipelineStageId"),
        "monetaryValue": monetary_value,
        "source": o.get("source"),
        "assignedTo": o.get("assignedTo"),
        "contactId": o.get("contactId") or (o.get("contact") or {}).get("id"),
        "dateCreated": o.get("createdAt") or o.get("dateAdded"),
        "lastStatusChange": o.get("lastStatusChangeAt"),
        "locationId": o.get("locationId"),
    }


def _to_entity(entity_type: EntityType, obj: dict) -> Optional[RemoteEntity]:
    external_id = obj.get("id")
    if not external_id:
        return None
    attributes = _contact_attributes(obj) if entity_type == EntityType.CONTACT else _opportunity_attributes(obj)
    return RemoteEntity(
        external_id=str(external_id),
        attributes=attributes,
        source_updated_at=parse_remote_timestamp(obj.get("dateUpdated") or obj.get("updatedAt")),
    )


class GoHighLevelPlatform(OAuthPlatform):
    """GoHighLevel marketplace app: body-credential token endpoint, location-scoped data API."""

    supported_entities = (EntityType.CONTACT, EntityType.OPPORTUNITY)
    event_type_headers = ("x-ghl-event-type", "x-event-type")
    realm_fields = ("locationId", "location_id")
    object_id_fields = ("id", "contactId", "opportunityId")
    signature_header = "x-ghl-signature"
    event_map = {
        "ContactCreate": _CONTACT_UPSERT,
        "ContactUpdate": _CONTACT_UPSERT,
        "ContactTagUpdate": _CONTACT_UPSERT,
        "ContactDndUpdate": _CONTACT_UPSERT,
        "ContactDelete": _CONTACT_DELETE,
        "OpportunityCreate": _OPPORTUNITY_UPSERT,
        "OpportunityUpdate": _OPPORTUNITY_UPSERT,
        "OpportunityStatusUpdate": _OPPORTUNITY_UPSERT,
        "OpportunityStageUpdate": _OPPORTUNITY_UPSERT,
        "OpportunityMonetaryValueUpdate": _OPPORTUNITY_UPSERT,
        "OpportunityAssignedToUpdate": _OPPORTUNITY_UPSERT,
        "OpportunityDelete": _OPPORTUNITY_DELETE,
    }

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Version": GHL_API_VERSION,
            "Accept": "application/json",
        }

    def _realm_from_token_response(self, payload: dict[str, Any]) -> Optional[str]:
        return payload.get("locationId") or None

    async def fetch_entities(self, access_token: str, realm_id: str, entity_type: EntityType) -> list[RemoteEntity]:
        if entity_type == EntityType.CONTACT:
            raw = await self._fetch_all_contacts(access_token, realm_id)
        else:
            raw = await self._fetch_all_opportunities(access_token, realm_id)
        entities = [e for e in (_to_entity(entity_type, obj) for obj in raw) if e is not None]
        logger.info("GoHighLevel: fetched %s %s records for location %s", len(entities), entity_type.value, realm_id)
        return entities

    async def _fetch_all_contacts(self, access_token: str, location_id: str) -> list[dict]:
        """GET /contacts/ following meta.startAfterId/startAfter until a short page."""
        url = f"{GHL_API_BASE}/contacts/"
        params: dict[str, Any] = {"locationId": location_id, "limit": self.page_size}
        out: list[dict] = []
        for _ in range(self.max_pages):
            data = await self._get_json(url, access_token, params=params) or {}
            batch = data.get("contacts") or []
            out.extend(batch)
            meta = data.get("meta") or {}
            start_after_id = meta.get("startAfterId")
            if len(batch) < self.page_size or not start_after_id:
                break
            params = {
                "locationId": location_id,
                "limit": self.page_size,
                "startAfterId": start_after_id,
                "startAfter": meta.get("startAfter"),
            }
        return out

    async def _fetch_all_opportunities(self, access_token: str, location_id: str) -> list[dict]:
        """GET /opportunities/search by page until meta.nextPage is empty."""
        url = f"{GHL_API_BASE}/opportunities/search"
        page = 1
        out: list[dict] = []
        for _ in range(self.max_pages):
            data = await self._get_json(
                url, access_token, params={"location_id": location_id, "limit": self.page_size, "page": page}
            ) or {}
            batch = data.get("opportunities") or []
            out.extend(batch)
            next_page = (data.get("meta") or {}).get("nextPage")
            if not batch or not next_page:
                break
            page = int(next_page)
        return out

    async def fetch_entity(
        self, access_token: str, realm_id: str, entity_type: EntityType, external_id: str
    ) -> Optional[RemoteEntity]:
        path = "contacts" if entity_type == EntityType.CONTACT else "opportunities"
        data = await self._get_json(f"{GHL_API_BASE}/{path}/{external_id}", access_token, allow_404=True)
        if data is None:
            return None
        key = "contact" if entity_type == EntityType.CONTACT else "opportunity"
        return _to_entity(entity_type, data.get(key) or data)

    async def verify_connection(self, access_token: str, realm_id: str) -> dict[str, Any]:
        """GET /locations/{id}; returns basic location info."""
        data = await self._get_json(f"{GHL_API_BASE}/locations/{realm_id}", access_token) or {}
        location = data.get("location") or data
        return {"id": location.get("id") or realm_id, "name": location.get("name")}
