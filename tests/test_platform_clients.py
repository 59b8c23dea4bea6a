"""
Platform data clients - pagination, field mapping and webhook event parsing
"""
from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.errors import RemoteApiError, UnknownService
from app.models import EntityType
from app.services.platforms import EntityAction, WebhookEvent
from tests.fakes import QBO_API_BASE

GHL = "https://services.leadconnectorhq.com"
CLIO = "https://app.clio.com/api/v4"


class TestGoHighLevel:
    @pytest.mark.asyncio
    async def test_contacts_follow_start_after_cursor(self, registry, remote) -> None:
        def contacts(request: httpx.Request) -> httpx.Response:
            if "startAfterId" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "contacts": [{"id": "c1", "firstName": "Ada"}, {"id": "c2", "lastName": "Hopper"}],
                        "meta": {"startAfterId": "c2", "startAfter": 1700000000000},
                    },
                )
            assert request.url.params["startAfterId"] == "c2"
            return httpx.Response(200, json={"contacts": [{"id": "c3"}], "meta": {}})

        remote.on("GET", f"{GHL}/contacts/", handler=contacts)

        entities = await registry.get("gohighlevel").fetch_entities("tok", "loc-1", EntityType.CONTACT)

        assert [e.external_id for e in entities] == ["c1", "c2", "c3"]
        assert entities[0].attributes["name"] == "Ada"
        assert entities[1].attributes["name"] == "Hopper"
        first = remote.requests[0]
        assert first.url.params["locationId"] == "loc-1"
        assert first.url.params["limit"] == "2"

    @pytest.mark.asyncio
    async def test_opportunities_follow_next_page(self, registry, remote) -> None:
        def search(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            if page == "1":
                return httpx.Response(
                    200, json={"opportunities": [{"id": "o1", "monetaryValue": 250}], "meta": {"nextPage": 2}}
                )
            return httpx.Response(200, json={"opportunities": [{"id": "o2", "monetaryValue": "bad"}], "meta": {}})

        remote.on("GET", f"{GHL}/opportunities/search", handler=search)

        entities = await registry.get("gohighlevel").fetch_entities("tok", "loc-1", EntityType.OPPORTUNITY)

        assert [e.external_id for e in entities] == ["o1", "o2"]
        assert entities[0].attributes["monetaryValue"] == 250.0
        assert entities[1].attributes["monetaryValue"] == 0.0

    @pytest.mark.asyncio
    async def test_remote_error_raises(self, registry, remote) -> None:
        remote.on("GET", f"{GHL}/contacts/", status=429, json={"message": "slow down"})

        with pytest.raises(RemoteApiError) as exc:
            await registry.get("gohighlevel").fetch_entities("tok", "loc-1", EntityType.CONTACT)
        assert exc.value.status == 429

    def test_event_parsing(self, registry) -> None:
        ghl = registry.get("gohighlevel")

        assert ghl.parse_event("ContactCreate") == WebhookEvent(EntityType.CONTACT, EntityAction.UPSERT)
        assert ghl.parse_event("OpportunityDelete") == WebhookEvent(EntityType.OPPORTUNITY, EntityAction.DELETE)
        assert ghl.parse_event("InboundMessage") is None
        assert ghl.parse_event("") is None

    def test_authorize_url(self, registry) -> None:
        url = registry.get("gohighlevel").authorize_url("https://api.example.com/cb", "state-1")

        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        assert params == {
            "response_type": "code",
            "client_id": "ghl-client",
            "redirect_uri": "https://api.example.com/cb",
            "state": "state-1",
            "scope": "contacts.readonly",
        }


class TestClio:
    @pytest.mark.asyncio
    async def test_follows_paging_next(self, registry, remote) -> None:
        next_url = f"{CLIO}/contacts.json?page_token=abc"

        def contacts(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("page_token") == "abc":
                return httpx.Response(200, json={"data": [{"id": 3, "name": "Third"}], "meta": {"paging": {}}})
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": 1, "name": "First", "updated_at": "2026-10-01T10:00:00-04:00"},
                        {"id": 2, "name": "Second"},
                    ],
                    "meta": {"paging": {"next": next_url}},
                },
            )

        remote.on("GET", f"{CLIO}/contacts.json", handler=contacts)

        entities = await registry.get("clio").fetch_entities("tok", "acct-1", EntityType.CONTACT)

        assert [e.external_id for e in entities] == ["1", "2", "3"]
        assert entities[0].source_updated_at == datetime(2026, 10, 1, 14, 0, tzinfo=timezone.utc)
        assert "fields" in remote.requests[0].url.params
        assert str(remote.requests[1].url) == next_url

    @pytest.mark.asyncio
    async def test_matter_maps_client(self, registry, remote) -> None:
        remote.on(
            "GET",
            f"{CLIO}/matters/8.json",
            json={"data": {"id": 8, "display_number": "00008-Smith", "status": "Open", "client": {"id": 4, "name": "Smith"}}},
        )

        entity = await registry.get("clio").fetch_entity("tok", "acct-1", EntityType.OPPORTUNITY, "8")

        assert entity.external_id == "8"
        assert entity.attributes["name"] == "00008-Smith"
        assert entity.attributes["contactId"] == "4"

    @pytest.mark.asyncio
    async def test_missing_object_returns_none(self, registry, remote) -> None:
        assert await registry.get("clio").fetch_entity("tok", "acct-1", EntityType.CONTACT, "404") is None


class TestQuickBooks:
    @pytest.mark.asyncio
    async def test_query_paginates_by_start_position(self, registry, remote) -> None:
        def query(request: httpx.Request) -> httpx.Response:
            q = request.url.params["query"]
            if "STARTPOSITION 1 " in q:
                customers = [
                    {"Id": "1", "DisplayName": "Acme", "MetaData": {"LastUpdatedTime": "2026-10-01T10:00:00-07:00"}},
                    {"Id": "2", "DisplayName": "Globex", "Balance": "12.5"},
                ]
            else:
                assert "STARTPOSITION 3 MAXRESULTS 2" in q
                customers = [{"Id": "3", "DisplayName": "Initech"}]
            return httpx.Response(200, json={"QueryResponse": {"Customer": customers}})

        remote.on("GET", f"{QBO_API_BASE}/v3/company/realm-1/query", handler=query)

        entities = await registry.get("quickbooks").fetch_entities("tok", "realm-1", EntityType.CONTACT)

        assert [e.external_id for e in entities] == ["1", "2", "3"]
        assert entities[0].source_updated_at == datetime(2026, 10, 1, 17, 0, tzinfo=timezone.utc)
        assert entities[1].attributes["balance"] == 12.5
        assert remote.requests[0].url.params["minorversion"] == "65"
        assert remote.requests[0].headers["authorization"] == "Bearer tok"

    def test_unbatched_payload_falls_back_to_flat_fields(self, registry) -> None:
        deliveries = registry.get("quickbooks").extract_deliveries(
            {"realmId": "realm-1", "id": "5", "type": "Customer.Update"}, {}
        )

        assert len(deliveries) == 1
        assert deliveries[0].realm_id == "realm-1"
        assert deliveries[0].event_type == "Customer.Update"


def test_registry_lookup_is_case_insensitive(registry) -> None:
    assert registry.get(" GoHighLevel ").service == "gohighlevel"
    assert "clio" in registry
    assert "hubspot" not in registry
    with pytest.raises(UnknownService):
        registry.get("hubspot")
