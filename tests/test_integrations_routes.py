"""
OAuth connect/callback, disconnect, status and the cron trigger over HTTP
"""
from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from app.config import settings
from app.models import SyncState
from app.services.credentials import decrypt_token, get_credential
from app.services.oauth_service import create_oauth_state, decode_oauth_state
from app.services.sync_engine import record_sync_status
from tests.fakes import GHL_TOKEN_URL, QBO_TOKEN_URL


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def test_connect_returns_authorize_url_with_signed_state(client) -> None:
    resp = client.get("/api/integrations/gohighlevel/connect", params={"owner": "user-1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["service"] == "gohighlevel"
    assert body["authorizeUrl"].startswith("https://marketplace.gohighlevel.com/oauth/chooselocation?")
    params = _query(body["authorizeUrl"])
    assert params["client_id"] == "ghl-client"
    assert params["response_type"] == "code"
    assert params["redirect_uri"].endswith("/api/integrations/gohighlevel/callback")
    assert decode_oauth_state(params["state"], "gohighlevel") == "user-1"


def test_connect_unknown_service(client) -> None:
    resp = client.get("/api/integrations/stripe/connect", params={"owner": "user-1"})

    assert resp.status_code == 404
    assert resp.json()["code"] == "UNKNOWN_SERVICE"


def test_callback_stores_credential_and_redirects(client, db_session, remote) -> None:
    remote.on(
        "POST",
        GHL_TOKEN_URL,
        json={"access_token": "ghl-access", "refresh_token": "ghl-refresh", "expires_in": 86399, "locationId": "loc-55"},
    )
    state = create_oauth_state("user-1", "gohighlevel")

    resp = client.get(
        "/api/integrations/gohighlevel/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(f"{settings.FRONTEND_URL}/integrations?")
    assert _query(location) == {"service": "gohighlevel", "success": "1"}
    form = parse_qs(remote.calls("POST", GHL_TOKEN_URL)[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["auth-code"]

    cred = get_credential(db_session, "gohighlevel", "user-1")
    assert cred.is_active is True
    assert cred.realm_id == "loc-55"
    assert decrypt_token(cred.access_token) == "ghl-access"
    assert decrypt_token(cred.refresh_token) == "ghl-refresh"


def test_quickbooks_callback_takes_realm_from_query(client, db_session, remote) -> None:
    remote.on("POST", QBO_TOKEN_URL, json={"access_token": "qbo-access", "refresh_token": "qbo-refresh", "expires_in": 3600})
    state = create_oauth_state("user-3", "quickbooks")

    resp = client.get(
        "/api/integrations/quickbooks/callback",
        params={"code": "c", "state": state, "realmId": "realm-42"},
        follow_redirects=False,
    )

    assert resp.status_code == 302
    assert get_credential(db_session, "quickbooks", "user-3").realm_id == "realm-42"


def test_callback_rejects_state_for_other_service(client, db_session, remote) -> None:
    state = create_oauth_state("user-1", "clio")

    resp = client.get(
        "/api/integrations/gohighlevel/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert resp.status_code == 302
    assert _query(resp.headers["location"])["error"] == "invalid_state"
    assert remote.requests == []
    assert get_credential(db_session, "gohighlevel", "user-1") is None


def test_callback_token_exchange_failure(client, db_session, remote) -> None:
    remote.on("POST", GHL_TOKEN_URL, status=400, json={"error": "invalid_grant"})
    state = create_oauth_state("user-1", "gohighlevel")

    resp = client.get(
        "/api/integrations/gohighlevel/callback",
        params={"code": "bad", "state": state},
        follow_redirects=False,
    )

    assert _query(resp.headers["location"])["error"] == "token_exchange_failed"
    assert get_credential(db_session, "gohighlevel", "user-1") is None


def test_callback_provider_error_passed_through(client) -> None:
    resp = client.get(
        "/api/integrations/clio/callback",
        params={"error": "access_denied"},
        follow_redirects=False,
    )

    assert resp.status_code == 302
    assert _query(resp.headers["location"]) == {"service": "clio", "error": "access_denied"}


def test_disconnect_clears_tokens_keeps_row(client, db_session, make_credential) -> None:
    make_credential("clio", realm_id="acct-1")

    resp = client.post("/api/integrations/clio/disconnect", params={"owner": "user-1"})

    assert resp.status_code == 200
    db_session.expire_all()
    cred = get_credential(db_session, "clio", "user-1")
    assert cred is not None
    assert cred.is_active is False
    assert cred.access_token is None
    assert cred.refresh_token is None
    assert cred.expires_at is None


def test_disconnect_missing_integration_404(client) -> None:
    assert client.post("/api/integrations/clio/disconnect", params={"owner": "nobody"}).status_code == 404


def test_status_reports_needs_reconnect(client, db_session, make_credential) -> None:
    make_credential(refresh_token=None, expires_in=-10)
    record_sync_status(db_session, "user-1", "gohighlevel", SyncState.NEEDS_RECONNECT, "Please reconnect")

    resp = client.get("/api/integrations/gohighlevel/status", params={"owner": "user-1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["connected"] is True
    assert body["tokenStale"] is True
    assert body["realmId"] == "loc-1"
    assert body["syncStatus"] == "needs_reconnect"
    assert body["needsReconnect"] is True


def test_status_of_unconnected_service(client) -> None:
    body = client.get("/api/integrations/quickbooks/status", params={"owner": "user-1"}).json()

    assert body["connected"] is False
    assert body["isActive"] is False
    assert body["needsReconnect"] is False


def test_verify_without_refresh_token_409(client, make_credential) -> None:
    make_credential(refresh_token=None, expires_in=-10)

    resp = client.get("/api/integrations/gohighlevel/verify", params={"owner": "user-1"})

    assert resp.status_code == 409
    assert resp.json()["code"] == "NEEDS_RECONNECT"


def test_verify_calls_platform(client, remote, make_credential) -> None:
    make_credential("clio", realm_id="acct-1")
    remote.on("GET", "https://app.clio.com/api/v4/users/who_am_i.json", json={"data": {"id": 5, "name": "Jane"}})

    resp = client.get("/api/integrations/clio/verify", params={"owner": "user-1"})

    assert resp.status_code == 200
    assert resp.json()["account"] == {"id": "5", "name": "Jane"}


class TestCron:
    def test_requires_bearer_when_secret_set(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

        assert client.post("/api/sync/cron").status_code == 401
        resp = client.post("/api/sync/cron", headers={"Authorization": "Bearer cron-secret"})
        assert resp.status_code == 200
        assert resp.json()["totalIntegrations"] == 0

    def test_get_trigger_returns_summary(self, client, monkeypatch, remote, make_credential) -> None:
        monkeypatch.setattr(settings, "RECONCILIATION_DELAY_SECONDS", 0)
        make_credential()
        remote.on("GET", "https://services.leadconnectorhq.com/contacts/", json={"contacts": []})
        remote.on("GET", "https://services.leadconnectorhq.com/opportunities/search", json={"opportunities": []})

        resp = client.get("/api/sync/cron")

        assert resp.status_code == 200
        body = resp.json()
        assert body["totalIntegrations"] == 1
        assert body["successfulSyncs"] == 1
        assert body["webhooksProcessed"] == 0

    def test_single_resync_unknown_integration(self, client) -> None:
        assert client.post("/api/sync/gohighlevel/nobody").status_code == 404
