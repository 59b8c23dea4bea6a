"""
Credential lifecycle tests - staleness, refresh exchanges and refresh contention
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.errors import NeedsReconnect, RefreshFailed
from app.models import ApiCredential
from app.services.credentials import decrypt_token, encrypt_token, get_credential
from app.services.time_utils import as_utc, utcnow
from app.services.token_refresh import ensure_valid, is_token_stale, refresh_all_expiring_tokens
from tests.fakes import CLIO_TOKEN_URL, GHL_TOKEN_URL, FakeRemote, make_registry


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestIsTokenStale:
    def test_unknown_expiry_is_stale(self) -> None:
        assert is_token_stale(None) is True

    def test_far_future_is_fresh(self) -> None:
        now = utcnow()
        assert is_token_stale(now + timedelta(minutes=10), now=now) is False

    def test_inside_buffer_is_stale(self) -> None:
        now = utcnow()
        assert is_token_stale(now + timedelta(minutes=4), now=now) is True

    def test_buffer_boundary_is_stale(self) -> None:
        now = utcnow()
        assert is_token_stale(now + timedelta(seconds=300), now=now) is True
        assert is_token_stale(now + timedelta(seconds=301), now=now) is False

    def test_naive_expiry_treated_as_utc(self) -> None:
        now = utcnow()
        naive = (now + timedelta(hours=1)).replace(tzinfo=None)
        assert is_token_stale(naive, now=now) is False


class TestEnsureValid:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=3600)

        token = await ensure_valid(db_session, registry, "gohighlevel", "user-1")

        assert token.access_token == "access-old"
        assert token.account_id == "loc-1"
        assert token.was_refreshed is False
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_refresh_with_body_credentials(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=60)
        remote.on(
            "POST",
            GHL_TOKEN_URL,
            json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 3600},
        )
        now = utcnow()

        token = await ensure_valid(db_session, registry, "gohighlevel", "user-1", now=now)

        assert token.access_token == "access-new"
        assert token.was_refreshed is True
        request = remote.calls("POST", GHL_TOKEN_URL)[0]
        form = _form(request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-old"
        assert form["client_id"] == "ghl-client"
        assert form["client_secret"] == "ghl-secret"
        assert "authorization" not in request.headers
        assert request.headers["content-type"].startswith("application/x-www-form-urlencoded")

        cred = get_credential(db_session, "gohighlevel", "user-1")
        assert decrypt_token(cred.access_token) == "access-new"
        assert decrypt_token(cred.refresh_token) == "refresh-new"
        assert as_utc(cred.expires_at) == now + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_refresh_with_basic_auth_keeps_old_refresh_token(
        self, db_session, registry, remote, make_credential
    ) -> None:
        make_credential("clio", realm_id="acct-9", expires_in=-60)
        remote.on("POST", CLIO_TOKEN_URL, json={"access_token": "clio-new", "expires_in": 7200})
        now = utcnow()

        token = await ensure_valid(db_session, registry, "clio", "user-1", now=now)

        assert token.was_refreshed is True
        request = remote.calls("POST", CLIO_TOKEN_URL)[0]
        assert request.headers["authorization"].startswith("Basic ")
        form = _form(request)
        assert "client_secret" not in form
        assert "client_id" not in form

        cred = get_credential(db_session, "clio", "user-1")
        assert decrypt_token(cred.access_token) == "clio-new"
        assert decrypt_token(cred.refresh_token) == "refresh-old"
        assert as_utc(cred.expires_at) == now + timedelta(seconds=7200)

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_one_hour(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=None)
        remote.on("POST", GHL_TOKEN_URL, json={"access_token": "access-new"})
        now = utcnow()

        await ensure_valid(db_session, registry, "gohighlevel", "user-1", now=now)

        cred = get_credential(db_session, "gohighlevel", "user-1")
        assert as_utc(cred.expires_at) == now + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_stale_without_refresh_token_needs_reconnect(
        self, db_session, registry, remote, make_credential
    ) -> None:
        make_credential(refresh_token=None, expires_in=-10)

        with pytest.raises(NeedsReconnect):
            await ensure_valid(db_session, registry, "gohighlevel", "user-1")
        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_missing_credential_needs_reconnect(self, db_session, registry) -> None:
        with pytest.raises(NeedsReconnect):
            await ensure_valid(db_session, registry, "gohighlevel", "nobody")

    @pytest.mark.asyncio
    async def test_rejected_refresh_leaves_row_untouched(self, db_session, registry, remote, make_credential) -> None:
        cred = make_credential(expires_in=-10)
        before = (cred.access_token, cred.refresh_token, cred.expires_at, cred.version)
        remote.on("POST", GHL_TOKEN_URL, status=400, json={"error": "invalid_grant"})

        with pytest.raises(RefreshFailed) as exc:
            await ensure_valid(db_session, registry, "gohighlevel", "user-1")

        assert exc.value.status == 400
        db_session.expire_all()
        cred = get_credential(db_session, "gohighlevel", "user-1")
        assert (cred.access_token, cred.refresh_token, cred.expires_at, cred.version) == before

    @pytest.mark.asyncio
    async def test_response_without_access_token_fails(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=-10)
        remote.on("POST", GHL_TOKEN_URL, json={"token_type": "Bearer"})

        with pytest.raises(RefreshFailed):
            await ensure_valid(db_session, registry, "gohighlevel", "user-1")
        cred = get_credential(db_session, "gohighlevel", "user-1")
        assert decrypt_token(cred.access_token) == "access-old"

    @pytest.mark.asyncio
    async def test_network_error_fails(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=-10)

        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        remote.on("POST", GHL_TOKEN_URL, handler=boom)

        with pytest.raises(RefreshFailed):
            await ensure_valid(db_session, registry, "gohighlevel", "user-1")

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, db_session, registry, remote, make_credential) -> None:
        make_credential(expires_in=-10)

        async def slow_token(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 3600})

        remote.on("POST", GHL_TOKEN_URL, handler=slow_token)
        now = utcnow()

        results = await asyncio.gather(
            *(ensure_valid(db_session, registry, "gohighlevel", "user-1", now=now) for _ in range(3))
        )

        assert len(remote.calls("POST", GHL_TOKEN_URL)) == 1
        assert {r.access_token for r in results} == {"access-new"}
        assert sum(1 for r in results if r.was_refreshed) == 1

    @pytest.mark.asyncio
    async def test_concurrent_writer_in_other_process_wins(self, tmp_path) -> None:
        engine = create_engine(f"sqlite:///{tmp_path / 'creds.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
        ours, theirs = Session(), Session()
        try:
            ours.add(
                ApiCredential(
                    service="gohighlevel",
                    user_id="user-1",
                    access_token=encrypt_token("access-old"),
                    refresh_token=encrypt_token("refresh-old"),
                    expires_at=utcnow() - timedelta(minutes=1),
                    realm_id="loc-1",
                    is_active=True,
                )
            )
            ours.commit()

            remote = FakeRemote()

            def token_while_other_worker_writes(request: httpx.Request) -> httpx.Response:
                other = theirs.query(ApiCredential).first()
                other.access_token = encrypt_token("access-winner")
                other.expires_at = utcnow() + timedelta(hours=1)
                theirs.commit()
                return httpx.Response(200, json={"access_token": "access-loser", "expires_in": 3600})

            remote.on("POST", GHL_TOKEN_URL, handler=token_while_other_worker_writes)

            token = await ensure_valid(ours, make_registry(remote), "gohighlevel", "user-1")

            assert token.access_token == "access-winner"
            assert token.was_refreshed is False
        finally:
            ours.close()
            theirs.close()
            engine.dispose()


class TestRefreshAllExpiringTokens:
    @pytest.mark.asyncio
    async def test_reports_each_platform(self, db_session, registry, remote, make_credential) -> None:
        make_credential("gohighlevel", expires_in=-10)
        make_credential("clio", realm_id="acct-1", expires_in=3600)
        remote.on("POST", GHL_TOKEN_URL, json={"access_token": "access-new", "expires_in": 3600})

        results = await refresh_all_expiring_tokens(db_session, registry, "user-1")

        assert results["gohighlevel"] == {"success": True, "refreshed": True}
        assert results["clio"] == {"success": True, "refreshed": False}
        assert results["quickbooks"] == {"success": False, "error": "not configured"}

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, db_session, registry, make_credential) -> None:
        make_credential("gohighlevel", refresh_token=None, expires_in=-10)

        results = await refresh_all_expiring_tokens(db_session, registry, "user-1")

        assert results["gohighlevel"]["success"] is False
        assert results["gohighlevel"]["code"] == "NEEDS_RECONNECT"
