"""
OAuth service - authorization-code and refresh-token exchanges shared by every platform client,
plus the signed `state` parameter used by the connect/callback flow.
"""
import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from app.config import settings
from app.errors import RemoteApiError
from app.models import EntityType
from app.services.http_client import get_with_retry, post_form_no_retry
from app.services.platforms import Delivery, PlatformConfig, RemoteEntity, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)


class TokenExchangeError(Exception):
    """Token endpoint rejected the request or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class OAuthStateError(Exception):
    pass


def create_oauth_state(owner: str, service: str) -> str:
    """Signed, short-lived state token carrying the owner through the provider redirect."""
    now = int(time.time())
    return jwt.encode(
        {
            "owner": owner,
            "service": service,
            "nonce": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + settings.OAUTH_STATE_EXPIRE_SECONDS,
        },
        settings.JWT_SECRET,
        algorithm=settings.AUTH_ALGORITHM,
    )


def decode_oauth_state(state: str, service: str) -> str:
    """Return the owner from a state token; raise OAuthStateError if invalid, expired or for another service."""
    try:
        data = jwt.decode(state, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError as e:
        raise OAuthStateError(f"Invalid state: {e}") from e
    if data.get("service") != service or not data.get("owner"):
        raise OAuthStateError("State does not match service")
    return data["owner"]


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256(raw_body, secret), base64-encoded, compared in constant time."""
    if not secret or not signature or not body:
        return False
    computed = base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")
    return hmac.compare_digest(computed, signature.strip())


class OAuthPlatform:
    """
    Base platform client. Handles the OAuth token endpoint (credentials either as HTTP Basic
    or in the form body, per PlatformConfig.use_basic_auth) and authenticated GETs.
    Subclasses implement the data API and webhook shape.
    """

    supported_entities: tuple[EntityType, ...] = ()
    event_type_headers: tuple[str, ...] = ("x-event-type",)
    event_type_fields: tuple[str, ...] = ("type", "eventType", "event")
    realm_fields: tuple[str, ...] = ("accountId", "realmId")
    object_id_fields: tuple[str, ...] = ("id", "objectId")
    signature_header = "x-webhook-signature"
    event_map: dict[str, WebhookEvent] = {}

    def __init__(
        self,
        config: PlatformConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        page_size: int = 100,
        max_pages: int = 50,
    ):
        self.config = config
        self.transport = transport
        self.timeout = timeout
        self.max_retries = max_retries
        self.page_size = page_size
        self.max_pages = max_pages

    @property
    def service(self) -> str:
        return self.config.service

    # --- OAuth ---

    def authorize_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        if self.config.scopes:
            params["scope"] = self.config.scopes
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange authorization code for access/refresh tokens"""
        return await self._request_token(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Exchange a refresh token for a new access token (and possibly a rotated refresh token)"""
        return await self._request_token({"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def _request_token(self, data: dict[str, str]) -> TokenSet:
        if not self.config.client_id or not self.config.client_secret:
            raise TokenExchangeError(f"Missing OAuth credentials for service: {self.service}")

        body = dict(data)
        auth = None
        if self.config.use_basic_auth:
            auth = (self.config.client_id, self.config.client_secret)
        else:
            body["client_id"] = self.config.client_id
            body["client_secret"] = self.config.client_secret

        try:
            resp = await post_form_no_retry(
                self.config.token_url,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
                auth=auth,
                timeout=self.timeout,
                transport=self.transport,
            )
        except httpx.HTTPError as e:
            logger.warning("Token request to %s failed: %s", self.service, e)
            raise TokenExchangeError(f"Token request to {self.service} failed: {e.__class__.__name__}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error("Token exchange failed for %s: HTTP %s - %s", self.service, resp.status_code, resp.text[:200])
            raise TokenExchangeError(
                f"Token endpoint for {self.service} returned HTTP {resp.status_code}", status=resp.status_code
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise TokenExchangeError(f"Token endpoint for {self.service} returned invalid JSON") from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TokenExchangeError(f"Token endpoint for {self.service} returned no access_token")

        try:
            expires_in = int(payload.get("expires_in") or settings.DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            expires_in = settings.DEFAULT_TOKEN_LIFETIME_SECONDS

        return TokenSet(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or None,
            expires_in=expires_in,
            realm_id=self._realm_from_token_response(payload),
            raw=payload,
        )

    def _realm_from_token_response(self, payload: dict[str, Any]) -> Optional[str]:
        return None

    # --- Data API helpers ---

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def _get_json(
        self,
        url: str,
        access_token: str,
        *,
        params: Optional[dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Optional[dict[str, Any]]:
        """Authenticated GET. Raises RemoteApiError on network errors and non-2xx (404 -> None if allowed)."""
        try:
            resp = await get_with_retry(
                url,
                params=params,
                headers=self._auth_headers(access_token),
                timeout=self.timeout,
                max_retries=self.max_retries,
                transport=self.transport,
            )
        except httpx.HTTPError as e:
            raise RemoteApiError(self.service, f"{self.config.display_name} API request failed: {e.__class__.__name__}") from e

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning("%s API error: %s %s", self.config.display_name, resp.status_code, resp.text[:200])
            raise RemoteApiError(
                self.service, f"{self.config.display_name} API error: {resp.status_code}", status=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteApiError(self.service, f"{self.config.display_name} API returned invalid JSON") from e
        return data if isinstance(data, dict) else {"data": data}

    # --- Data API (implemented per platform) ---

    async def fetch_entities(self, access_token: str, realm_id: str, entity_type: EntityType) -> list[RemoteEntity]:
        raise NotImplementedError

    async def fetch_entity(
        self, access_token: str, realm_id: str, entity_type: EntityType, external_id: str
    ) -> Optional[RemoteEntity]:
        raise NotImplementedError

    async def verify_connection(self, access_token: str, realm_id: str) -> dict[str, Any]:
        raise NotImplementedError

    # --- Webhooks ---

    def parse_event(self, event_type: str) -> Optional[WebhookEvent]:
        return self.event_map.get((event_type or "").strip())

    def verify_signature(self, body: bytes, headers: dict[str, str]) -> bool:
        """True when no secret is configured, otherwise the HMAC header must match."""
        if not self.config.webhook_secret:
            return True
        return verify_webhook_signature(body, headers.get(self.signature_header), self.config.webhook_secret)

    def extract_deliveries(self, payload: dict[str, Any], headers: dict[str, str]) -> list[Delivery]:
        event_type = _first_present(headers, self.event_type_headers) or _first_present(payload, self.event_type_fields)
        return [
            Delivery(
                event_type=str(event_type or "unknown"),
                realm_id=_first_present(payload, self.realm_fields),
                object_id=_first_present(payload, self.object_id_fields),
                payload=payload,
            )
        ]


def _first_present(source: dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = source.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None
