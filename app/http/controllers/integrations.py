"""
Integration routes: OAuth connect/callback, disconnect, connection status and token maintenance.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.auth import require_internal_token
from app.config import settings
from app.database import get_db
from app.errors import NeedsReconnect
from app.http.dependencies import get_platform_registry
from app.http.requests.schemas import ConnectResponse, IntegrationStatusResponse
from app.models import SyncState
from app.services.credentials import disconnect_credential, get_credential, store_authorized_tokens
from app.services.oauth_service import OAuthStateError, TokenExchangeError, create_oauth_state, decode_oauth_state
from app.services.platforms import PlatformRegistry
from app.services.sync_engine import get_sync_status
from app.services.token_refresh import ensure_valid, is_token_stale, refresh_all_expiring_tokens

logger = logging.getLogger(__name__)
router = APIRouter()


def _redirect_uri(service: str) -> str:
    return f"{settings.API_BASE_URL}{settings.API_PREFIX}/integrations/{service}/callback"


def _frontend_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/integrations?{urlencode(params)}", status_code=302)


@router.post("/refresh-expiring", dependencies=[Depends(require_internal_token)])
async def refresh_expiring_tokens(
    owner: str = Query(...),
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Refresh every stale token for one owner ahead of use."""
    return {"owner": owner, "results": await refresh_all_expiring_tokens(db, registry, owner)}


@router.get("/{service}/connect", response_model=ConnectResponse, dependencies=[Depends(require_internal_token)])
async def connect_integration(
    service: str,
    owner: str = Query(...),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Return the platform authorize URL. State is a short-lived signed token carrying the owner."""
    platform = registry.get(service)
    if not platform.config.client_id:
        raise HTTPException(status_code=400, detail=f"{platform.config.display_name} OAuth is not configured")
    state = create_oauth_state(owner, platform.service)
    return ConnectResponse(service=platform.service, authorizeUrl=platform.authorize_url(_redirect_uri(platform.service), state))


@router.get("/{service}/callback")
async def oauth_callback(
    service: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    locationId: Optional[str] = Query(None),
    realmId: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """
    Provider redirect target: verify state, exchange the code, store tokens and realm id,
    then send the browser back to the dashboard with ?success=1 or ?error=...
    """
    platform = registry.get(service)
    if error:
        logger.warning("%s OAuth callback returned error: %s", platform.service, error)
        return _frontend_redirect(service=platform.service, error=error)
    if not code or not state:
        return _frontend_redirect(service=platform.service, error="missing_code_or_state")

    try:
        owner = decode_oauth_state(state, platform.service)
    except OAuthStateError as e:
        logger.warning("%s OAuth callback: %s", platform.service, e)
        return _frontend_redirect(service=platform.service, error="invalid_state")

    try:
        tokens = await platform.exchange_code(code, _redirect_uri(platform.service))
    except TokenExchangeError as e:
        logger.error("%s code exchange failed for owner %s: %s", platform.service, owner, e)
        return _frontend_redirect(service=platform.service, error="token_exchange_failed")

    store_authorized_tokens(db, platform.service, owner, tokens, realm_id=locationId or realmId)
    return _frontend_redirect(service=platform.service, success="1")


@router.post("/{service}/disconnect", dependencies=[Depends(require_internal_token)])
async def disconnect_integration(
    service: str,
    owner: str = Query(...),
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Clear stored tokens and deactivate. The credential row is kept."""
    platform = registry.get(service)
    if not disconnect_credential(db, platform.service, owner):
        raise HTTPException(status_code=404, detail="Integration not found")
    return {"success": True, "service": platform.service, "owner": owner}


@router.get(
    "/{service}/status",
    response_model=IntegrationStatusResponse,
    dependencies=[Depends(require_internal_token)],
)
async def integration_status(
    service: str,
    owner: str = Query(...),
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Connection state plus the outcome of the latest resync."""
    platform = registry.get(service)
    cred = get_credential(db, platform.service, owner)
    sync = get_sync_status(db, owner, platform.service)
    connected = bool(cred and cred.is_active and cred.access_token)
    return IntegrationStatusResponse(
        service=platform.service,
        owner=owner,
        connected=connected,
        isActive=bool(cred and cred.is_active),
        realmId=cred.realm_id if cred else None,
        expiresAt=cred.expires_at if cred else None,
        tokenStale=is_token_stale(cred.expires_at) if connected else True,
        syncStatus=sync.status if sync else None,
        lastSyncedAt=sync.last_synced_at if sync else None,
        lastError=sync.error_message if sync else None,
        needsReconnect=bool(sync and sync.status == SyncState.NEEDS_RECONNECT.value),
    )


@router.get("/{service}/verify", dependencies=[Depends(require_internal_token)])
async def verify_integration(
    service: str,
    owner: str = Query(...),
    db: Session = Depends(get_db),
    registry: PlatformRegistry = Depends(get_platform_registry),
):
    """Make one authenticated call to the platform to prove the stored credential works."""
    platform = registry.get(service)
    token = await ensure_valid(db, registry, platform.service, owner)
    if not token.account_id:
        raise NeedsReconnect(platform.service, owner, "No account id stored for this integration. Please reconnect.")
    account = await platform.verify_connection(token.access_token, token.account_id)
    return {"success": True, "service": platform.service, "account": account, "tokenRefreshed": token.was_refreshed}
