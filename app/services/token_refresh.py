"""
Credential lifecycle: decide whether a stored access token is still usable and refresh it when not.

At most one refresh runs per credential. Inside a worker an asyncio.Lock per (service, owner)
serialises callers and the row is re-read after the lock is taken. Across workers the
ApiCredential.version column makes a concurrent second write fail with StaleDataError;
the loser re-reads and uses the winner's token.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.errors import NeedsReconnect, RefreshFailed, SyncEngineError
from app.models import ApiCredential
from app.services.credentials import apply_token_set, get_access_token, get_credential, get_refresh_token
from app.services.oauth_service import TokenExchangeError
from app.services.platforms import PlatformRegistry
from app.services.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

# event loop -> {(service, owner): Lock}; asyncio locks must not cross loops
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[tuple[str, str], asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


@dataclass
class ValidToken:
    access_token: str
    account_id: Optional[str]
    was_refreshed: bool


def is_token_stale(
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
    buffer_seconds: Optional[int] = None,
) -> bool:
    """Stale iff expiry is unknown or now >= expires_at - buffer (default 300s)."""
    if expires_at is None:
        return True
    now = as_utc(now) if now else utcnow()
    buffer_seconds = settings.TOKEN_REFRESH_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
    return now >= as_utc(expires_at) - timedelta(seconds=buffer_seconds)


def _refresh_lock(service: str, owner: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _refresh_locks.setdefault(loop, {})
    key = (service, owner)
    if key not in locks:
        locks[key] = asyncio.Lock()
    return locks[key]


def _usable(cred: ApiCredential) -> ValidToken:
    return ValidToken(access_token=get_access_token(cred), account_id=cred.realm_id, was_refreshed=False)


async def ensure_valid(
    db: Session,
    registry: PlatformRegistry,
    service: str,
    owner: str,
    now: Optional[datetime] = None,
) -> ValidToken:
    """
    Return a usable access token for (service, owner), refreshing it first if stale.

    Raises NeedsReconnect when there is nothing to refresh from (no row, no access token,
    or no refresh token) and RefreshFailed when the token endpoint rejects or cannot be
    reached. On RefreshFailed the stored row is left exactly as it was.
    """
    cred = get_credential(db, service, owner)
    if cred is None or not cred.access_token:
        raise NeedsReconnect(service, owner)
    if not is_token_stale(cred.expires_at, now):
        return _usable(cred)

    platform = registry.get(service)
    async with _refresh_lock(service, owner):
        db.refresh(cred)
        if not cred.access_token:
            raise NeedsReconnect(service, owner)
        if not is_token_stale(cred.expires_at, now):
            logger.debug("%s token for owner %s refreshed by a concurrent caller", service, owner)
            return _usable(cred)

        refresh_token = get_refresh_token(cred)
        if not refresh_token:
            logger.warning("%s token expired for owner %s and no refresh token is stored", service, owner)
            raise NeedsReconnect(service, owner)

        logger.info("Refreshing %s token for owner %s", service, owner)
        try:
            tokens = await platform.refresh_token(refresh_token)
        except TokenExchangeError as e:
            raise RefreshFailed(service, owner, f"Token refresh failed: {e}", status=e.status) from e

        apply_token_set(cred, tokens, as_utc(now) if now else None)
        try:
            db.commit()
        except StaleDataError:
            # another worker wrote first; its token is at least as fresh as ours
            db.rollback()
            logger.info("%s credential for owner %s was refreshed concurrently; using stored token", service, owner)
            cred = get_credential(db, service, owner)
            if cred is None or not cred.access_token:
                raise NeedsReconnect(service, owner)
            return _usable(cred)

        logger.info("Refreshed %s token for owner %s, expires at %s", service, owner, cred.expires_at)
        return ValidToken(access_token=tokens.access_token, account_id=cred.realm_id, was_refreshed=True)


async def refresh_all_expiring_tokens(
    db: Session,
    registry: PlatformRegistry,
    owner: str,
    now: Optional[datetime] = None,
) -> dict[str, dict[str, Any]]:
    """Proactively run ensure_valid for every configured platform of one owner."""
    results: dict[str, dict[str, Any]] = {}
    for service in registry.services():
        cred = get_credential(db, service, owner)
        if cred is None or not cred.is_active or not cred.access_token:
            results[service] = {"success": False, "error": "not configured"}
            continue
        try:
            token = await ensure_valid(db, registry, service, owner, now=now)
            results[service] = {"success": True, "refreshed": token.was_refreshed}
        except SyncEngineError as e:
            logger.warning("Proactive %s refresh failed for owner %s: %s", service, owner, e.message)
            results[service] = {"success": False, "error": e.message, "code": e.code}
    return results
