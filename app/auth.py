"""
Access control for internal/admin endpoints (cron trigger, connect/disconnect, receipts).
When CRON_SECRET is set, callers must send `Authorization: Bearer <CRON_SECRET>`.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from app.config import settings

logger = logging.getLogger(__name__)


def require_internal_token(authorization: Optional[str] = Header(None)) -> None:
    secret = (settings.CRON_SECRET or "").strip()
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.strip(), expected):
        logger.warning("Rejected internal request: missing or invalid bearer token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
