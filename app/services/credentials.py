"""
Credential store: token encryption at rest and ApiCredential lookups/mutations.
Access and refresh tokens are Fernet-encrypted; callers only ever see plaintext through these helpers.
"""
import base64
import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from app.config import settings
from app.models import ApiCredential
from app.services.platforms import TokenSet
from app.services.time_utils import utcnow

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY (padded/truncated to 32 bytes)"""
    key_bytes = settings.ENCRYPTION_KEY.encode()[:32].ljust(32, b"0")
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    return Fernet(get_encryption_key()).encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    return Fernet(get_encryption_key()).decrypt(encrypted.encode()).decode()


def get_access_token(cred: ApiCredential) -> Optional[str]:
    return decrypt_token(cred.access_token) if cred.access_token else None


def get_refresh_token(cred: ApiCredential) -> Optional[str]:
    return decrypt_token(cred.refresh_token) if cred.refresh_token else None


def get_credential(db: Session, service: str, owner: str) -> Optional[ApiCredential]:
    return (
        db.query(ApiCredential)
        .filter(ApiCredential.service == service, ApiCredential.user_id == owner)
        .first()
    )


def find_active_by_realm(db: Session, service: str, realm_id: str) -> Optional[ApiCredential]:
    """Resolve the owning credential for an inbound webhook by external account id."""
    return (
        db.query(ApiCredential)
        .filter(
            ApiCredential.service == service,
            ApiCredential.realm_id == realm_id,
            ApiCredential.is_active == True,
        )
        .order_by(ApiCredential.updated_at.desc())
        .first()
    )


def list_resyncable_credentials(db: Session) -> list[ApiCredential]:
    """Active credentials with an access token and a realm id, ordered by service then owner."""
    return (
        db.query(ApiCredential)
        .filter(
            ApiCredential.is_active == True,
            ApiCredential.access_token.isnot(None),
            ApiCredential.realm_id.isnot(None),
        )
        .order_by(ApiCredential.service, ApiCredential.user_id)
        .all()
    )


def apply_token_set(cred: ApiCredential, tokens: TokenSet, now: Optional[datetime] = None) -> None:
    """
    Write a token endpoint response onto the row (no commit).
    A missing refresh_token in the response keeps the stored one.
    """
    now = now or utcnow()
    cred.access_token = encrypt_token(tokens.access_token)
    if tokens.refresh_token:
        cred.refresh_token = encrypt_token(tokens.refresh_token)
    cred.expires_at = now + timedelta(seconds=tokens.expires_in)
    cred.updated_at = now


def store_authorized_tokens(
    db: Session,
    service: str,
    owner: str,
    tokens: TokenSet,
    realm_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApiCredential:
    """Upsert the credential after an authorization-code exchange and mark it active."""
    cred = get_credential(db, service, owner)
    if cred is None:
        cred = ApiCredential(service=service, user_id=owner)
        db.add(cred)
    apply_token_set(cred, tokens, now)
    realm = realm_id or tokens.realm_id
    if realm:
        cred.realm_id = realm
    cred.is_active = True
    db.commit()
    db.refresh(cred)
    logger.info("Stored %s credential for owner %s (realm %s)", service, owner, cred.realm_id)
    return cred


def disconnect_credential(db: Session, service: str, owner: str) -> bool:
    """Clear tokens and expiry and deactivate. The row itself is kept."""
    cred = get_credential(db, service, owner)
    if cred is None:
        return False
    cred.access_token = None
    cred.refresh_token = None
    cred.expires_at = None
    cred.is_active = False
    cred.updated_at = utcnow()
    db.commit()
    logger.info("Disconnected %s credential for owner %s", service, owner)
    return True
