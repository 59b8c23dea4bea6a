"""
Platform registry: one explicit configuration per integrated SaaS platform,
built from Settings at startup and injected where needed (no module-level mutable maps).

Every platform client satisfies the Platform capability interface: token exchange and
refresh against its authorization server, and paginated entity fetches from its data API.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from app.errors import UnknownService
from app.models import EntityType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformConfig:
    service: str
    display_name: str
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str
    use_basic_auth: bool
    scopes: str = ""
    webhook_secret: Optional[str] = None


@dataclass
class TokenSet:
    """Normalized token endpoint response."""
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    realm_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RemoteEntity:
    """One object fetched from a platform data API."""
    external_id: str
    attributes: dict[str, Any]
    source_updated_at: Optional[datetime] = None


class EntityAction(str, enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class WebhookEvent:
    """Tagged variant over EntityType x EntityAction; unknown event strings map to None."""
    kind: EntityType
    action: EntityAction


@dataclass
class Delivery:
    """One logical change notification extracted from an inbound webhook body."""
    event_type: str
    realm_id: Optional[str]
    object_id: Optional[str]
    payload: dict[str, Any]


class Platform(Protocol):
    config: PlatformConfig
    supported_entities: tuple[EntityType, ...]

    @property
    def service(self) -> str: ...

    def authorize_url(self, redirect_uri: str, state: str) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet: ...

    async def refresh_token(self, refresh_token: str) -> TokenSet: ...

    async def fetch_entities(self, access_token: str, realm_id: str, entity_type: EntityType) -> list[RemoteEntity]: ...

    async def fetch_entity(
        self, access_token: str, realm_id: str, entity_type: EntityType, external_id: str
    ) -> Optional[RemoteEntity]: ...

    async def verify_connection(self, access_token: str, realm_id: str) -> dict[str, Any]: ...

    def parse_event(self, event_type: str) -> Optional[WebhookEvent]: ...

    def extract_deliveries(self, payload: dict[str, Any], headers: dict[str, str]) -> list[Delivery]: ...


class PlatformRegistry:
    """Lookup of configured platforms by service identifier."""

    def __init__(self, platforms: list[Platform]):
        self._platforms = {p.service: p for p in platforms}

    def get(self, service: str) -> Platform:
        platform = self._platforms.get((service or "").strip().lower())
        if platform is None:
            raise UnknownService(service)
        return platform

    def services(self) -> list[str]:
        return list(self._platforms)

    def __contains__(self, service: str) -> bool:
        return (service or "").strip().lower() in self._platforms


def build_platform_registry(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> PlatformRegistry:
    """Build the registry for GoHighLevel, Clio and QuickBooks from Settings."""
    from app.services.clio_service import ClioPlatform
    from app.services.gohighlevel_service import GoHighLevelPlatform
    from app.services.quickbooks_service import QuickBooksPlatform

    platforms: list[Platform] = [
        GoHighLevelPlatform(
            PlatformConfig(
                service="gohighlevel",
                display_name="GoHighLevel",
                authorize_url="https://marketplace.gohighlevel.com/oauth/chooselocation",
                token_url="https://services.leadconnectorhq.com/oauth/token",
                client_id=settings.GOHIGHLEVEL_CLIENT_ID,
                client_secret=settings.GOHIGHLEVEL_CLIENT_SECRET,
                use_basic_auth=False,
                scopes=settings.GOHIGHLEVEL_SCOPES,
                webhook_secret=settings.webhook_secret_for("gohighlevel"),
            ),
            transport=transport,
        ),
        ClioPlatform(
            PlatformConfig(
                service="clio",
                display_name="Clio",
                authorize_url="https://app.clio.com/oauth/authorize",
                token_url="https://app.clio.com/oauth/token",
                client_id=settings.CLIO_CLIENT_ID,
                client_secret=settings.CLIO_CLIENT_SECRET,
                use_basic_auth=True,
                scopes=settings.CLIO_SCOPES,
                webhook_secret=settings.webhook_secret_for("clio"),
            ),
            transport=transport,
        ),
        QuickBooksPlatform(
            PlatformConfig(
                service="quickbooks",
                display_name="QuickBooks",
                authorize_url="https://appcenter.intuit.com/connect/oauth2",
                token_url="https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
                client_id=settings.QUICKBOOKS_CLIENT_ID,
                client_secret=settings.QUICKBOOKS_CLIENT_SECRET,
                use_basic_auth=True,
                scopes=settings.QUICKBOOKS_SCOPES,
                webhook_secret=settings.webhook_secret_for("quickbooks"),
            ),
            api_base_url=settings.QUICKBOOKS_API_BASE_URL,
            transport=transport,
        ),
    ]
    for p in platforms:
        if not p.config.client_id or not p.config.client_secret:
            logger.warning("%s OAuth client credentials not configured; refresh and connect will fail", p.config.display_name)
    return PlatformRegistry(platforms)
