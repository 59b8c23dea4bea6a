"""
Application configuration with automatic environment detection
"""
import os
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings:
    """Application settings with automatic environment detection"""

    # Environment detection
    ENV = os.getenv("ENV", "DEV").upper()
    IS_PRODUCTION = ENV == "PROD" or ENV == "PRODUCTION"
    IS_DEVELOPMENT = not IS_PRODUCTION

    # Server configuration
    HOST = os.getenv("HOST", "127.0.0.1")
    PORT = int(os.getenv("PORT", 8000))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./integration_sync.db")

    # OAuth state signing (JWT) and token encryption at rest
    JWT_SECRET = os.getenv("JWT_SECRET", "supersecret_fallback_key_change_in_production")
    AUTH_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")
    OAUTH_STATE_EXPIRE_SECONDS = int(os.getenv("OAUTH_STATE_EXPIRE_SECONDS", 600))
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "your-32-character-encryption-key!!")

    # Shared secret for cron trigger and internal admin endpoints (empty = open, dev only)
    CRON_SECRET = os.getenv("CRON_SECRET", "")

    # Public URLs
    API_BASE_URL = os.getenv("API_BASE_URL", "").strip().rstrip("/") or "http://localhost:8000"
    FRONTEND_URL = os.getenv("FRONTEND_URL", "").strip().rstrip("/") or "http://localhost:3000"

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """CORS origins from ALLOWED_ORIGINS (comma-separated) plus localhost in development"""
        origins = []
        if self.IS_DEVELOPMENT:
            origins.extend(["http://localhost:3000", "http://127.0.0.1:3000"])
        for origin in os.getenv("ALLOWED_ORIGINS", "").split(","):
            origin = origin.strip()
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    HTTP_MAX_RETRIES = int(os.getenv("HTTP_MAX_RETRIES", "2"))

    # Credential lifecycle
    TOKEN_REFRESH_BUFFER_SECONDS = int(os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", 300))  # 5 minutes
    DEFAULT_TOKEN_LIFETIME_SECONDS = int(os.getenv("DEFAULT_TOKEN_LIFETIME_SECONDS", 3600))

    # Reconciliation
    RECONCILIATION_DELAY_SECONDS = float(os.getenv("RECONCILIATION_DELAY_SECONDS", "1.0"))
    RECEIPT_LOOKBACK_HOURS = int(os.getenv("RECEIPT_LOOKBACK_HOURS", 24))
    RECEIPT_DRAIN_BATCH_SIZE = int(os.getenv("RECEIPT_DRAIN_BATCH_SIZE", 100))
    RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", 3600))
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER")

    # GoHighLevel (credentials go in the token request body)
    GOHIGHLEVEL_CLIENT_ID = os.getenv("GOHIGHLEVEL_CLIENT_ID", "")
    GOHIGHLEVEL_CLIENT_SECRET = os.getenv("GOHIGHLEVEL_CLIENT_SECRET", "")
    GOHIGHLEVEL_WEBHOOK_SECRET = os.getenv("GOHIGHLEVEL_WEBHOOK_SECRET", "")
    GOHIGHLEVEL_SCOPES = os.getenv(
        "GOHIGHLEVEL_SCOPES",
        "contacts.readonly opportunities.readonly locations.readonly",
    )

    # Clio (HTTP Basic on the token endpoint)
    CLIO_CLIENT_ID = os.getenv("CLIO_CLIENT_ID", "")
    CLIO_CLIENT_SECRET = os.getenv("CLIO_CLIENT_SECRET", "")
    CLIO_WEBHOOK_SECRET = os.getenv("CLIO_WEBHOOK_SECRET", "")
    CLIO_SCOPES = os.getenv("CLIO_SCOPES", "")

    # QuickBooks (HTTP Basic on the token endpoint)
    QUICKBOOKS_CLIENT_ID = os.getenv("QUICKBOOKS_CLIENT_ID", "")
    QUICKBOOKS_CLIENT_SECRET = os.getenv("QUICKBOOKS_CLIENT_SECRET", "")
    QUICKBOOKS_WEBHOOK_SECRET = os.getenv("QUICKBOOKS_WEBHOOK_SECRET", "")
    QUICKBOOKS_SCOPES = os.getenv("QUICKBOOKS_SCOPES", "com.intuit.quickbooks.accounting")
    QUICKBOOKS_API_BASE_URL = os.getenv("QUICKBOOKS_API_BASE_URL", "https://quickbooks.api.intuit.com")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if IS_PRODUCTION else "DEBUG").upper()

    API_PREFIX = "/api"

    def webhook_secret_for(self, service: str) -> Optional[str]:
        return (getattr(self, f"{service.upper()}_WEBHOOK_SECRET", "") or "").strip() or None

    def __str__(self):
        return f"Settings(ENV={self.ENV}, IS_PRODUCTION={self.IS_PRODUCTION})"

# Global settings instance
settings = Settings()
