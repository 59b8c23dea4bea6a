"""
Error taxonomy for the credential lifecycle and webhook/reconciliation pipeline.

Every error carries a machine-readable code and the HTTP status the API layer
should answer with; main.py renders them as {"detail": ..., "code": ...}.
"""
from typing import Any, Optional


class SyncEngineError(Exception):
    """Base class for all integration sync errors."""

    code = "SYNC_ENGINE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NeedsReconnect(SyncEngineError):
    """Refresh token missing or revoked. Terminal: the owner must redo the OAuth connect flow."""

    code = "NEEDS_RECONNECT"
    status_code = 409

    def __init__(self, service: str, owner: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{service} token expired and no refresh token available. Please reconnect the integration.",
            {"service": service, "owner": owner},
        )
        self.service = service
        self.owner = owner


class RefreshFailed(SyncEngineError):
    """Refresh exchange failed (non-2xx, network error, timeout). Stored credential untouched."""

    code = "REFRESH_FAILED"
    status_code = 502

    def __init__(self, service: str, owner: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, {"service": service, "owner": owner, "status": status})
        self.service = service
        self.owner = owner
        self.status = status


class IntegrationNotFound(SyncEngineError):
    """No active credential matches the webhook's account/realm id."""

    code = "INTEGRATION_NOT_FOUND"
    status_code = 404

    def __init__(self, service: str, realm_id: str) -> None:
        super().__init__(
            f"No active {service} integration found for account {realm_id}",
            {"service": service, "realm_id": realm_id},
        )
        self.service = service
        self.realm_id = realm_id


class MalformedPayload(SyncEngineError):
    """Webhook body unusable (bad JSON, missing account id). Rejected before any durable write."""

    code = "MALFORMED_PAYLOAD"
    status_code = 400


class InvalidSignature(SyncEngineError):
    code = "INVALID_SIGNATURE"
    status_code = 401


class DispatchFailed(SyncEngineError):
    """Processing a stored receipt failed; the receipt keeps the error and stays retryable."""

    code = "DISPATCH_FAILED"
    status_code = 502

    def __init__(self, receipt_id: str, message: str) -> None:
        super().__init__(message, {"receipt_id": receipt_id})
        self.receipt_id = receipt_id


class UnknownService(SyncEngineError):
    code = "UNKNOWN_SERVICE"
    status_code = 404

    def __init__(self, service: str) -> None:
        super().__init__(f"Unsupported service: {service}", {"service": service})
        self.service = service


class RemoteApiError(SyncEngineError):
    """A call to a platform data API failed or timed out."""

    code = "REMOTE_API_ERROR"
    status_code = 502

    def __init__(self, service: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, {"service": service, "status": status})
        self.service = service
        self.status = status
