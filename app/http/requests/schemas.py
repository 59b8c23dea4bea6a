"""
Pydantic response schemas for the integration sync API.
Field names are camelCase to match what the dashboard consumes.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class WebhookAcceptedResponse(BaseModel):
    status: str
    receiptId: Optional[str] = None
    receiptIds: Optional[List[str]] = None
    warning: Optional[str] = None


class WebhookReceiptResponse(BaseModel):
    id: str
    service: str
    eventType: str
    objectId: Optional[str] = None
    realmId: str
    owner: str
    processed: bool
    processedAt: Optional[datetime] = None
    errorMessage: Optional[str] = None
    attempts: int = 0
    createdAt: Optional[datetime] = None


class ReceiptListResponse(BaseModel):
    receipts: List[WebhookReceiptResponse]


class ConnectResponse(BaseModel):
    service: str
    authorizeUrl: str


class IntegrationStatusResponse(BaseModel):
    service: str
    owner: str
    connected: bool
    isActive: bool
    realmId: Optional[str] = None
    expiresAt: Optional[datetime] = None
    tokenStale: bool = True
    syncStatus: Optional[str] = None
    lastSyncedAt: Optional[datetime] = None
    lastError: Optional[str] = None
    needsReconnect: bool = False


class ReconciliationSummaryResponse(BaseModel):
    totalIntegrations: int
    successfulSyncs: int
    failedSyncs: int
    webhooksProcessed: int
    webhooksFailed: int = 0
    webhooksAbandoned: int = 0
    completedAt: str
    results: List[Dict[str, Any]] = Field(default_factory=list)
