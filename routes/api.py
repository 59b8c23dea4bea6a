"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import integrations, sync, webhooks

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = settings.API_PREFIX
    app.include_router(webhooks.router, prefix=f"{prefix}/webhooks", tags=["webhooks"])
    app.include_router(integrations.router, prefix=f"{prefix}/integrations", tags=["integrations"])
    app.include_router(sync.router, prefix=f"{prefix}/sync", tags=["sync"])
    logger.info("Registered API routes under %s", prefix)
