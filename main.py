"""
Integration Sync Engine - FastAPI Backend
"""
import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from routes.api import register_routes
from app.config import settings
from app.database import Base, engine
from app.errors import SyncEngineError
from app.services.platforms import build_platform_registry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Integration Sync Engine API",
    description="OAuth credential lifecycle, webhook ingestion and reconciliation for GoHighLevel, Clio and QuickBooks",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)
app.state.platforms = build_platform_registry(settings)

logger.info("Starting Integration Sync Engine API")
logger.info("Environment: %s", settings.ENV)
logger.info("Platforms: %s", ", ".join(app.state.platforms.services()))

# Startup config validation (warn only)
if settings.IS_PRODUCTION and settings.JWT_SECRET.strip() in ("", "supersecret_fallback_key_change_in_production"):
    logger.warning("JWT_SECRET is default or empty in production. Set a strong JWT_SECRET in environment.")
if settings.IS_PRODUCTION and not settings.CRON_SECRET:
    logger.warning("CRON_SECRET is not set in production; internal endpoints are unauthenticated.")


@app.exception_handler(SyncEngineError)
async def sync_engine_exception_handler(request: Request, exc: SyncEngineError):
    """Render typed sync errors as {"detail", "code"} with their HTTP status."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error: %s", exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Register all API routes (prefix /api)
register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        from sqlalchemy import text
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "integration-sync",
        "db": db_status,
        "environment": settings.ENV,
        "platforms": app.state.platforms.services(),
    }


@app.on_event("startup")
async def startup_scheduler() -> None:
    """Start the in-process reconciliation scheduler when ENABLE_SCHEDULER is set."""
    if not settings.ENABLE_SCHEDULER:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER not set); use /api/sync/cron")
        return
    from app.workers.scheduler import start_background_workers
    start_background_workers(app.state.platforms)


@app.on_event("shutdown")
async def shutdown_scheduler() -> None:
    from app.workers.scheduler import stop_background_workers
    stop_background_workers()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,  # Auto-reload only in development
        log_level=settings.LOG_LEVEL.lower()
    )
