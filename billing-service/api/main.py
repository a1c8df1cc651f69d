"""
Main FastAPI application for the Billing Webhook Service
"""
from fastapi import FastAPI, Depends, status, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime
import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from config.settings import settings
from models import get_db
from api.schemas import HealthResponse
from api.webhooks import router as webhooks_router
from middleware import (
    error_handler_middleware,
    correlation_id_middleware,
    logging_middleware,
    configure_logging,
)

configure_logging(log_level=settings.log_level, log_format=settings.log_format)

logger = logging.getLogger(__name__)

# Initialize Sentry for alerting
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.service_name}@{settings.version}",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )

# Create FastAPI app
app = FastAPI(
    title="Billing Webhook Service",
    description="Stripe billing lifecycle webhooks: subscription state, downgrades and fraud response",
    version=settings.version,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add custom middleware (order matters - applied in reverse)
# 1. Error handlers (should be last to catch all errors)
error_handler_middleware(app)

# 2. Logging middleware
logging_middleware(app)

# 3. Correlation ID middleware (should be early to set correlation ID)
correlation_id_middleware(app)

app.include_router(webhooks_router)


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    logger.info(
        f"Starting {settings.service_name} v{settings.version}",
        extra={
            "event": "startup",
            "service": settings.service_name,
            "version": settings.version,
            "environment": settings.environment,
        },
    )

    if not settings.stripe_webhook_secret:
        logger.error(
            "STRIPE_WEBHOOK_SECRET is not set; every webhook delivery will fail",
            extra={"event": "config_missing"},
        )

    from models.database import init_db
    try:
        init_db()
        logger.info("Database initialized successfully", extra={"event": "database_init_success"})
    except Exception as e:
        logger.error(
            f"Database initialization failed: {e}",
            extra={
                "event": "database_init_failed",
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        # Start anyway; the health check reports the database as unhealthy


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info(f"Shutting down {settings.service_name}")


@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Health check endpoint

    Returns:
    - 200: Database reachable
    - 503: Database unreachable
    """
    health_status = {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.version,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": getattr(request.state, "correlation_id", None),
        "checks": {},
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {
            "status": "healthy",
            "message": "Database connection OK",
        }
    except Exception as e:
        logger.error(f"Health check: database failed: {e}", exc_info=True)
        health_status["status"] = "degraded"
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}",
        }
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health_status
        )

    return health_status


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
