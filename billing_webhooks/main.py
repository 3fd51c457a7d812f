"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_webhooks.core.config import settings
from billing_webhooks.core.logging import setup_logging
from billing_webhooks.core.otel import (
    initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy, setup_otel_logging
)
from billing_webhooks.db.session import SessionLocal, engine, init_db
from billing_webhooks.models import Base  # Import all models to register with Base.metadata
from billing_webhooks.services.notification_service import NotificationService
from billing_webhooks.services.stripe_service import StripeGateway
from billing_webhooks.services.webhook_service import WebhookProcessor

# Import routers
from billing_webhooks.api import monitoring, webhook_admin, webhooks

setup_logging()
logger = logging.getLogger(__name__)


def build_webhook_processor() -> WebhookProcessor:
    """Wire the processor from settings"""
    return WebhookProcessor(
        session_factory=SessionLocal,
        gateway=StripeGateway(),
        notifier=NotificationService(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    app.state.webhook_processor = build_webhook_processor()
    logger.info(
        f"Webhook processor ready (max attempts: {settings.WEBHOOK_MAX_RETRY_ATTEMPTS}, "
        f"budget: {settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS}s)"
    )

    yield

    # Shutdown
    logger.info("Shutting down...")
    still_running = await app.state.webhook_processor.drain(timeout=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS)
    if still_running:
        logger.warning(f"{still_running} notification batches still running at shutdown")


# Create FastAPI app
app = FastAPI(
    title="Billing Webhooks",
    description="Stripe webhook ingestion and subscription reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI and HTTPX with OpenTelemetry
instrument_fastapi(app)
instrument_httpx()

# Include routers
app.include_router(webhooks.router)
app.include_router(webhook_admin.router)
app.include_router(monitoring.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
