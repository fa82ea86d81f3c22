"""
CreditLedger - credit purchases, fulfillment and receipts

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

# Import observability modules
from creditledger.config import settings
from creditledger.database import get_db
from creditledger.errors import AuthorizationError, ReceiptServiceError, ThrottledError
from creditledger.logging_config import configure_logging, get_logger
from creditledger.sentry_config import configure_sentry, capture_exception
from creditledger.middleware.logging import LoggingMiddleware
from creditledger.worker import receipt_jobs

# Import route modules
from creditledger.routes.credits import router as credits_router
from creditledger.routes.receipts import router as receipts_router
from creditledger.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    yield
    # Let detached receipt emails finish before the process exits
    await receipt_jobs.wait_idle()
    logger.info("shutdown_complete")


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Idempotent credit fulfillment and receipt delivery for payment events",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReceiptServiceError)
async def receipt_service_error_handler(request: Request, exc: ReceiptServiceError):
    """Render service errors with their generic message; detail stays in the logs."""
    logger.warning(
        "request_error",
        route=request.url.path,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        detail=exc.detail,
    )

    headers = {}
    if isinstance(exc, ThrottledError):
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, AuthorizationError):
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.user_message, "retryable": exc.retryable},
        headers=headers or None,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Unexpected failures answer 500 so webhook senders redeliver."""
    logger.error(
        "unhandled_error",
        route=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    capture_exception(exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "retryable": True},
    )


# Include webhook routes
app.include_router(webhooks_router)

# Include receipt routes
app.include_router(receipts_router)

# Include credit routes
app.include_router(credits_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    """Detailed health check."""
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.error("health_database_unavailable", error=str(e))
        database = "unavailable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database
    }
