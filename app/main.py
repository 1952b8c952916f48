from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import logging
import asyncio

from app.config import settings
from app.routers import billing, health, track, usage, webhooks
from app.auth.bearer_auth import close_http_client
from app.core.database import init_db, close_db
from app.core.structured_logging import APP_VERSION, setup_logging
from app.core.errors import TalkTimeError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import talktime_error_handler
from app.core.log_middleware import CorrelationMiddleware
from app.services.usage_charger import SecondsExhaustedException

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_directory)

logger = logging.getLogger(__name__)

API_TITLE = "TalkTime Billing API"

API_DESCRIPTION = """
## TalkTime Billing

Meters conversation seconds across free, subscription and top-up buckets
and keeps the ledger in step with Stripe.

### Authentication
Send the identity provider's access token as `Authorization: Bearer <token>`.
The Stripe webhook is authenticated by its `Stripe-Signature` header instead.
"""

TAGS_METADATA = [
    {"name": "usage", "description": "Usage reports and remaining-time checks"},
    {"name": "billing", "description": "Stripe checkout sessions"},
    {"name": "webhooks", "description": "Stripe webhook receiver"},
    {"name": "analytics", "description": "Client event tracking"},
    {"name": "health", "description": "Liveness and dependency checks"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting %s v%s...", API_TITLE, APP_VERSION)

    error_registry.load()

    # Thread pool for run_sync() / asyncio.to_thread()
    executor = ThreadPoolExecutor(max_workers=32)
    loop = asyncio.get_running_loop()
    loop.set_default_executor(executor)
    logger.info("ThreadPoolExecutor configured (max_workers=32)")

    init_db()  # Alembic migrations (or create_all without alembic.ini)
    logger.info("Database initialized")

    yield

    logger.info("Shutting down %s...", API_TITLE)
    await close_http_client()
    close_db()
    executor.shutdown(wait=False)
    logger.info("Database connection closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for TalkTimeError
    app.add_exception_handler(TalkTimeError, talktime_error_handler)

    # Paywall: not an error, a dedicated 402 shape the client renders
    @app.exception_handler(SecondsExhaustedException)
    async def _seconds_exhausted_handler(request: Request, exc: SecondsExhaustedException):
        return JSONResponse(
            status_code=402,
            content={
                "error": "no_remaining_time",
                "message": "You've used all of your conversation time.",
                "remaining_seconds": exc.remaining_seconds,
                "is_premium": exc.is_premium,
            },
        )

    @app.exception_handler(SQLAlchemyError)
    async def _store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return await talktime_error_handler(
            request,
            TalkTimeError("TT-DB-002", detail=str(exc), context={"path": request.url.path}),
        )

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(track.router, prefix="/api", tags=["analytics"])

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": APP_VERSION,
            "status": "running",
            "docs": {"swagger": "/docs", "redoc": "/redoc", "openapi": "/openapi.json"},
        }

    return app


# Create the app instance
app = create_app()
