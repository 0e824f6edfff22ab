"""
Main FastAPI application.

Credit checkout API with:
- CORS configuration
- Error handling with stable error codes
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from credit_checkout import __version__
from credit_checkout.config import Settings, get_settings
from credit_checkout.core.currency import StaticRateConverter
from credit_checkout.core.exceptions import CheckoutError, error_detail
from credit_checkout.core.identity import IdentityVerifier
from credit_checkout.core.ledger import CreditLedger, DatabaseCreditLedger
from credit_checkout.core.order_service import OrderService
from credit_checkout.core.verification_service import VerificationService
from credit_checkout.database.connection import Database
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway
from credit_checkout.integrations.webhook_handler import WebhookHandler
from credit_checkout.monitoring.health import HealthCheck
from credit_checkout.monitoring.logging import setup_logging

from .dependencies import AppServices
from .routes import monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def build_services(
    settings: Settings,
    *,
    identity_verifier: Optional[IdentityVerifier] = None,
    gateways: Optional[Dict[str, RazorpayGateway]] = None,
    ledger: Optional[CreditLedger] = None,
    database: Optional[Database] = None,
) -> AppServices:
    """Wire services for one application; anything passed in replaces the default."""
    database = database or Database(settings)
    identity_verifier = identity_verifier or IdentityVerifier.from_settings(settings)
    if gateways is None:
        razorpay = RazorpayGateway.from_settings(settings)
        gateways = {razorpay.name: razorpay}
    ledger = ledger or DatabaseCreditLedger(settings.packages)

    verification_service = VerificationService(ledger)
    return AppServices(
        settings=settings,
        database=database,
        identity_verifier=identity_verifier,
        gateways=gateways,
        ledger=ledger,
        order_service=OrderService(
            StaticRateConverter.from_settings(settings),
            settings.packages,
            order_ttl_minutes=settings.order_ttl_minutes,
        ),
        verification_service=verification_service,
        health_check=HealthCheck(database, gateways, identity_verifier),
        webhook_handlers={
            name: WebhookHandler(gateway, verification_service)
            for name, gateway in gateways.items()
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    services: AppServices = app.state.services
    settings = services.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await services.database.init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    for name, gateway in services.gateways.items():
        try:
            await gateway.aclose()
        except Exception as e:
            logger.error("gateway_shutdown_error", provider=name, error=str(e))
    try:
        await services.database.close()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    """Render classified errors as ``{message, code}`` with their HTTP status."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log("checkout_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    logger.warning("request_validation_failed", path=request.url.path, error_count=len(errors))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_detail(message, "INVALID_REQUEST"),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_detail("An unexpected error occurred. Please try again later."),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    identity_verifier: Optional[IdentityVerifier] = None,
    gateways: Optional[Dict[str, RazorpayGateway]] = None,
    ledger: Optional[CreditLedger] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (environment settings when omitted)
        identity_verifier: Replaces the Firebase-backed verifier
        gateways: Replaces the configured gateways, keyed by provider name
        ledger: Replaces the database credit ledger
        database: Replaces the database built from settings

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Credit Checkout",
        description=(
            "Authenticated purchase of assessment credits through an external payment gateway. "
            "Features: token verification, currency conversion, signed payment verification "
            "and exactly-once credit grants."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = build_services(
        settings,
        identity_verifier=identity_verifier,
        gateways=gateways,
        ledger=ledger,
        database=database,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(payment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "credit_checkout.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
