"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from convertviral import __version__
from convertviral.core.config import settings
from convertviral.core.database import create_engine, create_session_factory
from convertviral.core.logging import setup_logging
from convertviral.core.metrics import get_content_type, get_metrics, set_app_info
from convertviral.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from convertviral.core.redis import create_redis
from convertviral.core.tracing import setup_tracing, shutdown_tracing
from convertviral.modules.billing import router as billing_router
from convertviral.modules.billing import webhook_router
from convertviral.modules.billing.stripe_client import StripeClient

ENVIRONMENT = "development" if settings.DEBUG else "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the process-wide clients and dispose of them on shutdown."""
    engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.redis = create_redis(settings.REDIS_URL)
    app.state.stripe_client = StripeClient(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )
    try:
        yield
    finally:
        await app.state.redis.aclose()
        await engine.dispose()
        shutdown_tracing()


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Answer malformed request bodies with 400 and the field errors."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Validation error", "details": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold exception instances
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


def create_app() -> FastAPI:
    """Build the application with middleware and routers."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        description="Stripe billing for ConvertViral: checkout, subscriptions, "
        "invoices and webhook reconciliation.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "billing", "description": "Checkout, subscription and invoice management"},
            {"name": "webhooks", "description": "Stripe webhook receiver"},
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TracingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics."""
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
    app.include_router(webhook_router, prefix=settings.API_V1_PREFIX)
    return app


setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=True)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=__version__,
    environment=ENVIRONMENT,
    enable_console_export=settings.TRACING_CONSOLE_EXPORT,
)

set_app_info(version=__version__, environment=ENVIRONMENT)

app = create_app()
