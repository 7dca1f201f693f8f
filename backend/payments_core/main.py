"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from payments_core.core.config import settings
from payments_core.core.database import dispose_engine
from payments_core.core.logging import setup_logging
from payments_core.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from payments_core.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from payments_core.core.redis import close_redis
from payments_core.core.tracing import setup_tracing, shutdown_tracing
from payments_core.modules.billing import PaymentContainer, build_default_container
from payments_core.modules.billing.router import router as billing_router

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.billing.pipeline.drain()
    await close_redis()
    await dispose_engine()
    shutdown_tracing()


def create_app(container: Optional[PaymentContainer] = None) -> FastAPI:
    """Build the application around a billing container.

    Args:
        container: Pre-built container; defaults to one assembled from settings
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Provider-agnostic billing: checkout, subscriptions and webhooks.",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "Billing", "description": "Checkout, subscriptions and provider webhooks"},
        ],
    )
    app.state.billing = container or build_default_container(settings)

    if settings.CORS_ORIGINS:
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

    app.include_router(billing_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint.

        Returns:
            dict: Health status with "healthy" value.
        """
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus exposition of the billing metrics."""
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    return app


app = create_app()
