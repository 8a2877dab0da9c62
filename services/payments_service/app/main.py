"""FastAPI application for the Payments Service."""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from services.payments_service.routers import webhooks_router
from services.payments_service.services.notifications import NotificationClient
from services.payments_service.services.reconciler import PaymentEventReconciler
from services.payments_service.stripe_client import build_stripe_clients

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared HTTP and Stripe clients once per process."""
    settings = get_settings()
    environments = settings.stripe_environments()
    if not environments:
        logger.warning("No Stripe environment configured; every webhook will be rejected")

    stripe_http = httpx.AsyncClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)
    notify_http = httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
    app.state.reconciler = PaymentEventReconciler(
        settings=settings,
        stripe_clients=build_stripe_clients(environments, http_client=stripe_http),
        notifier=NotificationClient(http_client=notify_http),
        environments=environments,
    )
    logger.info(
        "Payments service ready (stripe environments: %s)",
        ", ".join(env.name for env in environments) or "none",
    )
    try:
        yield
    finally:
        await stripe_http.aclose()
        await notify_http.aclose()


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="Payments Service",
        version="0.1.0",
        description="Stripe payment webhook reconciliation.",
        lifespan=lifespan,
    )
    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(webhooks_router)

    return app


app = create_app()
