"""FastAPI application entrypoint.

Configures CORS, includes routers, starts the rate-limiter sweep and exposes
a healthcheck endpoint.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_rate_limiter, get_settings
from .routers import attribution as attribution_router
from .routers import events as events_router
from .routers import leads as leads_router
from .routers import postmark_webhooks as postmark_webhooks_router
from .telemetry import init_observability, shutdown_observability


async def _sweep_rate_limits(interval_seconds: int) -> None:
    """Periodically drop expired rate-limit windows."""
    limiter = get_rate_limiter()
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            limiter.sweep()
        except Exception as e:
            logger.error(f"[RATE_LIMIT] Sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sweeper = asyncio.create_task(_sweep_rate_limits(settings.RATE_LIMIT_SWEEP_SECONDS))
    logger.info(f"[STARTUP] LeadSignal API started ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        shutdown_observability()


def create_app() -> FastAPI:
    observability = init_observability()
    logger.info(f"[STARTUP] Observability: {observability}")

    app = FastAPI(
        title="LeadSignal API",
        description="""
        Marketing attribution and conversion-event pipeline.

        This API provides endpoints for:
        - First-party attribution capture (UTMs, click ids, first/last touch)
        - Lead form autosave
        - Conversion event ingestion with GA4 / Google Ads / Meta forwarding
        - Postmark open/click webhooks
        """,
        version="1.0.0",
        lifespan=lifespan,
    )

    # Trust X-Forwarded-* from the load balancer so request.client is the visitor
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://www.example.com,http://localhost:3000"
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    # Credentials are needed for the attribution cookies
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(events_router.router)
    app.include_router(leads_router.router)
    app.include_router(attribution_router.router)
    app.include_router(postmark_webhooks_router.router)

    @app.get(
        "/health",
        tags=["Health"],
        summary="Health check",
    )
    def health():
        """Liveness for load balancers. No auth, no dependencies."""
        return {"status": "ok"}

    return app


app = create_app()
