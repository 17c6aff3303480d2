"""FastAPI application entrypoint.

Configures CORS, error handling and routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .errors import AttributionEngineError  # noqa: E402
from .routers import analytics as analytics_router  # noqa: E402
from .routers import attribution as attribution_router  # noqa: E402
from .routers import customers as customers_router  # noqa: E402
from .routers import ingest as ingest_router  # noqa: E402
from .routers import webhooks as webhooks_router  # noqa: E402
from .telemetry import init_observability  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: F401,E402


def create_app() -> FastAPI:
    init_observability()

    app = FastAPI(
        title="Attribution Engine API",
        description="""
        Revenue attribution for multi-tenant sales and support organizations.

        - **Ingestion**: interactions (calls, chats, ...) and conversion events
        - **Identity**: raw identifiers resolved to one customer per tenant
        - **Attribution runs**: credit for each conversion split across the
          interactions that preceded it, per a selectable model

        Every endpoint except `/health` requires the `X-Tenant-ID` header.
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AttributionEngineError)
    async def attribution_engine_error_handler(request: Request, exc: AttributionEngineError):
        if exc.status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
        )

    app.include_router(ingest_router.router)
    app.include_router(customers_router.router)
    app.include_router(attribution_router.router)
    app.include_router(webhooks_router.router)
    app.include_router(analytics_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
