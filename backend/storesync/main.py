"""FastAPI application entrypoint.

Includes the webhook and sync routers and exposes a healthcheck endpoint.
Polling itself runs in the ARQ worker, not in this process.
"""

import logging

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import sync as sync_router
from .routers import webhooks as webhooks_router
from .telemetry import init_sentry
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="storesync API",
        description="""
        storesync keeps a local, tenant-partitioned mirror of storefront data
        (customers, orders, products, cart and checkout events).

        This API provides endpoints for:
        - Receiving signed storefront webhooks
        - Inspecting per-resource sync state for a tenant
        - Triggering an on-demand poll sync
        - Replaying rejected (malformed) records after a fix

        ## Authentication

        Webhooks are authenticated by their HMAC-SHA256 signature header.
        Sync endpoints require the `X-Admin-Key` header.

        ## Data Model

        - **Tenants**: One connected store, with its encrypted API credential
        - **Records**: Customers, orders (with line items), products, events
        - **Sync cursors**: Watermark and last outcome per (tenant, resource)
        - **Webhook deliveries**: Dedup log of admitted deliveries
        """,
        version="1.0.0",
        servers=[
            {
                "url": "http://localhost:8000",
                "description": "Development server"
            },
        ]
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin key. Set ADMIN_SECRET_KEY for production.")
    if not settings.WEBHOOK_SHARED_SECRET:
        logger.warning("[STARTUP] WEBHOOK_SHARED_SECRET is not set; every webhook will be rejected")

    app.include_router(webhooks_router.router)
    app.include_router(sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not require authentication
        - Can be used for load balancer health checks
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        init_sentry()

    @app.on_event("shutdown")
    async def shutdown_event():
        await reset_arq_pool()

    # Custom OpenAPI schema with security definitions
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
            servers=app.servers
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "adminKey": {
                "type": "apiKey",
                "in": "header",
                "name": "X-Admin-Key",
                "description": "Operator key for sync endpoints"
            }
        }

        for path in openapi_schema["paths"]:
            if not path.startswith("/tenants"):
                continue
            for method in openapi_schema["paths"][path]:
                openapi_schema["paths"][path][method].setdefault("security", [{"adminKey": []}])

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
