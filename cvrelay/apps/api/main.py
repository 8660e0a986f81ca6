from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request

from cvrelay.apps.api.errors import unhandled_exception_handler
from cvrelay.apps.api.routes.conversions import router as conversions_router
from cvrelay.apps.api.routes.health import router as health_router
from cvrelay.apps.api.routes.ops import router as ops_router
from cvrelay.core.logging import configure_logging
from cvrelay.persistence.db import SessionLocal
from cvrelay.services.ingest.gateway import IngestionGateway
from cvrelay.services.orders import OrderSystem, ShopifyOrderSystem


API_VERSION = "v1"


def create_app(
    *,
    gateway: IngestionGateway | None = None,
    order_system: OrderSystem | None = None,
) -> FastAPI:
    configure_logging()
    app = FastAPI(title="cvrelay ingestion API")
    # One gateway per app: its identity, origin and key caches are process-local.
    app.state.gateway = gateway or IngestionGateway(
        session_factory=SessionLocal,
        order_system=order_system or ShopifyOrderSystem(),
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(conversions_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
