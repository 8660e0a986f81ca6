from __future__ import annotations

from fastapi import Request

from cvrelay.services.ingest.gateway import IngestionGateway


def get_gateway(request: Request) -> IngestionGateway:
    # Built once per app in create_app so caches live as long as the process.
    return request.app.state.gateway
