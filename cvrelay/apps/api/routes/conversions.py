from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from cvrelay.apps.api.deps import get_gateway
from cvrelay.apps.api.errors import cors_headers, internal_error_response, rejection_response
from cvrelay.services.ingest.gateway import IngestionGateway
from cvrelay.services.pow import POW_HEADER


logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversions"])

# Non-POST methods are routed here too so they get the numbered rejection instead of a bare 405.
_ROUTED_METHODS = ["POST", "OPTIONS", "GET", "PUT", "PATCH", "DELETE"]


@router.api_route("/api/setConversion", methods=_ROUTED_METHODS, include_in_schema=False)
async def set_conversion(
    request: Request,
    gateway: IngestionGateway = Depends(get_gateway),
) -> Response:
    headers: dict[str, str] = {}
    try:
        headers = cors_headers(await gateway.allowed_origin())
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        body = (await request.body()).decode("utf-8", errors="replace")
        outcome = await gateway.handle(
            method=request.method,
            pow_token=request.headers.get(POW_HEADER),
            body=body,
        )
    except Exception:  # noqa: BLE001 - unexpected failures still answer with CORS headers.
        logger.exception("set_conversion_failed request_id=%s", getattr(request.state, "request_id", None))
        return internal_error_response(headers)
    if not outcome.accepted:
        return rejection_response(outcome.code, headers)
    return JSONResponse(content={"result": "success"}, status_code=200, headers=headers)
