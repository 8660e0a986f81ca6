from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from cvrelay.services.ingest.gateway import RejectionCode


ALLOW_METHODS = "POST, OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization, X-Pow"


def cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": ALLOW_METHODS,
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
    }


def rejection_response(code: RejectionCode, headers: dict[str, str]) -> JSONResponse:
    # Every rejection shares one status; the numeric code pins down which check failed.
    return JSONResponse(
        content={"error": "invalid access", "error_code": int(code)},
        status_code=405,
        headers=headers,
    )


def internal_error_response(headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(content={"error": "Internal Server Error"}, status_code=500, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; routes that know their CORS origin answer 500 themselves.
    return internal_error_response()
