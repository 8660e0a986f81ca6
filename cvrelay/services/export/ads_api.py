from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import httpx

from cvrelay.core.config import get_settings
from cvrelay.core.errors import AdsUploadError, TokenRefreshError
from cvrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_UPLOAD_PATH = "/OfflineConversionService/upload"
_TOKEN_PATH = "v1/token"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str | None
    expires_in: int | None


def upload_url(network_type: str) -> str:
    settings = get_settings()
    endpoints = {
        "search": settings.ads_search_endpoint,
        "display": settings.ads_display_endpoint,
    }
    try:
        base = endpoints[network_type]
    except KeyError:
        raise ValueError(f"unknown network type: {network_type}") from None
    return f"{base}{settings.ads_api_version}{_UPLOAD_PATH}"


def _log_api_errors(errors: list[Any], *, child_account_id: str) -> None:
    # Row-level errors arrive inline; each detail names the offending request field.
    for error in errors:
        if not isinstance(error, dict):
            logger.error("ads_upload_error account=%s error=%s", child_account_id, error)
            continue
        logger.error(
            "ads_upload_error account=%s code=%s message=%s",
            child_account_id,
            error.get("code"),
            error.get("message"),
        )
        for detail in error.get("details") or []:
            if isinstance(detail, dict):
                logger.error(
                    "ads_upload_error_detail account=%s key=%s value=%s",
                    child_account_id,
                    detail.get("requestKey"),
                    detail.get("requestValue"),
                )


class AdsApiClient:
    """Offline-conversion upload and OAuth token refresh for the ad network."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._timeout_s = get_settings().ext_call_timeout_ms / 1000.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def upload_conversions(
        self,
        *,
        network_type: str,
        account_id: str,
        child_account_id: str,
        access_token: str,
        file_name: str,
        content: bytes,
    ) -> dict[str, Any]:
        """Upload one CSV as a NEW offline-conversion batch.

        The batch counts as accepted only on a 2xx response whose body carries no
        ``errors``; anything else raises AdsUploadError.
        """
        params = {
            "accountId": child_account_id,
            "uploadType": "NEW",
            "uploadFileName": file_name,
        }
        headers = {
            "x-z-base-account-id": account_id,
            "Authorization": f"Bearer {access_token}",
        }
        files = {"file": (file_name, content, "text/csv")}
        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post(
                    upload_url(network_type), params=params, headers=headers, files=files
                )
        except httpx.HTTPError as exc:
            record_external_call(
                integration=f"ads.upload.{network_type}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise AdsUploadError(f"upload transport error: {type(exc).__name__}") from exc

        is_json = "application/json" in response.headers.get("content-type", "")
        body: Any = None
        if is_json:
            try:
                body = response.json()
            except ValueError:
                body = None
        success = response.is_success
        errors = (body or {}).get("errors") if isinstance(body, dict) else None
        record_external_call(
            integration=f"ads.upload.{network_type}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success and not errors,
        )
        if not success:
            logger.error(
                "ads_upload_http_error account=%s status=%s",
                child_account_id,
                response.status_code,
            )
            raise AdsUploadError(
                f"upload responded with status {response.status_code}",
                status_code=response.status_code,
                errors=errors if isinstance(errors, list) else None,
            )
        if errors:
            error_list = errors if isinstance(errors, list) else [errors]
            _log_api_errors(error_list, child_account_id=child_account_id)
            raise AdsUploadError(
                "upload reported errors",
                status_code=response.status_code,
                errors=error_list,
            )
        return body if isinstance(body, dict) else {}

    async def refresh_access_token(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> IssuedTokens:
        settings = get_settings()
        params = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }
        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.get(f"{settings.ads_oauth_endpoint}{_TOKEN_PATH}", params=params)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="ads.oauth",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise TokenRefreshError(f"token refresh transport error: {type(exc).__name__}") from exc
        record_external_call(
            integration="ads.oauth",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.is_success,
        )
        if not response.is_success:
            raise TokenRefreshError(f"token refresh responded with status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("token refresh returned a non-JSON body") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TokenRefreshError("token refresh response carried no access_token")
        expires_in = payload.get("expires_in")
        return IssuedTokens(
            access_token=str(access_token),
            refresh_token=payload.get("refresh_token") or None,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
        )
