from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from cvrelay.core.config import get_settings
from cvrelay.core.errors import CvRelayError
from cvrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class ShopifyApiError(CvRelayError):
    """Admin GraphQL request failed at the transport or HTTP level."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyAdminClient:
    """Minimal Admin GraphQL client bound to one shop and access token."""

    def __init__(
        self,
        *,
        shop: str,
        access_token: str,
        api_version: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._shop = shop
        self._access_token = access_token
        self._api_version = api_version or settings.shopify_api_version
        self._transport = transport
        self._timeout_s = settings.ext_call_timeout_ms / 1000.0

    @property
    def endpoint(self) -> str:
        return f"https://{self._shop}/admin/api/{self._api_version}/graphql.json"

    async def request(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self._access_token,
        }
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="shopify.admin",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ShopifyApiError(f"admin api transport error: {type(exc).__name__}") from exc
        success = response.status_code < 400
        record_external_call(
            integration="shopify.admin",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            raise ShopifyApiError(
                f"admin api responded with status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ShopifyApiError("admin api returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ShopifyApiError("admin api returned an unexpected body")
        return payload
