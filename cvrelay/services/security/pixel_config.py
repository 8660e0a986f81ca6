from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrelay.core.errors import PixelConfigPushError
from cvrelay.persistence.repos.sessions import get_current_session
from cvrelay.services.shopify import ShopifyAdminClient, ShopifyApiError


logger = logging.getLogger(__name__)

_PIXEL_QUERY = "query { webPixel { id } }"
_PIXEL_UPDATE = """
mutation ($id: ID!, $webPixel: WebPixelInput!) {
  webPixelUpdate(id: $id, webPixel: $webPixel) {
    userErrors { field message }
    webPixel { id settings }
  }
}
"""


class PixelConfigPublisher(Protocol):
    async def publish(self, *, public_jwk: dict[str, Any], api_host: str) -> None:
        """Make the key the one every new beacon instance encrypts with.

        Raises PixelConfigPushError when the configuration was not updated.
        """
        ...


def build_pixel_settings(public_jwk: dict[str, Any], api_host: str) -> dict[str, str]:
    # The pixel reads settings as strings; the JWK travels as a JSON document.
    return {
        "jwk": json.dumps(public_jwk, separators=(",", ":")),
        "api_host": api_host,
    }


class ShopifyWebPixelPublisher:
    """Pushes the public key into the shop's web pixel settings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._transport = transport

    async def publish(self, *, public_jwk: dict[str, Any], api_host: str) -> None:
        async with self._session_factory() as session:
            row = await get_current_session(session)
        if row is None:
            raise PixelConfigPushError("no merchant session to push pixel settings with")
        client = ShopifyAdminClient(
            shop=row.shop,
            access_token=row.access_token,
            transport=self._transport,
        )
        try:
            lookup = await client.request(_PIXEL_QUERY)
            pixel_id = ((lookup.get("data") or {}).get("webPixel") or {}).get("id")
            if not pixel_id:
                raise PixelConfigPushError("web pixel not found")
            result = await client.request(
                _PIXEL_UPDATE,
                {
                    "id": pixel_id,
                    "webPixel": {"settings": build_pixel_settings(public_jwk, api_host)},
                },
            )
        except ShopifyApiError as exc:
            raise PixelConfigPushError(str(exc)) from exc
        update = (result.get("data") or {}).get("webPixelUpdate") or {}
        user_errors = update.get("userErrors") or []
        if user_errors or result.get("errors"):
            for error in user_errors:
                logger.error(
                    "pixel_update_user_error field=%s message=%s",
                    error.get("field"),
                    error.get("message"),
                )
            raise PixelConfigPushError("web pixel update was rejected")
