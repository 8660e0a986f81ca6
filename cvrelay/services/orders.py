from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Protocol

import httpx

from cvrelay.core.errors import OrderLookupError
from cvrelay.services.identity import MerchantIdentity
from cvrelay.services.shopify import ShopifyAdminClient, ShopifyApiError


logger = logging.getLogger(__name__)

_ORDER_QUERY = """
query OrderCreatedAt($id: ID!) {
  order(id: $id) { createdAt }
}
"""
_NUMERIC_ID = re.compile(r"[0-9]+")


class OrderSystem(Protocol):
    async def fetch_order_created_at(
        self, identity: MerchantIdentity, order_id: str
    ) -> datetime | None:
        """Return the order creation time, None when the order does not exist.

        Raises OrderLookupError when the lookup itself fails.
        """
        ...


def parse_shopify_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ShopifyOrderSystem:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def fetch_order_created_at(
        self, identity: MerchantIdentity, order_id: str
    ) -> datetime | None:
        # Only numeric ids map to an order GID; anything else cannot exist upstream.
        if not _NUMERIC_ID.fullmatch(order_id):
            return None
        client = ShopifyAdminClient(
            shop=identity.shop,
            access_token=identity.access_token,
            transport=self._transport,
        )
        try:
            payload = await client.request(
                _ORDER_QUERY, {"id": f"gid://shopify/Order/{order_id}"}
            )
        except ShopifyApiError as exc:
            raise OrderLookupError(str(exc)) from exc
        if payload.get("errors"):
            logger.warning("order_lookup_api_errors order_id=%s count=%s", order_id, len(payload["errors"]))
            raise OrderLookupError("order lookup returned GraphQL errors")
        order = (payload.get("data") or {}).get("order")
        if not order or not order.get("createdAt"):
            return None
        try:
            return parse_shopify_timestamp(str(order["createdAt"]))
        except ValueError as exc:
            raise OrderLookupError("order createdAt is not a timestamp") from exc
