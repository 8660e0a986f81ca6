from __future__ import annotations

from datetime import datetime, timezone
import json

import httpx
import pytest

from cvrelay.core.errors import OrderLookupError
from cvrelay.services.identity import MerchantIdentity
from cvrelay.services.orders import ShopifyOrderSystem


IDENTITY = MerchantIdentity(shop="test-shop.myshopify.com", access_token="shpat_test", primary_domain=None)


@pytest.mark.asyncio
async def test_order_lookup_uses_order_gid() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "test-shop.myshopify.com"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"order": {"createdAt": "2024-06-01T03:00:00Z"}}})

    created = await ShopifyOrderSystem(transport=httpx.MockTransport(handler)).fetch_order_created_at(IDENTITY, "123")
    assert created == datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)
    assert seen[0]["variables"] == {"id": "gid://shopify/Order/123"}


@pytest.mark.asyncio
async def test_missing_order_and_non_numeric_ids() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"data": {"order": None}})

    orders = ShopifyOrderSystem(transport=httpx.MockTransport(handler))
    assert await orders.fetch_order_created_at(IDENTITY, "999") is None
    assert await orders.fetch_order_created_at(IDENTITY, "gid://shopify/Order/1") is None
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_api_failures_raise_lookup_errors() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    def graphql_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

    with pytest.raises(OrderLookupError):
        await ShopifyOrderSystem(transport=httpx.MockTransport(server_error)).fetch_order_created_at(IDENTITY, "1")
    with pytest.raises(OrderLookupError):
        await ShopifyOrderSystem(transport=httpx.MockTransport(graphql_error)).fetch_order_created_at(IDENTITY, "1")
