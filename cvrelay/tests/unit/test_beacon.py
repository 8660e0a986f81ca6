from __future__ import annotations

import json

import httpx
import pytest

from cvrelay.beacon import ConversionBeacon
from cvrelay.services.crypto.jwe import decrypt_message, generate_key_pair, read_protected_header
from cvrelay.services.pow import verify_pow
from cvrelay.services.telemetry import get_counter


COOKIES = "_ycl_123_aw=GCL.1690000000.abc"


@pytest.fixture(scope="module")
def key_pair():
    return generate_key_pair("kid-beacon")


def _beacon(key_pair, handler) -> ConversionBeacon:
    return ConversionBeacon(
        jwk=json.dumps(key_pair.public_jwk),
        api_host="https://relay.example.com/",
        backoff_ms=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_beacon_retries_until_accepted(key_pair) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"result": "success"})

    sent = await _beacon(key_pair, handler).send(cookie_header=COOKIES, amount=1000, order_id="123")
    assert sent is True
    assert len(requests) == 3
    assert str(requests[0].url) == "https://relay.example.com/api/setConversion"

    nonces = set()
    for request in requests:
        assert request.headers["content-type"] == "application/jose"
        assert verify_pow(request.headers["x-pow"]) is True
        token = request.content.decode("ascii")
        assert read_protected_header(token)["kid"] == "kid-beacon"
        payload = json.loads(decrypt_message(token, key_pair.private_pem))
        assert payload["yclid"] == "YSS.123.abc"
        assert payload["orderId"] == "123"
        assert payload["amount"] == 1000
        nonces.add(payload["nonce"])
    # Each attempt is a fresh message.
    assert len(nonces) == 3


@pytest.mark.asyncio
async def test_beacon_gives_up_after_three_transport_failures(key_pair) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("offline", request=request)

    sent = await _beacon(key_pair, handler).send(cookie_header=COOKIES, amount=1000, order_id="123")
    assert sent is False
    assert calls["count"] == 3
    assert get_counter("beacon_abandoned_total") == 1


@pytest.mark.asyncio
async def test_beacon_without_click_id_sends_nothing(key_pair) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200)

    sent = await _beacon(key_pair, handler).send(cookie_header="session=abc", amount=1000, order_id="123")
    assert sent is False
    assert calls["count"] == 0
