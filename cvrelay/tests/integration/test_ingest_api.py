from __future__ import annotations

import asyncio
import base64
import json
import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cvrelay.apps.api.main import create_app
from cvrelay.domain.models import ConversionRecord, ReplayToken
from cvrelay.persistence.db import SessionLocal
from cvrelay.services.crypto.jwe import encrypt_json, generate_key_pair
from cvrelay.services.ingest import gateway as gateway_module
from cvrelay.services.security import KeyRotationManager
from cvrelay.services.telemetry import get_counter
from cvrelay.tests.utils.fakes import FakeOrderSystem, FakePublisher
from cvrelay.tests.utils.seed import beacon_request, conversion_payload, seed_merchant_session


ENDPOINT = "/api/setConversion"


async def _rotate_key() -> dict:
    key = await KeyRotationManager(SessionLocal, FakePublisher()).rotate()
    return key.public_jwk


async def _record_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(ConversionRecord))).scalar() or 0)


def _client(order_system: FakeOrderSystem) -> AsyncClient:
    app = create_app(order_system=order_system)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _setup(*, with_session: bool = True) -> tuple[dict, FakeOrderSystem]:
    if with_session:
        await seed_merchant_session()
    public_jwk = await _rotate_key()
    orders = FakeOrderSystem()
    orders.add_order("123", age_s=5)
    return public_jwk, orders


def _error_code(response) -> int:
    assert response.status_code == 405
    body = response.json()
    assert body["error"] == "invalid access"
    return body["error_code"]


@pytest.mark.asyncio
async def test_valid_conversion_is_accepted_once() -> None:
    public_jwk, orders = await _setup()
    body, headers = beacon_request(conversion_payload(order_id="123", nonce="n1", amount=1000), public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"result": "success"}
        assert response.headers["access-control-allow-origin"] == "https://shop.example.com"
        assert response.headers["access-control-allow-headers"] == "Content-Type, Authorization, X-Pow"

        replay = await client.post(ENDPOINT, content=body, headers=headers)
    assert _error_code(replay) == 8

    async with SessionLocal() as session:
        rows = (await session.execute(select(ConversionRecord))).scalars().all()
    assert len(rows) == 1
    assert rows[0].amount == 1000
    assert rows[0].order_id == "123"
    assert rows[0].yclid == "YSS.1690000000.abc"
    assert rows[0].is_processed is False
    assert get_counter("ingest_accepted_total") == 1


@pytest.mark.asyncio
async def test_preflight_and_wrong_method() -> None:
    public_jwk, orders = await _setup()
    async with _client(orders) as client:
        preflight = await client.options(ENDPOINT)
        wrong_method = await client.get(ENDPOINT)
    assert preflight.status_code == 204
    assert preflight.headers["access-control-allow-methods"] == "POST, OPTIONS"
    assert _error_code(wrong_method) == 1


@pytest.mark.asyncio
async def test_proof_of_work_is_required_and_must_be_fresh() -> None:
    public_jwk, orders = await _setup()
    body, headers = beacon_request(conversion_payload(), public_jwk)
    stale_body, stale_headers = beacon_request(conversion_payload(nonce="n2"), public_jwk, pow_now=time.time() - 180)
    async with _client(orders) as client:
        missing = await client.post(ENDPOINT, content=body, headers={"Content-Type": "application/jose"})
        stale = await client.post(ENDPOINT, content=stale_body, headers=stale_headers)
    assert _error_code(missing) == 2
    assert _error_code(stale) == 2
    assert await _record_count() == 0


@pytest.mark.asyncio
async def test_empty_body_and_unsupported_algorithm() -> None:
    public_jwk, orders = await _setup()
    _, headers = beacon_request(conversion_payload(), public_jwk)

    def segment(raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    header = segment(json.dumps({"alg": "RSA1_5", "enc": "A256GCM", "kid": public_jwk["kid"]}).encode("utf-8"))
    legacy = ".".join([header, segment(b"k"), segment(b"iv"), segment(b"ct"), segment(b"tag")])
    async with _client(orders) as client:
        empty = await client.post(ENDPOINT, content=b"", headers=headers)
        unsupported = await client.post(ENDPOINT, content=legacy, headers=headers)
        garbage = await client.post(ENDPOINT, content="not-a-jwe", headers=headers)
    assert _error_code(empty) == 3
    assert _error_code(unsupported) == 4
    assert _error_code(garbage) == 4


@pytest.mark.asyncio
async def test_missing_merchant_session_is_rejected() -> None:
    public_jwk, orders = await _setup(with_session=False)
    body, headers = beacon_request(conversion_payload(), public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert _error_code(response) == 5
    assert response.headers["access-control-allow-origin"] == ""


@pytest.mark.asyncio
async def test_unknown_key_and_bad_payload_are_rejected() -> None:
    public_jwk, orders = await _setup()
    ghost = generate_key_pair("ghost-kid")
    unknown_kid, headers = beacon_request(conversion_payload(), ghost.public_jwk)
    bad_payload = conversion_payload(nonce="n2")
    bad_payload["amount"] = "1000"
    bad_body = encrypt_json(bad_payload, public_jwk)
    async with _client(orders) as client:
        unknown = await client.post(ENDPOINT, content=unknown_kid, headers=headers)
        invalid = await client.post(ENDPOINT, content=bad_body, headers=headers)
    assert _error_code(unknown) == 6
    assert _error_code(invalid) == 7
    async with SessionLocal() as session:
        nonces = (await session.execute(select(ReplayToken.nonce))).scalars().all()
    # Rejections before the dedup step never consume a nonce.
    assert nonces == []


@pytest.mark.asyncio
async def test_out_of_range_timestamp_is_a_payload_rejection() -> None:
    public_jwk, orders = await _setup()
    payload = conversion_payload()
    payload["visitedAt"] = "0001-01-01T00:00:00+09:00"
    body, headers = beacon_request(payload, public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert _error_code(response) == 7
    assert await _record_count() == 0


@pytest.mark.asyncio
async def test_same_nonce_for_another_order_is_a_duplicate() -> None:
    public_jwk, orders = await _setup()
    orders.add_order("124", age_s=5)
    first, headers = beacon_request(conversion_payload(order_id="123", nonce="shared"), public_jwk)
    second, second_headers = beacon_request(conversion_payload(order_id="124", nonce="shared"), public_jwk)
    async with _client(orders) as client:
        accepted = await client.post(ENDPOINT, content=first, headers=headers)
        duplicate = await client.post(ENDPOINT, content=second, headers=second_headers)
    assert accepted.status_code == 200
    assert _error_code(duplicate) == 8
    assert await _record_count() == 1


@pytest.mark.asyncio
async def test_parallel_duplicate_deliveries_accept_exactly_one() -> None:
    public_jwk, orders = await _setup()
    body, headers = beacon_request(conversion_payload(order_id="123", nonce="n-par"), public_jwk)
    async with _client(orders) as client:
        responses = await asyncio.gather(
            *(client.post(ENDPOINT, content=body, headers=headers) for _ in range(8))
        )
    statuses = sorted(response.status_code for response in responses)
    assert statuses.count(200) == 1
    assert all(_error_code(r) == 8 for r in responses if r.status_code != 200)
    assert await _record_count() == 1


@pytest.mark.asyncio
async def test_parallel_reencryptions_of_one_order_accept_exactly_one() -> None:
    public_jwk, orders = await _setup()
    requests = [
        beacon_request(conversion_payload(order_id="123", nonce=f"n-{index}"), public_jwk)
        for index in range(6)
    ]
    async with _client(orders) as client:
        responses = await asyncio.gather(
            *(client.post(ENDPOINT, content=body, headers=headers) for body, headers in requests)
        )
    assert [response.status_code for response in responses].count(200) == 1
    assert all(_error_code(r) == 8 for r in responses if r.status_code != 200)
    assert await _record_count() == 1


@pytest.mark.asyncio
async def test_order_checks() -> None:
    public_jwk, orders = await _setup()
    orders.add_order("500", age_s=600)
    missing_body, headers = beacon_request(conversion_payload(order_id="999", nonce="n-missing"), public_jwk)
    stale_body, _ = beacon_request(conversion_payload(order_id="500", nonce="n-stale"), public_jwk)
    async with _client(orders) as client:
        missing = await client.post(ENDPOINT, content=missing_body, headers=headers)
        stale = await client.post(ENDPOINT, content=stale_body, headers=headers)
    assert _error_code(missing) == 9
    # One lookup plus exactly one retry for the missing order, one lookup for the stale one.
    assert orders.calls == ["999", "999", "500"]
    assert _error_code(stale) == 10
    assert await _record_count() == 0


@pytest.mark.asyncio
async def test_order_visible_on_retry_is_accepted() -> None:
    public_jwk, orders = await _setup()
    orders.visible_after = 1
    body, headers = beacon_request(conversion_payload(), public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert response.status_code == 200
    assert len(orders.calls) == 2


@pytest.mark.asyncio
async def test_order_lookup_failure_is_rejected() -> None:
    public_jwk, orders = await _setup()
    orders.fail = True
    body, headers = beacon_request(conversion_payload(), public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert _error_code(response) == 11


@pytest.mark.asyncio
async def test_persistence_failure_is_reported(monkeypatch) -> None:
    public_jwk, orders = await _setup()

    async def _broken_insert(*_args, **_kwargs):
        raise OperationalError("INSERT INTO conversion_records", {}, Exception("disk I/O error"))

    monkeypatch.setattr(gateway_module, "create_conversion", _broken_insert)
    body, headers = beacon_request(conversion_payload(), public_jwk)
    async with _client(orders) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert _error_code(response) == 12


@pytest.mark.asyncio
async def test_unexpected_failure_answers_500_with_cors() -> None:
    public_jwk, _ = await _setup()

    class ExplodingOrders(FakeOrderSystem):
        async def fetch_order_created_at(self, identity, order_id):
            raise RuntimeError("boom")

    body, headers = beacon_request(conversion_payload(), public_jwk)
    async with _client(ExplodingOrders()) as client:
        response = await client.post(ENDPOINT, content=body, headers=headers)
    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}
    assert response.headers["access-control-allow-origin"] == "https://shop.example.com"


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client(FakeOrderSystem()) as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ops_metrics_reports_rejection_counters() -> None:
    public_jwk, orders = await _setup()
    body, _ = beacon_request(conversion_payload(), public_jwk)
    async with _client(orders) as client:
        await client.post(ENDPOINT, content=body, headers={"Content-Type": "application/jose"})
        response = await client.get("/v1/ops/metrics")
    assert response.status_code == 200
    payload = response.json()
    assert payload["counters"]["ingest_rejected_total.2"] == 1
    assert payload["integrations"]["shopify.admin"]["count"] == 0
