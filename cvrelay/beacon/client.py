"""Conversion beacon: the sending side of the ingestion protocol.

Used by the storefront integration and by tests to produce traffic that the
gateway accepts. Every attempt builds a fresh payload (new nonce), a fresh
proof-of-work stamp and a fresh encryption, so a retry can never be mistaken for
a replay of an earlier attempt's bytes.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable
from uuid import uuid4

import httpx

from cvrelay.beacon.cookies import ClickId, find_latest_click_id
from cvrelay.core.config import get_settings
from cvrelay.services.crypto.jwe import JOSE_CONTENT_TYPE, encrypt_json
from cvrelay.services.ingest.payload import format_display_timestamp
from cvrelay.services.pow import DEFAULT_DIFFICULTY, POW_HEADER, solve_pow
from cvrelay.services.resilience import RetryPolicy, retry_async
from cvrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INGEST_PATH = "/api/setConversion"
MAX_ATTEMPTS = 3
RETRY_BACKOFF_MS = 500


class BeaconDeliveryError(Exception):
    """The endpoint answered, but not with a 2xx status."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"ingest endpoint responded with status {status_code}")
        self.status_code = status_code


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (httpx.HTTPError, BeaconDeliveryError, TimeoutError))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversionBeacon:
    def __init__(
        self,
        *,
        jwk: dict[str, Any] | str,
        api_host: str,
        difficulty: int = DEFAULT_DIFFICULTY,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_ms: int = RETRY_BACKOFF_MS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        # Pixel settings carry the JWK as a JSON string.
        self._jwk = json.loads(jwk) if isinstance(jwk, str) else dict(jwk)
        self._endpoint = f"{api_host.rstrip('/')}{INGEST_PATH}"
        self._difficulty = difficulty
        self._policy = RetryPolicy(
            timeout_ms=get_settings().ext_call_timeout_ms,
            max_attempts=max_attempts,
            backoff_ms=backoff_ms,
            exponential=False,
        )
        self._transport = transport
        self._clock = clock or _utc_now

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def build_payload(
        self,
        click: ClickId,
        *,
        amount: int | float,
        order_id: str,
        converted_at: datetime,
    ) -> dict[str, Any]:
        return {
            "yclid": click.value,
            "visitedAt": format_display_timestamp(click.clicked_at),
            "conversionedAt": format_display_timestamp(converted_at),
            "amount": amount,
            "orderId": order_id,
            "nonce": str(uuid4()),
        }

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        click: ClickId,
        *,
        amount: int | float,
        order_id: str,
        converted_at: datetime,
    ) -> None:
        payload = self.build_payload(click, amount=amount, order_id=order_id, converted_at=converted_at)
        token = encrypt_json(payload, self._jwk)
        stamp = await asyncio.to_thread(
            solve_pow, difficulty=self._difficulty, now=self._clock().timestamp()
        )
        response = await client.post(
            self._endpoint,
            content=token.encode("ascii"),
            headers={POW_HEADER: stamp, "Content-Type": JOSE_CONTENT_TYPE},
        )
        if not response.is_success:
            raise BeaconDeliveryError(response.status_code)

    async def send(
        self,
        *,
        cookie_header: str | None,
        amount: int | float,
        order_id: str,
        converted_at: datetime | None = None,
    ) -> bool:
        """Deliver one purchase conversion. Returns True once the endpoint accepts it.

        Without a click id in the cookies nothing is sent and False is returned.
        Delivery failures are logged, never raised.
        """
        click = find_latest_click_id(cookie_header)
        if click is None:
            logger.debug("beacon_skipped reason=no_click_id order_id=%s", order_id)
            return False
        converted = converted_at or self._clock()
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                await retry_async(
                    lambda: self._attempt(
                        client, click, amount=amount, order_id=order_id, converted_at=converted
                    ),
                    policy=self._policy,
                    retryable=_retryable,
                    name="beacon",
                )
            except (httpx.HTTPError, BeaconDeliveryError, TimeoutError) as exc:
                increment_counter("beacon_abandoned_total")
                logger.error(
                    "beacon_abandoned order_id=%s attempts=%s error=%s",
                    order_id,
                    self._policy.max_attempts,
                    type(exc).__name__,
                )
                return False
        increment_counter("beacon_delivered_total")
        return True
