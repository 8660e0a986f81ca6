"""Server side of the conversion beacon.

Every request walks a fixed sequence of checks and stops at the first one that
fails. Each failing check has its own stable code (see RejectionCode) so a
rejection can be logged and diagnosed without logging key material or payloads.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
import logging
from typing import Awaitable, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrelay.core.config import get_settings
from cvrelay.core.errors import OrderLookupError
from cvrelay.persistence.repos.conversions import claim_submission, create_conversion
from cvrelay.services.crypto.jwe import MessageFormatError, decrypt_message, is_supported_header, read_protected_header
from cvrelay.services.identity import AllowedOriginResolver, IdentityResolver, MerchantIdentity
from cvrelay.services.ingest.payload import ConversionPayload, PayloadError, parse_payload
from cvrelay.services.orders import OrderSystem
from cvrelay.services.pow import verify_pow
from cvrelay.services.security.keyring import PrivateKeyResolver
from cvrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class RejectionCode(IntEnum):
    METHOD_NOT_ALLOWED = 1
    PROOF_OF_WORK = 2
    EMPTY_BODY = 3
    UNSUPPORTED_ALGORITHM = 4
    IDENTITY_UNAVAILABLE = 5
    KEY_UNAVAILABLE = 6
    INVALID_PAYLOAD = 7
    DUPLICATE = 8
    ORDER_NOT_FOUND = 9
    ORDER_STALE = 10
    ORDER_LOOKUP_FAILED = 11
    PERSISTENCE_FAILED = 12


@dataclass(frozen=True)
class IngestOutcome:
    accepted: bool
    code: RejectionCode | None = None
    reason: str | None = None
    record_id: int | None = None


class _Rejected(Exception):
    def __init__(self, code: RejectionCode, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionGateway:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        order_system: OrderSystem,
        identity_resolver: IdentityResolver | None = None,
        origin_resolver: AllowedOriginResolver | None = None,
        key_resolver: PrivateKeyResolver | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._order_system = order_system
        self.identity_resolver = identity_resolver or IdentityResolver(session_factory)
        self.origin_resolver = origin_resolver or AllowedOriginResolver(session_factory)
        self.key_resolver = key_resolver or PrivateKeyResolver(session_factory)
        self._clock = clock or _utc_now
        self._sleep = sleep or asyncio.sleep

    async def allowed_origin(self) -> str:
        return await self.origin_resolver.resolve()

    async def handle(self, *, method: str, pow_token: str | None, body: str) -> IngestOutcome:
        try:
            record_id = await self._process(method=method, pow_token=pow_token, body=body)
        except _Rejected as rejected:
            increment_counter(f"ingest_rejected_total.{int(rejected.code)}")
            if rejected.code == RejectionCode.DUPLICATE:
                # Duplicates are the normal result of client retries.
                logger.info("ingest_duplicate reason=%s", rejected.reason)
            else:
                logger.warning("ingest_rejected code=%s reason=%s", int(rejected.code), rejected.reason)
            return IngestOutcome(accepted=False, code=rejected.code, reason=rejected.reason)
        increment_counter("ingest_accepted_total")
        return IngestOutcome(accepted=True, record_id=record_id)

    async def _process(self, *, method: str, pow_token: str | None, body: str) -> int:
        settings = get_settings()
        if method.upper() != "POST":
            raise _Rejected(RejectionCode.METHOD_NOT_ALLOWED, f"method {method.upper()}")

        if not verify_pow(
            pow_token,
            difficulty=settings.pow_difficulty_bits,
            valid_seconds=settings.pow_valid_seconds,
            now=self._clock().timestamp(),
        ):
            raise _Rejected(RejectionCode.PROOF_OF_WORK, "proof of work missing, stale or too weak")

        token = body.strip()
        if not token:
            raise _Rejected(RejectionCode.EMPTY_BODY, "empty body")
        try:
            header = read_protected_header(token)
        except MessageFormatError:
            raise _Rejected(RejectionCode.UNSUPPORTED_ALGORITHM, "unparsable protected header") from None
        if not is_supported_header(header):
            raise _Rejected(
                RejectionCode.UNSUPPORTED_ALGORITHM,
                f"alg={header.get('alg')} enc={header.get('enc')}",
            )
        kid = header.get("kid")

        identity, private_pem = await asyncio.gather(
            self.identity_resolver.resolve(),
            self._resolve_key(kid),
        )
        if identity is None:
            raise _Rejected(RejectionCode.IDENTITY_UNAVAILABLE, "no merchant session")
        if private_pem is None:
            raise _Rejected(RejectionCode.KEY_UNAVAILABLE, f"unknown kid={kid}")

        try:
            payload = parse_payload(decrypt_message(token, private_pem))
        except (MessageFormatError, PayloadError) as exc:
            raise _Rejected(RejectionCode.INVALID_PAYLOAD, str(exc)) from None

        async with self._session_factory() as session:
            claimed = await claim_submission(session, nonce=payload.nonce, order_id=payload.order_id)
        if not claimed:
            raise _Rejected(RejectionCode.DUPLICATE, f"order_id={payload.order_id}")

        await self._verify_order(identity, payload.order_id)
        return await self._persist(payload)

    async def _resolve_key(self, kid: object) -> str | None:
        if not isinstance(kid, str) or not kid:
            return None
        return await self.key_resolver.resolve(kid)

    async def _verify_order(self, identity: MerchantIdentity, order_id: str) -> None:
        settings = get_settings()
        try:
            # The order may not be readable yet right after checkout completes.
            await self._sleep(settings.order_lookup_initial_delay_ms / 1000.0)
            created_at = await self._order_system.fetch_order_created_at(identity, order_id)
            if created_at is None:
                await self._sleep(settings.order_lookup_retry_delay_ms / 1000.0)
                created_at = await self._order_system.fetch_order_created_at(identity, order_id)
        except OrderLookupError as exc:
            raise _Rejected(RejectionCode.ORDER_LOOKUP_FAILED, str(exc)) from None
        if created_at is None:
            raise _Rejected(RejectionCode.ORDER_NOT_FOUND, f"order_id={order_id}")
        age = self._clock() - created_at
        if age > timedelta(seconds=settings.order_freshness_seconds):
            raise _Rejected(RejectionCode.ORDER_STALE, f"order_id={order_id} age_s={int(age.total_seconds())}")

    async def _persist(self, payload: ConversionPayload) -> int:
        async with self._session_factory() as session:
            try:
                record = await create_conversion(
                    session,
                    yclid=payload.yclid,
                    amount=payload.amount_minor,
                    visited_at=payload.visited_at_utc,
                    converted_at=payload.converted_at_utc,
                    order_id=payload.order_id,
                )
            except IntegrityError:
                await session.rollback()
                # A concurrent delivery with a different nonce won the order_id constraint.
                raise _Rejected(RejectionCode.DUPLICATE, f"order_id={payload.order_id} at insert") from None
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("conversion_persist_failed order_id=%s", payload.order_id)
                raise _Rejected(RejectionCode.PERSISTENCE_FAILED, type(exc).__name__) from None
        return record.id
