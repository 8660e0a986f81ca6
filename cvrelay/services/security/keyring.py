from __future__ import annotations

import asyncio
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any, Callable
from uuid import uuid4

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrelay.core.config import get_settings
from cvrelay.core.errors import KeyRotationError
from cvrelay.domain.models import PixelKeyPair
from cvrelay.persistence.repos.key_pairs import (
    delete_key_pair,
    get_key_pair,
    list_key_pairs,
    purge_all_but_newest,
)
from cvrelay.services.cache import SingleSlotCache
from cvrelay.services.crypto.jwe import generate_key_pair
from cvrelay.services.security.pixel_config import PixelConfigPublisher
from cvrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class KeyringConfigurationError(RuntimeError):
    """Raised when required keyring encryption config is missing or invalid."""


@dataclass(frozen=True)
class PixelKeyView:
    kid: str
    public_jwk: dict[str, Any]
    created_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Enforce explicit keyring configuration in required mode; never store plaintext private keys.
    source = (settings.keyring_master_key or "").strip()
    if not source:
        if settings.keyring_master_key_required:
            raise KeyringConfigurationError("KEYRING_MASTER_KEY is required for keyring encryption")
        # Deterministic fallback for dev/test to avoid breaking local workflows.
        source = f"{settings.app_name}-local-keyring"
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def wrap_private_key(private_pem: str) -> str:
    token = _build_fernet().encrypt(private_pem.encode("utf-8"))
    return str(token.decode("utf-8"))


def unwrap_private_key(ciphertext: str) -> str:
    return _build_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def _to_view(row: PixelKeyPair) -> PixelKeyView:
    return PixelKeyView(kid=row.kid, public_jwk=json.loads(row.public_jwk), created_at=row.created_at)


async def list_pixel_keys(session: AsyncSession) -> list[PixelKeyView]:
    return [_to_view(row) for row in await list_key_pairs(session)]


async def current_pixel_key(session: AsyncSession) -> PixelKeyView | None:
    rows = await list_key_pairs(session)
    return _to_view(rows[0]) if rows else None


class KeyRotationManager:
    """Generates, persists, retires and publishes pixel encryption keys.

    Each rotation stores a new RSA-OAEP-256 key pair, trims storage to the newest
    ``retain`` pairs and pushes the new public JWK to the pixel configuration. A
    failed push deletes the new pair again and raises KeyRotationError so the
    scheduler can retry. Older pairs stay decryptable until they are purged.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: PixelConfigPublisher,
        *,
        retain: int | None = None,
        api_host: str | None = None,
        on_rotated: Callable[[], None] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._publisher = publisher
        self._retain = max(1, retain if retain is not None else settings.pixel_key_retain_count)
        self._api_host = api_host or settings.app_url
        self._on_rotated = on_rotated

    async def rotate(self) -> PixelKeyView:
        kid = str(uuid4())
        # RSA generation is CPU-bound; keep the event loop free.
        generated = await asyncio.to_thread(generate_key_pair, kid)
        row = PixelKeyPair(
            kid=kid,
            public_jwk=json.dumps(generated.public_jwk, separators=(",", ":")),
            private_key_ciphertext=wrap_private_key(generated.private_pem),
            created_at=_utc_now(),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.flush()
            purged = await purge_all_but_newest(session, self._retain)
            await session.commit()

        try:
            await self._publisher.publish(public_jwk=generated.public_jwk, api_host=self._api_host)
        except Exception as exc:  # noqa: BLE001 - any push failure must roll the new key back.
            logger.error("pixel_key_push_failed kid=%s error=%s", kid, type(exc).__name__)
            await self._rollback(kid)
            increment_counter("pixel_key_rotation_failed_total")
            raise KeyRotationError(f"pixel configuration push failed for kid={kid}") from exc

        if self._on_rotated is not None:
            self._on_rotated()
        increment_counter("pixel_key_rotation_total")
        logger.info("pixel_key_rotated kid=%s purged=%s", kid, len(purged))
        return PixelKeyView(kid=kid, public_jwk=generated.public_jwk, created_at=row.created_at)

    async def _rollback(self, kid: str) -> None:
        async with self._session_factory() as session:
            await delete_key_pair(session, kid)
            await session.commit()


class PrivateKeyResolver:
    """Loads private keys by kid through a single-slot cache.

    A miss loads from storage and overwrites the slot. ``invalidate`` is wired to
    rotation so a load racing a rotation cannot repopulate the slot afterwards.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache: SingleSlotCache[str, str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache: SingleSlotCache[str, str] = cache or SingleSlotCache()

    @property
    def cache(self) -> SingleSlotCache[str, str]:
        return self._cache

    def invalidate(self) -> None:
        self._cache.invalidate()

    async def resolve(self, kid: str) -> str | None:
        hit = self._cache.get(kid)
        if hit is not None:
            return hit
        generation = self._cache.generation
        async with self._session_factory() as session:
            row = await get_key_pair(session, kid)
        if row is None:
            return None
        try:
            private_pem = unwrap_private_key(row.private_key_ciphertext)
        except InvalidToken:
            # Master key changed since this pair was written; treat it as unavailable.
            logger.error("pixel_key_unwrap_failed kid=%s", kid)
            return None
        self._cache.put(kid, private_pem, generation=generation)
        return private_pem
