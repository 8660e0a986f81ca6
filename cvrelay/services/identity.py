from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrelay.core.config import get_settings
from cvrelay.persistence.repos.sessions import get_current_session
from cvrelay.services.cache import TTLCache


_CURRENT = "current"


@dataclass(frozen=True)
class MerchantIdentity:
    shop: str
    access_token: str
    primary_domain: str | None

    @property
    def allowed_origin(self) -> str:
        # The storefront origin the pixel posts from; falls back to the myshopify domain.
        return self.primary_domain or f"https://{self.shop}"


class IdentityResolver:
    """Resolves the current merchant session through a short-lived cache."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_s: float | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._cache: TTLCache[str, MerchantIdentity] = TTLCache(
            settings.identity_cache_ttl_s if ttl_s is None else ttl_s,
            time_source=time_source,
        )

    async def resolve(self) -> MerchantIdentity | None:
        cached = self._cache.get(_CURRENT)
        if cached is not None:
            return cached
        async with self._session_factory() as session:
            row = await get_current_session(session)
        if row is None:
            # Misses are not cached so a fresh install is picked up on the next request.
            return None
        identity = MerchantIdentity(
            shop=row.shop,
            access_token=row.access_token,
            primary_domain=row.primary_domain,
        )
        self._cache.put(_CURRENT, identity)
        return identity


class AllowedOriginResolver:
    """Caches the CORS origin derived from the merchant's primary domain."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_s: float | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._cache: TTLCache[str, str] = TTLCache(
            settings.allowed_origin_cache_ttl_s if ttl_s is None else ttl_s,
            time_source=time_source,
        )

    async def resolve(self) -> str:
        cached = self._cache.get(_CURRENT)
        if cached is not None:
            return cached
        async with self._session_factory() as session:
            row = await get_current_session(session)
        value = ""
        if row is not None:
            value = row.primary_domain or f"https://{row.shop}"
        # An empty origin is cached too; browsers then refuse the cross-origin read.
        self._cache.put(_CURRENT, value)
        return value
