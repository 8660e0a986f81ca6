from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cvrelay.domain.models import PixelKeyPair


async def get_key_pair(session: AsyncSession, kid: str) -> PixelKeyPair | None:
    result = await session.execute(select(PixelKeyPair).where(PixelKeyPair.kid == kid))
    return result.scalar_one_or_none()


async def list_key_pairs(session: AsyncSession) -> list[PixelKeyPair]:
    # Newest first; index 0 is the key advertised to new pixel loads.
    result = await session.execute(select(PixelKeyPair).order_by(PixelKeyPair.created_at.desc()))
    return list(result.scalars().all())


async def count_key_pairs(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(PixelKeyPair))
    return int(result.scalar() or 0)


async def purge_all_but_newest(session: AsyncSession, keep: int) -> list[str]:
    # Delete every key pair outside the newest `keep` rows and return the purged kids.
    keep_kids = (
        await session.execute(
            select(PixelKeyPair.kid).order_by(PixelKeyPair.created_at.desc()).limit(max(1, keep))
        )
    ).scalars().all()
    stale_kids = (
        await session.execute(select(PixelKeyPair.kid).where(PixelKeyPair.kid.not_in(keep_kids)))
    ).scalars().all()
    if stale_kids:
        await session.execute(delete(PixelKeyPair).where(PixelKeyPair.kid.in_(stale_kids)))
    return list(stale_kids)


async def delete_key_pair(session: AsyncSession, kid: str) -> None:
    await session.execute(delete(PixelKeyPair).where(PixelKeyPair.kid == kid))
