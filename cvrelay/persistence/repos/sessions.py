from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cvrelay.domain.models import MerchantSession


async def get_current_session(session: AsyncSession) -> MerchantSession | None:
    # Single-merchant install: the newest session row is the current one.
    result = await session.execute(
        select(MerchantSession).order_by(MerchantSession.created_at.desc(), MerchantSession.id).limit(1)
    )
    return result.scalar_one_or_none()
