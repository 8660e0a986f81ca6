from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cvrelay.domain.models import AdAccount, AdApplication


async def get_ad_application(session: AsyncSession) -> AdApplication | None:
    result = await session.execute(select(AdApplication).order_by(AdApplication.client_id).limit(1))
    return result.scalar_one_or_none()


async def list_ad_accounts(session: AsyncSession) -> list[AdAccount]:
    # Stable ordering keeps export passes and their logs deterministic.
    result = await session.execute(select(AdAccount).order_by(AdAccount.id))
    return list(result.scalars().all())


async def store_tokens(
    session: AsyncSession,
    application: AdApplication,
    *,
    access_token: str,
    refresh_token: str | None,
    issued_at: datetime,
) -> AdApplication:
    application.access_token = access_token
    if refresh_token:
        application.refresh_token = refresh_token
    application.token_created_at = issued_at
    await session.commit()
    return application
