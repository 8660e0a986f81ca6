from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cvrelay.domain.models import ConversionRecord, ReplayToken


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def claim_submission(session: AsyncSession, *, nonce: str, order_id: str) -> bool:
    """Reserve a nonce and confirm the order has no accepted conversion yet.

    Both checks run in one transaction and the unique constraints decide races:
    concurrent deliveries of the same nonce all block on the same primary key and
    only the first commit wins. Returns False for any duplicate.
    """
    try:
        session.add(ReplayToken(nonce=nonce, received_at=_utc_now()))
        await session.flush()
        existing = (
            await session.execute(
                select(ConversionRecord.id).where(ConversionRecord.order_id == order_id).limit(1)
            )
        ).scalar_one_or_none()
        if existing is not None:
            await session.rollback()
            return False
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def create_conversion(
    session: AsyncSession,
    *,
    yclid: str,
    amount: int,
    visited_at: datetime,
    converted_at: datetime,
    order_id: str,
) -> ConversionRecord:
    # IntegrityError propagates so callers can map an order_id collision to a duplicate.
    record = ConversionRecord(
        yclid=yclid,
        amount=amount,
        visited_at=visited_at,
        converted_at=converted_at,
        order_id=order_id,
        is_processed=False,
    )
    session.add(record)
    await session.commit()
    return record


async def list_exportable(
    session: AsyncSession,
    *,
    prefix: str,
    visited_from: datetime,
    converted_from: datetime,
    now: datetime,
) -> list[ConversionRecord]:
    # Both windows must hold; see the export policy in services/export/exporter.py.
    stmt = (
        select(ConversionRecord)
        .where(
            ConversionRecord.yclid.startswith(f"{prefix}.", autoescape=True),
            ConversionRecord.visited_at >= visited_from,
            ConversionRecord.visited_at < now,
            ConversionRecord.converted_at >= converted_from,
            ConversionRecord.converted_at < now,
            ConversionRecord.is_processed.is_(False),
        )
        .order_by(ConversionRecord.converted_at, ConversionRecord.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_aged_out(
    session: AsyncSession,
    *,
    prefix: str,
    converted_before: datetime,
    converted_since: datetime,
    visited_from: datetime,
) -> int:
    # Unprocessed rows that left the conversion window within [converted_since, converted_before).
    stmt = (
        select(func.count())
        .select_from(ConversionRecord)
        .where(
            ConversionRecord.yclid.startswith(f"{prefix}.", autoescape=True),
            ConversionRecord.visited_at >= visited_from,
            ConversionRecord.converted_at >= converted_since,
            ConversionRecord.converted_at < converted_before,
            ConversionRecord.is_processed.is_(False),
        )
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def mark_processed(session: AsyncSession, record_ids: Sequence[int]) -> int:
    # One bulk update per accepted batch; the is_processed guard keeps the transition one-way.
    if not record_ids:
        return 0
    result = await session.execute(
        update(ConversionRecord)
        .where(ConversionRecord.id.in_(list(record_ids)), ConversionRecord.is_processed.is_(False))
        .values(is_processed=True)
    )
    await session.commit()
    return result.rowcount or 0
