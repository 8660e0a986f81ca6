from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from cvrelay.core.config import get_settings
from cvrelay.domain.models import ConversionRecord, ReplayToken
from cvrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_replay_tokens", "prune_expired_conversions"]


async def prune_replay_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Nonces only guard redelivery; past retention they are dead weight for the ingestion path.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=settings.replay_token_retention_hours)
    result = await session.execute(delete(ReplayToken).where(ReplayToken.received_at < cutoff))
    return result.rowcount or 0


async def prune_expired_conversions(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Visit time drives retention, matching the longest eligibility window an account can use.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.conversion_retention_days)
    result = await session.execute(delete(ConversionRecord).where(ConversionRecord.visited_at < cutoff))
    return result.rowcount or 0


_TASKS = {
    "prune_replay_tokens": prune_replay_tokens,
    "prune_expired_conversions": prune_expired_conversions,
}


async def run_maintenance(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    """Run every retention task, each in its own transaction.

    A failing task is logged and reported as -1 so the remaining tasks still run.
    """
    results: dict[str, int] = {}
    for name, task in _TASKS.items():
        try:
            deleted = await task(session, now=now)
            await session.commit()
        except Exception:  # noqa: BLE001 - one failing task must not skip the others.
            await session.rollback()
            logger.exception("maintenance_task_failed task=%s", name)
            increment_counter(f"maintenance_failed_total.{name}")
            results[name] = -1
            continue
        logger.info("maintenance_task_done task=%s deleted=%s", name, deleted)
        results[name] = deleted
    return results
