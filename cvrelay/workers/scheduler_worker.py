from __future__ import annotations

import logging
from zoneinfo import ZoneInfo

from arq import Retry, cron
from arq.connections import RedisSettings

from cvrelay.core.config import get_settings
from cvrelay.core.errors import KeyRotationError
from cvrelay.core.logging import configure_logging
from cvrelay.persistence.db import SessionLocal
from cvrelay.services.export.exporter import ConversionExporter
from cvrelay.services.maintenance import run_maintenance
from cvrelay.services.security.keyring import KeyRotationManager
from cvrelay.services.security.pixel_config import ShopifyWebPixelPublisher

logger = logging.getLogger(__name__)

# A failed rotation is retried exactly once before waiting for the next slot.
ROTATION_MAX_TRIES = 2
ROTATION_RETRY_DEFER_S = 30


def _every(minutes: int) -> set[int]:
    step = max(1, min(60, int(minutes)))
    return set(range(0, 60, step))


async def rotate_pixel_key(ctx) -> str:
    manager: KeyRotationManager = ctx["rotation_manager"]
    try:
        key = await manager.rotate()
    except KeyRotationError:
        job_try = int(ctx.get("job_try", 1))
        if job_try < ROTATION_MAX_TRIES:
            logger.warning("pixel_key_rotation_retry job_try=%s", job_try)
            raise Retry(defer=ROTATION_RETRY_DEFER_S) from None
        logger.error("pixel_key_rotation_gave_up job_try=%s", job_try)
        return "failed"
    return key.kid


async def export_conversions(ctx) -> int:
    exporter: ConversionExporter = ctx["exporter"]
    summary = await exporter.run()
    return summary.uploaded_rows


async def run_daily_maintenance(ctx) -> dict[str, int]:
    async with SessionLocal() as session:
        return await run_maintenance(session)


async def _startup(ctx) -> None:
    # The worker process owns the schedule; arq runs one instance of each cron job per slot.
    configure_logging()
    ctx["rotation_manager"] = KeyRotationManager(SessionLocal, ShopifyWebPixelPublisher(SessionLocal))
    ctx["exporter"] = ConversionExporter(SessionLocal)
    logger.info("scheduler_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("scheduler_worker_stopped")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    timezone = ZoneInfo(settings.maintenance_timezone)
    cron_jobs = [
        cron(
            rotate_pixel_key,
            minute=_every(settings.pixel_key_rotation_minutes),
            second=0,
            max_tries=ROTATION_MAX_TRIES,
            run_at_startup=True,
        ),
        cron(export_conversions, minute=_every(settings.export_interval_minutes), second=0),
        cron(
            run_daily_maintenance,
            hour=settings.maintenance_hour,
            minute=0,
            second=0,
        ),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
