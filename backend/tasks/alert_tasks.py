"""Celery tasks for the emergency alert lifecycle."""
import asyncio
import logging
from typing import Optional

from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def run_expiry_sweep(settings, clock=None) -> int:
    """Open a short-lived engine, expire overdue alerts and commit."""
    from bloodnode.db.postgres import build_engine, build_sessionmaker
    from bloodnode.services.alert_service import expire_alerts

    engine = build_engine(settings)
    try:
        async with build_sessionmaker(engine)() as db:
            count = await expire_alerts(db, clock=clock)
            await db.commit()
            return count
    finally:
        await engine.dispose()


async def collect_alert_statistics(settings) -> dict[str, int]:
    from bloodnode.db.postgres import build_engine, build_sessionmaker
    from bloodnode.services.alert_service import count_by_status

    engine = build_engine(settings)
    try:
        async with build_sessionmaker(engine)() as db:
            return await count_by_status(db)
    finally:
        await engine.dispose()


@celery_app.task(name="tasks.alert_tasks.expire_stale_alerts")
def expire_stale_alerts(database_url: Optional[str] = None) -> int:
    """Move every active alert past its ``expires_at`` to expired."""
    from bloodnode.config import get_settings

    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"DATABASE_URL": database_url})

    count = _run_async(run_expiry_sweep(settings))
    logger.info("Expiry sweep finished: %d alert(s) expired", count)
    return count


@celery_app.task(name="tasks.alert_tasks.refresh_alert_statistics")
def refresh_alert_statistics() -> dict:
    """Log alert counts by status."""
    from bloodnode.config import get_settings

    counts = _run_async(collect_alert_statistics(get_settings()))
    logger.info(
        "Emergency alerts: %s",
        ", ".join(f"{status}={count}" for status, count in sorted(counts.items())),
    )
    return counts
