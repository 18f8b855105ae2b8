import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from bloodmatch.config import Settings, settings as default_settings
from bloodmatch.service import MatchingService

logger = logging.getLogger(__name__)


async def run_cascade_sweep(service: MatchingService) -> None:
    results = await service.sweep()
    touched = [r for r in results if r.applied]
    if touched:
        logger.info("cascade sweep touched %d requests", len(touched))


async def reenable_donors(service: MatchingService) -> None:
    service.reenable_cooled_down_donors()


def schedule_jobs(
    service: MatchingService, settings: Settings | None = None
) -> AsyncIOScheduler:
    settings = settings or default_settings
    scheduler = AsyncIOScheduler(timezone=settings.timezone)
    scheduler.add_job(
        run_cascade_sweep,
        "interval",
        minutes=settings.cascade_interval_minutes,
        args=[service],
        id="cascade_sweep",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        reenable_donors,
        "cron",
        hour=settings.cooldown_sweep_hour,
        minute=0,
        args=[service],
        id="cooldown_reenable",
    )
    return scheduler
