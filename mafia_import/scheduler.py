import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from mafia_import.errors import ImportAlreadyRunningError
from mafia_import.registry import RunRegistry


logger = logging.getLogger(__name__)


def _run_daily_import(registry: RunRegistry) -> None:
    try:
        result = registry.run(trigger_source="scheduled")
    except ImportAlreadyRunningError:
        logger.warning("scheduled import skipped, another import is running")
        return

    extra = {
        "run_id": result.run_id,
        "status": result.status,
        "records_processed": result.records_processed,
        "skipped_pages": result.skipped_pages,
    }
    if result.status != "COMPLETED":
        logger.error("scheduled import did not complete", extra={**extra, "error": result.error})
        return
    logger.info("scheduled import completed", extra=extra)


def start_scheduler(registry: RunRegistry, *, run_now: bool = False) -> None:
    settings = registry.settings
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_import,
        "cron",
        args=[registry],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_import",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_daily_import(registry)

    scheduler.start()
