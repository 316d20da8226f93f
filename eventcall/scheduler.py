"""APScheduler integration."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import settings

logger = logging.getLogger("uvicorn.error")

_scheduler: AsyncIOScheduler | None = None


def start_scheduler(sync_job: Callable[[], Awaitable[object]]) -> AsyncIOScheduler | None:
    """Schedule ``sync_job`` on the coarse sync interval.

    Must be called from a running event loop. Does nothing unless periodic
    sync is enabled.
    """
    global _scheduler
    if not settings.enable_scheduler:
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        sync_job,
        "interval",
        minutes=settings.sync_interval_minutes,
        id="periodic-sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Periodic sync scheduled every %d minutes", settings.sync_interval_minutes)
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
