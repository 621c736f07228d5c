"""
APScheduler jobs for waitlist housekeeping:

  - Every 15 min (configurable): mark holds past their hold window expired
    and put their waitlist entries back on the active list
  - Hourly: drop rate-limit windows whose TTL has lapsed

Neither job is needed for correctness: stale holds are refused at
acceptance time whether or not the sweep has run.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from slotfill.config import settings
from slotfill.engine import Engine

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


# ---------------------------------------------------------------------------
# Job functions
# ---------------------------------------------------------------------------


async def _expire_stale_holds(engine: Engine) -> None:
    try:
        count = await engine.holds.expire_holds()
    except Exception as exc:
        logger.error("Hold expiration sweep failed: %s", exc)
        return
    if count:
        logger.info("Hold sweep expired %d holds", count)


async def _purge_rate_windows(engine: Engine) -> None:
    try:
        dropped = engine.rate_limiter.store.purge_expired()
    except Exception as exc:
        logger.error("Rate window purge failed: %s", exc)
        return
    logger.debug("Purged %d stale rate windows", dropped)


# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------


def get_scheduler(engine: Engine) -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()

        tz = settings.office_timezone

        _scheduler.add_job(
            _expire_stale_holds,
            IntervalTrigger(minutes=settings.hold_sweep_interval_minutes, timezone=tz),
            args=[engine],
            id="expire_holds",
            replace_existing=True,
        )
        _scheduler.add_job(
            _purge_rate_windows,
            IntervalTrigger(hours=1, timezone=tz),
            args=[engine],
            id="purge_rate_windows",
            replace_existing=True,
        )

    return _scheduler


def reset_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
