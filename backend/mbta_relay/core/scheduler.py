"""APScheduler setup for periodic reconciliation."""

import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler() -> AsyncIOScheduler:
    """Create the scheduler that runs reconciliation jobs on the event loop."""
    return AsyncIOScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
    )


def schedule_once(
    scheduler: AsyncIOScheduler, func, delay_seconds: float, job_id: str, args: list | None = None
) -> None:
    """Run ``func`` once, ``delay_seconds`` from now.

    Jobs reschedule themselves after each run, so the period drifts by the
    run's own duration.
    """
    run_date = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=delay_seconds)
    scheduler.add_job(
        func,
        "date",
        run_date=run_date,
        args=args or [],
        id=job_id,
        name=f"Reconcile {job_id}",
        replace_existing=True,
    )
    logger.debug("Scheduled %s at %s", job_id, run_date.isoformat())
