"""
APScheduler wiring for the daily rollup.

Runs the rollup once at startup (covering yesterday after an outage) and
then on a fixed interval. Rollups are idempotent, so a duplicate run is
harmless and no coordination between processes is needed.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from voravia_meter.storage.db import DEFAULT_DB_PATH

from .rollup import RollupResult, run_daily_rollup

logger = logging.getLogger(__name__)

ROLLUP_JOB_ID = "daily_usage_rollup"


class RollupScheduler:
    """
    Manages the scheduler lifecycle and the rollup job.

    Failures inside the job are logged and swallowed; the next tick retries
    and dashboards keep serving the previous rollup state plus live data.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        interval_minutes: int = 60,
        scheduler: Optional[BaseScheduler] = None,
        rollup: Callable[..., RollupResult] = run_daily_rollup,
    ) -> None:
        """
        Initialize the rollup scheduler.

        Args:
            db_path: Path to SQLite database file
            interval_minutes: Minutes between rollup runs
            scheduler: APScheduler instance (defaults to a UTC BackgroundScheduler)
            rollup: Rollup function to run on each tick
        """
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")

        self.db_path = db_path
        self.interval_minutes = interval_minutes
        self._rollup = rollup
        self.scheduler = scheduler or BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,  # One rollup at a time
                "misfire_grace_time": None,  # Run late jobs however late
            },
        )
        self._register_rollup_job()

    def _register_rollup_job(self) -> None:
        self.scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(minutes=self.interval_minutes, timezone="UTC"),
            id=ROLLUP_JOB_ID,
            name="Daily usage rollup",
            next_run_time=datetime.now(timezone.utc),
            # start() may come long after the startup run was due
            misfire_grace_time=None,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        logger.info("Rollup job registered every %d minutes", self.interval_minutes)

    def run_now(self) -> Optional[RollupResult]:
        """Run one rollup for the default day, logging instead of raising."""
        try:
            return self._rollup(db_path=self.db_path)
        except Exception:
            logger.exception("Daily usage rollup failed; will retry on next tick")
            return None

    def start(self) -> None:
        """Start scheduler (begin executing jobs)."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Rollup scheduler starting")
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown scheduler gracefully.

        Args:
            wait: If True, wait for a running rollup to complete
        """
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return

        self.scheduler.shutdown(wait=wait)
        logger.info("Rollup scheduler shutdown (wait=%s)", wait)

    def get_jobs(self) -> List[Dict[str, str]]:
        jobs = self.scheduler.get_jobs()
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": str(getattr(job, "next_run_time", None)),
                "trigger": str(job.trigger),
            }
            for job in jobs
        ]
