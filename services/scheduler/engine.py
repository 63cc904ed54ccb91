"""Periodic cadences that drive occurrence generation, the missed sweep and reminders.

Each job derives everything from the wall clock and the store, so jobs may
interleave freely and a restart loses nothing but the minutes it was down.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from pilltime import ReminderFlow

logger = logging.getLogger(__name__)

DUE_DISPATCH_JOB = "dispatch_due_reminders"
MISSED_SWEEP_JOB = "sweep_missed_doses"
MIDNIGHT_GENERATION_JOB = "generate_tomorrow_occurrences"
SUBSCRIPTION_CLEANUP_JOB = "cleanup_stale_subscriptions"

DUE_DISPATCH_GRACE_SECONDS = 30


class TriggerEngine:
    def __init__(
        self,
        flow: ReminderFlow,
        timezone: Optional[str] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.flow = flow
        if scheduler is None:
            scheduler = BackgroundScheduler(timezone=timezone) if timezone else BackgroundScheduler()
        self.scheduler = scheduler
        self._started = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._started

    def register_jobs(self) -> None:
        common = {"replace_existing": True, "max_instances": 1, "coalesce": True}
        # A late dispatch may still run within its own minute; later minutes are not backfilled.
        self.scheduler.add_job(
            self.run_due_dispatch,
            trigger="cron",
            minute="*",
            id=DUE_DISPATCH_JOB,
            misfire_grace_time=DUE_DISPATCH_GRACE_SECONDS,
            **common,
        )
        # The remaining cadences are catch-up safe, so they run however late they fire.
        self.scheduler.add_job(
            self.run_missed_sweep, trigger="cron", minute=0, id=MISSED_SWEEP_JOB, misfire_grace_time=None, **common
        )
        self.scheduler.add_job(
            self.run_midnight_generation,
            trigger="cron",
            hour=0,
            minute=0,
            id=MIDNIGHT_GENERATION_JOB,
            misfire_grace_time=None,
            **common,
        )
        self.scheduler.add_job(
            self.run_subscription_cleanup,
            trigger="cron",
            hour=0,
            minute=30,
            id=SUBSCRIPTION_CLEANUP_JOB,
            misfire_grace_time=None,
            **common,
        )

    def start(self) -> None:
        with self._lock:
            if self._started:
                logger.info("Trigger engine already running, skipping start")
                return
            self._started = True

        logger.info("Starting trigger engine")
        self.run_startup_generation()
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            "Trigger engine started: reminders every minute, missed sweep hourly, "
            "tomorrow's occurrences at midnight"
        )

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if not self._started:
                return
            self._started = False
        # wait=True lets an in-flight job finish its writes.
        self.scheduler.shutdown(wait=wait)
        logger.info("Trigger engine stopped")

    def run_startup_generation(self) -> Optional[int]:
        return self._guarded("startup generation", self.flow.generate_horizon)

    def run_midnight_generation(self) -> Optional[int]:
        return self._guarded("midnight generation", self.flow.generate_tomorrow)

    def run_missed_sweep(self) -> Optional[int]:
        return self._guarded("missed sweep", self.flow.sweep_missed)

    def run_due_dispatch(self):
        return self._guarded("due dispatch", self.flow.dispatch_due)

    def run_subscription_cleanup(self) -> Optional[int]:
        return self._guarded("subscription cleanup", self.flow.cleanup_subscriptions)

    def _guarded(self, name: str, job: Callable[[], Any]) -> Any:
        # A failing cadence must never take the process down.
        try:
            return job()
        except Exception:
            logger.exception("Scheduled %s failed", name)
            return None
