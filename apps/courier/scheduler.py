from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


class SchedulerWrapper:
    """Process-local background scheduler for periodic maintenance jobs."""

    def __init__(self):
        self._scheduler = BackgroundScheduler()
        self._started = False
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._started

    def start(self):
        with self._lock:
            if self._started:
                return
            self._scheduler.start()
            self._started = True
        logger.info("Background scheduler started")

    def add_interval_job(
        self,
        func: Callable[..., Any],
        minutes: int,
        id: str,
        *,
        max_instances: int = 1,
        coalesce: bool = True,
        misfire_grace_time: int | None = 60,
    ):
        # One run at a time; missed runs collapse into a single catch-up run.
        self._scheduler.add_job(
            func,
            "interval",
            minutes=minutes,
            id=id,
            replace_existing=True,
            max_instances=max_instances,
            coalesce=coalesce,
            misfire_grace_time=misfire_grace_time,
        )
        logger.info("Scheduled job %s every %d min", id, minutes)

    def get_job(self, id: str):
        return self._scheduler.get_job(id)

    def job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def shutdown(self):
        with self._lock:
            if not self._started:
                return
            self._scheduler.shutdown(wait=False)
            self._started = False
        logger.info("Background scheduler stopped")
