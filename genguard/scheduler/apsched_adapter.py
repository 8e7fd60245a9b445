"""APScheduler wrapper running periodic maintenance sweeps."""

from __future__ import annotations

from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..engine import AdmissionController, ResultCache
from ..logging_conf import component_logger


class MaintenanceScheduler:
    """Run admission sweeps and result-cache purges on a background thread."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = component_logger("scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule(self, job_id: str, callback: Callable[[], object], seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("Interval must be positive")
        self.scheduler.add_job(
            self._guarded(job_id, callback),
            trigger=IntervalTrigger(seconds=float(seconds)),
            id=job_id,
            replace_existing=True,
        )
        self.logger.info("job_scheduled", job_id=job_id, seconds=seconds)

    def schedule_admission_sweep(self, controller: AdmissionController, seconds: float = 60.0) -> None:
        self.schedule("maintenance::admission_sweep", controller.sweep, seconds)

    def schedule_cache_purge(self, cache: ResultCache, seconds: float = 3600.0) -> None:
        self.schedule("maintenance::result_cache_purge", cache.purge_expired, seconds)

    def remove(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            self.logger.warning("job_remove_failed", job_id=job_id)

    def _guarded(self, job_id: str, callback: Callable[[], object]) -> Callable[[], None]:
        def run() -> None:
            try:
                result = callback()
            except Exception:
                # A failed sweep must not unschedule the job; the next tick retries.
                self.logger.exception("maintenance_failed", job_id=job_id)
                return
            self.logger.debug("maintenance_ran", job_id=job_id, result=result)

        return run

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["MaintenanceScheduler"]
