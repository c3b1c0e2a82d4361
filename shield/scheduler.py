"""Interval sweep scheduler on APScheduler.

Each job (flood sweep, abuse sweep, escalation sweep, cleanup) has its own
interval trigger.  Jobs run with ``max_instances=1`` and ``coalesce=True``:
a tick that comes due while the previous run is still in flight is skipped
rather than queued, and ticks missed while the service was busy collapse
into one run.  That bounds the load the sweeps put on the store.

``Job.run()`` is the tick entry point.  The scheduler's worker threads call
it on every interval; tests and the CLI call it inline.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from apscheduler.events import EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger()


@dataclass
class Job:
    name: str
    interval: float
    fn: Callable[[], object]
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_result: object = None

    def run(self):
        """Run the sweep once; failures are logged and counted."""
        try:
            self.last_result = self.fn()
        except Exception:
            # A failing sweep must not kill the scheduler; the next tick retries.
            self.failures += 1
            logger.exception("sweep_failed", job=self.name)
            return None
        self.runs += 1
        return self.last_result


class SweepScheduler:

    def __init__(self, workers: int = 4, scheduler: Optional[BackgroundScheduler] = None):
        self.scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(workers)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=timezone.utc,
        )
        self.scheduler.add_listener(self._on_skipped, EVENT_JOB_MAX_INSTANCES)
        self.jobs: dict[str, Job] = {}

    def add(self, name: str, interval: float, fn: Callable[[], object],
            run_immediately: bool = True) -> Job:
        if interval <= 0:
            raise ValueError(f"interval must be positive: {name}")
        job = Job(name, interval, fn)
        options = {}
        if run_immediately:
            options["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            job.run, IntervalTrigger(seconds=interval), id=name, name=name,
            max_instances=1, coalesce=True, replace_existing=True, **options,
        )
        self.jobs[name] = job
        return job

    def run_all(self) -> dict[str, object]:
        """Run every job once, inline, in registration order."""
        return {name: job.run() for name, job in self.jobs.items()}

    def start(self) -> None:
        self.scheduler.start()
        logger.info("scheduler_started", jobs=list(self.jobs))

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("scheduler_stopped")

    def _on_skipped(self, event) -> None:
        job = self.jobs.get(event.job_id)
        if job is None:
            return
        job.skipped += 1
        logger.warning("sweep_skipped_busy", job=job.name, skipped=job.skipped)
