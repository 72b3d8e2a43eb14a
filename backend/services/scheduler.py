"""Named-job scheduler on top of APScheduler.

Jobs are zero-argument callables. Every run goes through a guard that:

* skips the run when the same job is still in flight (logged, not queued),
* catches and logs anything the job raises so other jobs and later ticks
  are unaffected,
* arms a deadline timer that logs when a run takes too long; the run
  itself is never cancelled.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Callable

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

DEFAULT_JOB_DEADLINE = timedelta(minutes=5)


class Schedule(ABC):
    """When a job fires next."""

    @abstractmethod
    def next_run(self, after: datetime) -> datetime | None:
        """First fire time strictly after ``after`` (timezone-aware), or None when exhausted."""


class CronSchedule(Schedule):
    def __init__(self, expression: str, timezone: tzinfo | str | None = None) -> None:
        self.expression = expression
        self._trigger = CronTrigger.from_crontab(expression, timezone=timezone)

    def next_run(self, after: datetime) -> datetime | None:
        # CronTrigger treats its start as inclusive
        return self._trigger.get_next_fire_time(None, after + timedelta(microseconds=1))

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


class IntervalSchedule(Schedule):
    def __init__(self, every: timedelta, anchor: datetime | None = None) -> None:
        if every <= timedelta(0):
            raise ValueError("Interval must be positive")
        self.every = every
        self.anchor = anchor

    def next_run(self, after: datetime) -> datetime | None:
        if self.anchor is None:
            return after + self.every
        if after < self.anchor:
            return self.anchor
        periods = (after - self.anchor) // self.every + 1
        return self.anchor + periods * self.every

    def __repr__(self) -> str:
        return f"IntervalSchedule({self.every!r})"


def parse_schedule(expression: str, timezone: tzinfo | str | None = None) -> Schedule:
    return CronSchedule(expression.strip(), timezone=timezone)


class _ScheduleTrigger(BaseTrigger):
    """Adapts a ``Schedule`` to APScheduler's trigger protocol."""

    def __init__(self, schedule: Schedule) -> None:
        self.schedule = schedule

    def get_next_fire_time(self, previous_fire_time, now):
        return self.schedule.next_run(previous_fire_time or now)

    def __str__(self) -> str:
        return repr(self.schedule)


@dataclass
class _RegisteredJob:
    name: str
    schedule: Schedule
    func: Callable[[], object]
    in_flight: threading.Lock = field(default_factory=threading.Lock)


class JobScheduler:
    def __init__(
        self,
        *,
        deadline: timedelta = DEFAULT_JOB_DEADLINE,
        timezone: tzinfo | str | None = None,
        max_workers: int = 4,
    ) -> None:
        self.deadline = deadline
        self._jobs: dict[str, _RegisteredJob] = {}
        self._stopping = threading.Event()
        self._state_lock = threading.Lock()
        scheduler_kwargs: dict[str, object] = {
            "executors": {"default": {"type": "threadpool", "max_workers": max_workers}},
            "job_defaults": {"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        }
        if timezone is not None:
            scheduler_kwargs["timezone"] = timezone
        self._scheduler = BackgroundScheduler(**scheduler_kwargs)
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_JOB_MAX_INSTANCES | EVENT_JOB_MISSED)

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running) and not self._stopping.is_set()

    def register(self, name: str, schedule: Schedule, func: Callable[[], object]) -> None:
        with self._state_lock:
            if name in self._jobs:
                raise ValueError(f"Job already registered: {name}")
            job = _RegisteredJob(name=name, schedule=schedule, func=func)
            self._jobs[name] = job
        self._scheduler.add_job(
            self._run_guarded,
            trigger=_ScheduleTrigger(schedule),
            args=[job],
            id=name,
            name=name,
            replace_existing=True,
        )
        logger.info("Registered job %s: %s", name, schedule)

    def job_names(self) -> list[str]:
        with self._state_lock:
            return sorted(self._jobs)

    def next_run_time(self, name: str) -> datetime | None:
        job = self._scheduler.get_job(name)
        return getattr(job, "next_run_time", None) if job else None

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._stopping.clear()
        self._scheduler.start()
        logger.info("Scheduler started with %s job(s)", len(self._jobs))

    def shutdown(self, wait: bool = True) -> None:
        """Stop new ticks; in-flight runs are allowed to finish when ``wait``."""
        self._stopping.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def run_now(self, name: str) -> bool:
        """Run a registered job synchronously through the guard. True when it ran."""
        with self._state_lock:
            job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return self._run_guarded(job)

    def _on_scheduler_event(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning("Job %s still running at its next tick; tick skipped", event.job_id)
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("Job %s missed its run time %s", event.job_id, event.scheduled_run_time)

    def _deadline_exceeded(self, name: str, started: datetime) -> None:
        logger.warning(
            "Job %s exceeded its deadline of %ss (started %s); still running",
            name,
            int(self.deadline.total_seconds()),
            started.isoformat(),
        )

    def _run_guarded(self, job: _RegisteredJob) -> bool:
        if self._stopping.is_set():
            logger.info("Job %s not started: scheduler is shutting down", job.name)
            return False
        if not job.in_flight.acquire(blocking=False):
            logger.warning("Job %s is still running; tick skipped", job.name)
            return False

        started = datetime.now()
        watchdog = threading.Timer(self.deadline.total_seconds(), self._deadline_exceeded, args=(job.name, started))
        watchdog.daemon = True
        watchdog.start()
        try:
            logger.debug("Job %s started", job.name)
            job.func()
            logger.debug("Job %s finished in %.2fs", job.name, (datetime.now() - started).total_seconds())
        except Exception as exc:
            logger.exception("Job %s failed: %s", job.name, exc)
        finally:
            watchdog.cancel()
            job.in_flight.release()
        return True
