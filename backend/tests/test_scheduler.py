from __future__ import annotations

import logging
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.scheduler import (  # noqa: E402
    CronSchedule,
    IntervalSchedule,
    JobScheduler,
    parse_schedule,
)


UTC = timezone.utc


def test_cron_schedule_next_run_is_strictly_after():
    daily = CronSchedule("5 0 * * *", timezone=UTC)
    assert daily.next_run(datetime(2024, 5, 1, 0, 0, tzinfo=UTC)) == datetime(2024, 5, 1, 0, 5, tzinfo=UTC)
    assert daily.next_run(datetime(2024, 5, 1, 0, 5, tzinfo=UTC)) == datetime(2024, 5, 2, 0, 5, tzinfo=UTC)
    assert daily.next_run(datetime(2024, 5, 1, 0, 4, 59, 500000, tzinfo=UTC)) == datetime(
        2024, 5, 1, 0, 5, tzinfo=UTC
    )


def test_cron_schedule_every_fifteen_minutes():
    quarter = parse_schedule(" */15 * * * * ", timezone=UTC)
    assert quarter.next_run(datetime(2024, 5, 1, 8, 7, tzinfo=UTC)) == datetime(2024, 5, 1, 8, 15, tzinfo=UTC)
    assert quarter.next_run(datetime(2024, 5, 1, 8, 45, tzinfo=UTC)) == datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def test_invalid_cron_expression_is_rejected():
    with pytest.raises(ValueError):
        parse_schedule("every day at noon")


def test_interval_schedule_with_and_without_anchor():
    anchor = datetime(2024, 5, 1, 6, 0, tzinfo=UTC)
    every_hour = IntervalSchedule(timedelta(hours=1), anchor=anchor)
    assert every_hour.next_run(datetime(2024, 5, 1, 5, 0, tzinfo=UTC)) == anchor
    assert every_hour.next_run(datetime(2024, 5, 1, 6, 0, tzinfo=UTC)) == datetime(2024, 5, 1, 7, 0, tzinfo=UTC)
    assert every_hour.next_run(datetime(2024, 5, 1, 7, 30, tzinfo=UTC)) == datetime(2024, 5, 1, 8, 0, tzinfo=UTC)

    floating = IntervalSchedule(timedelta(minutes=10))
    assert floating.next_run(anchor) == anchor + timedelta(minutes=10)

    with pytest.raises(ValueError):
        IntervalSchedule(timedelta(0))


def test_job_errors_are_logged_and_swallowed(caplog):
    scheduler = JobScheduler()
    calls: list[str] = []

    def _boom() -> None:
        calls.append("boom")
        raise RuntimeError("database went away")

    scheduler.register("exploding", CronSchedule("0 6 * * *"), _boom)
    scheduler.register("healthy", CronSchedule("0 6 * * *"), lambda: calls.append("healthy"))

    with caplog.at_level(logging.ERROR, logger="services.scheduler"):
        assert scheduler.run_now("exploding") is True
    assert scheduler.run_now("healthy") is True
    assert scheduler.run_now("exploding") is True

    assert calls == ["boom", "healthy", "boom"]
    failures = [r for r in caplog.records if "Job exploding failed" in r.getMessage()]
    assert failures
    assert "database went away" in failures[0].getMessage()


def test_overlapping_run_of_same_job_is_skipped(caplog):
    scheduler = JobScheduler()
    entered = threading.Event()
    release = threading.Event()
    runs: list[str] = []

    def _slow() -> None:
        runs.append("slow")
        entered.set()
        release.wait(timeout=5)

    scheduler.register("slow", CronSchedule("*/15 * * * *"), _slow)
    scheduler.register("other", CronSchedule("*/15 * * * *"), lambda: runs.append("other"))

    worker = threading.Thread(target=scheduler.run_now, args=("slow",))
    worker.start()
    assert entered.wait(timeout=5)
    try:
        with caplog.at_level(logging.WARNING, logger="services.scheduler"):
            assert scheduler.run_now("slow") is False
        # a different job is not blocked by the in-flight one
        assert scheduler.run_now("other") is True
    finally:
        release.set()
        worker.join(timeout=5)

    assert runs == ["slow", "other"]
    assert any("Job slow is still running; tick skipped" in r.getMessage() for r in caplog.records)
    assert scheduler.run_now("slow") is True


def test_deadline_overrun_is_logged_without_cancelling():
    scheduler = JobScheduler(deadline=timedelta(milliseconds=50))
    finished = threading.Event()
    overrun_logged = threading.Event()

    class _Watcher(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            if "exceeded its deadline" in record.getMessage():
                overrun_logged.set()

    watcher = _Watcher(level=logging.WARNING)
    logging.getLogger("services.scheduler").addHandler(watcher)

    def _slow() -> None:
        overrun_logged.wait(timeout=5)
        finished.set()

    scheduler.register("slow_score", CronSchedule("0 6 * * *"), _slow)
    try:
        assert scheduler.run_now("slow_score") is True
    finally:
        logging.getLogger("services.scheduler").removeHandler(watcher)

    assert overrun_logged.is_set()
    assert finished.is_set()


def test_duplicate_registration_and_unknown_job():
    scheduler = JobScheduler()
    scheduler.register("reset", CronSchedule("5 0 * * *"), lambda: None)
    with pytest.raises(ValueError):
        scheduler.register("reset", CronSchedule("5 0 * * *"), lambda: None)
    with pytest.raises(KeyError):
        scheduler.run_now("missing")
    assert scheduler.job_names() == ["reset"]


def test_start_schedules_jobs_and_shutdown_blocks_new_runs():
    scheduler = JobScheduler(timezone=UTC)
    runs: list[str] = []
    scheduler.register("score", CronSchedule("0 6 * * *", timezone=UTC), lambda: runs.append("score"))

    scheduler.start()
    try:
        assert scheduler.running is True
        next_run = scheduler.next_run_time("score")
        assert next_run is not None
        assert (next_run.hour, next_run.minute) == (6, 0)
    finally:
        scheduler.shutdown()

    assert scheduler.running is False
    assert scheduler.run_now("score") is False
    assert runs == []


def test_engine_registers_each_job_once():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from config import Settings
    from db.database import Base
    from services.adherence_engine import (
        HEALTH_SCORE_JOB,
        MEDICATION_REMINDER_JOB,
        MEDICATION_RESET_JOB,
        NOTIFICATION_CLEANUP_JOB,
        AdherenceEngine,
    )

    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    adherence = AdherenceEngine(factory, Settings(MED_REMINDER_CRON="*/5 * * * *"))

    adherence.register_jobs()
    adherence.register_jobs()

    assert adherence.scheduler.job_names() == sorted(
        [MEDICATION_RESET_JOB, MEDICATION_REMINDER_JOB, HEALTH_SCORE_JOB, NOTIFICATION_CLEANUP_JOB]
    )
    assert adherence.scheduler.run_now(MEDICATION_RESET_JOB) is True
    assert adherence.scheduler.run_now(NOTIFICATION_CLEANUP_JOB) is True
