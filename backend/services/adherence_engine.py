from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from config import Settings
from services.health_score_service import HealthScoreService
from services.medication_jobs import MedicationReminderJob, reset_daily_medications
from services.medication_ledger import MedicationLedger
from services.notification_service import NotificationService
from services.scheduler import JobScheduler, parse_schedule

logger = logging.getLogger(__name__)

MEDICATION_RESET_JOB = "medication_reset"
MEDICATION_REMINDER_JOB = "medication_reminders"
HEALTH_SCORE_JOB = "health_score"
NOTIFICATION_CLEANUP_JOB = "notification_cleanup"


class AdherenceEngine:
    """Owns the notification mailbox, the jobs and their scheduler.

    Built once per process (or per test) and handed to the HTTP layer; the
    scheduler only runs between ``start()`` and ``shutdown()``.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        *,
        notifications: NotificationService | None = None,
        scheduler: JobScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.notifications = notifications or NotificationService()
        self.ledger = MedicationLedger(session_factory)
        self.health_scores = HealthScoreService(session_factory, self.notifications)
        self.reminders = MedicationReminderJob(
            session_factory,
            self.notifications,
            lookahead=timedelta(minutes=settings.MED_REMINDER_LOOKAHEAD_MINUTES),
        )
        self.retention = timedelta(days=settings.NOTIFICATION_RETENTION_DAYS)
        self.scheduler = scheduler or JobScheduler(deadline=timedelta(seconds=settings.JOB_DEADLINE_SECONDS))
        self._registered = False

    def reset_medications(self) -> int:
        return reset_daily_medications(self.session_factory)

    def send_medication_reminders(self) -> int:
        return self.reminders.run()

    def recompute_health_scores(self) -> dict[str, int]:
        return self.health_scores.run_daily_job()

    def sweep_notifications(self) -> int:
        return self.notifications.sweep_older_than(self.retention)

    def register_jobs(self) -> None:
        if self._registered:
            return
        self.scheduler.register(MEDICATION_RESET_JOB, parse_schedule(self.settings.MED_RESET_CRON), self.reset_medications)
        self.scheduler.register(
            MEDICATION_REMINDER_JOB,
            parse_schedule(self.settings.MED_REMINDER_CRON),
            self.send_medication_reminders,
        )
        self.scheduler.register(HEALTH_SCORE_JOB, parse_schedule(self.settings.HEALTH_SCORE_CRON), self.recompute_health_scores)
        self.scheduler.register(
            NOTIFICATION_CLEANUP_JOB,
            parse_schedule(self.settings.NOTIFICATION_CLEANUP_CRON),
            self.sweep_notifications,
        )
        self._registered = True
        logger.info("Medication scheduler jobs initialized")
        logger.info("- Daily reset: %s", self.settings.MED_RESET_CRON)
        logger.info(
            "- Reminder check: %s (lookahead %s min)",
            self.settings.MED_REMINDER_CRON,
            self.settings.MED_REMINDER_LOOKAHEAD_MINUTES,
        )
        logger.info("- Health score: %s", self.settings.HEALTH_SCORE_CRON)
        logger.info(
            "- Notification cleanup: %s (retention %s days)",
            self.settings.NOTIFICATION_CLEANUP_CRON,
            self.settings.NOTIFICATION_RETENTION_DAYS,
        )

    def start(self) -> None:
        self.register_jobs()
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=True)
