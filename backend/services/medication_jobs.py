from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy.orm import sessionmaker

from db.database import session_scope
from services.adherence_store import AdherenceStore
from services.notification_service import DEFAULT_DOSAGE, NotificationService
from utils.datetime_utils import format_clock, local_now, local_today, time_window

logger = logging.getLogger(__name__)


def reset_daily_medications(session_factory: sessionmaker, *, today: date | None = None) -> int:
    """Clear ``taken`` on every medication active today. Returns rows changed."""
    day = today or local_today()
    logger.info("Starting daily medication reset job")
    with session_scope(session_factory) as db:
        reset = AdherenceStore(db).reset_taken_flags(day)
    if reset:
        logger.info("Daily medication reset: %s medication(s) marked as not taken", reset)
    else:
        logger.debug("Daily medication reset: no medications needed resetting")
    return reset


class MedicationReminderJob:
    """Push a reminder for every untaken medication due inside the lookahead window.

    No "already reminded" watermark is stored: a medication that stays inside
    the window across consecutive ticks is reminded on each of them.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationService,
        *,
        lookahead: timedelta = timedelta(minutes=15),
    ) -> None:
        self.session_factory = session_factory
        self.notifications = notifications
        self.lookahead = lookahead

    def due_for_user(self, user_id: int, *, now: datetime | None = None) -> list[dict]:
        current = now or local_now()
        window_start, window_end = time_window(current, self.lookahead)
        with session_scope(self.session_factory) as db:
            rows = AdherenceStore(db).list_due_medications(
                current.date(), window_start, window_end, user_id=user_id
            )
            return [
                {
                    "id": row.id,
                    "name": row.name,
                    "dosage": row.dosage or DEFAULT_DOSAGE,
                    "time": format_clock(row.time),
                }
                for row in rows
            ]

    def run(self, *, now: datetime | None = None) -> int:
        current = now or local_now()
        window_start, window_end = time_window(current, self.lookahead)
        logger.debug(
            "Checking for medication reminders between %s and %s", window_start, window_end or "midnight"
        )
        with session_scope(self.session_factory) as db:
            due = [
                (row.user_id, row.id, row.name, row.dosage, row.time)
                for row in AdherenceStore(db).list_due_medications(current.date(), window_start, window_end)
            ]

        if not due:
            logger.debug("No medication reminders due in the next %s minutes", int(self.lookahead.total_seconds() // 60))
            return 0

        logger.info(
            "Found %s medication reminder(s) due in the next %s minutes",
            len(due),
            int(self.lookahead.total_seconds() // 60),
        )
        for user_id, medication_id, name, dosage, due_time in due:
            logger.info("Reminder: user %s needs to take %s at %s", user_id, name, format_clock(due_time))
            self.notifications.create_medication_reminder(
                user_id,
                medication_id=medication_id,
                name=name,
                dosage=dosage,
                due_time=due_time,
            )
        return len(due)
