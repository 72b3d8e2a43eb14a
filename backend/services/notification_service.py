from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable

from utils.datetime_utils import format_clock, local_now

logger = logging.getLogger(__name__)

MEDICATION_REMINDER = "medication_reminder"
APPOINTMENT_REMINDER = "appointment_reminder"
HEALTH_SCORE = "health_score"
NOTIFICATION_TYPES = {MEDICATION_REMINDER, APPOINTMENT_REMINDER, HEALTH_SCORE}

DEFAULT_DOSAGE = "as prescribed"


@dataclass
class Notification:
    id: int
    user_id: int
    type: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=local_now)
    read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


class NotificationService:
    """Per-user in-memory mailbox.

    Contents are process-local and lost on restart; the ledger and the
    health score table are the durable record.
    """

    def __init__(self, clock: Callable[[], datetime] = local_now) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._by_user: dict[int, list[Notification]] = defaultdict(list)
        self._lock = threading.Lock()

    def add(self, user_id: int, type: str, message: str, payload: dict[str, Any] | None = None) -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        with self._lock:
            notification = Notification(
                id=next(self._ids),
                user_id=user_id,
                type=type,
                message=message,
                payload=dict(payload or {}),
                created_at=self._clock(),
            )
            self._by_user[user_id].append(notification)
        logger.info("Notification added for user %s: %s - %s", user_id, type, message)
        return notification

    def list(self, user_id: int, unread_only: bool = False) -> list[Notification]:
        with self._lock:
            rows = [n for n in self._by_user.get(user_id, []) if not (unread_only and n.read)]
        # insertion order breaks created_at ties so the newest add still comes first
        return [n for _, n in sorted(enumerate(rows), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)]

    def count(self, user_id: int, unread_only: bool = False) -> int:
        with self._lock:
            return sum(1 for n in self._by_user.get(user_id, []) if not (unread_only and n.read))

    def mark_read(self, user_id: int, notification_id: int) -> bool:
        with self._lock:
            for notification in self._by_user.get(user_id, []):
                if notification.id == notification_id:
                    notification.read = True
                    logger.debug("Notification %s marked as read for user %s", notification_id, user_id)
                    return True
        return False

    def mark_all_read(self, user_id: int) -> int:
        marked = 0
        with self._lock:
            for notification in self._by_user.get(user_id, []):
                if not notification.read:
                    notification.read = True
                    marked += 1
        logger.debug("All notifications marked as read for user %s (%s changed)", user_id, marked)
        return marked

    def delete(self, user_id: int, notification_id: int) -> bool:
        with self._lock:
            rows = self._by_user.get(user_id, [])
            for index, notification in enumerate(rows):
                if notification.id == notification_id:
                    del rows[index]
                    logger.debug("Notification %s deleted for user %s", notification_id, user_id)
                    return True
        return False

    def sweep_older_than(self, retention: timedelta) -> int:
        cutoff = self._clock() - retention
        removed = 0
        with self._lock:
            for user_id in list(self._by_user):
                kept = [n for n in self._by_user[user_id] if n.created_at > cutoff]
                removed += len(self._by_user[user_id]) - len(kept)
                if kept:
                    self._by_user[user_id] = kept
                else:
                    del self._by_user[user_id]
        logger.info("Old notifications cleaned up: %s removed (cutoff %s)", removed, cutoff.isoformat())
        return removed

    # Typed constructors used by the jobs

    def create_medication_reminder(
        self,
        user_id: int,
        *,
        medication_id: int,
        name: str,
        dosage: str | None,
        due_time,
    ) -> Notification:
        dose = (dosage or "").strip() or DEFAULT_DOSAGE
        return self.add(
            user_id,
            MEDICATION_REMINDER,
            f"Time to take {name} ({dose})",
            {
                "medication_id": medication_id,
                "medication_name": name,
                "dosage": dose,
                "time": format_clock(due_time),
            },
        )

    def create_appointment_reminder(
        self,
        user_id: int,
        *,
        appointment_id: int,
        title: str,
        on_date: date,
        at_time=None,
        location: str | None = None,
    ) -> Notification:
        clock = format_clock(at_time)
        when = f"{on_date.isoformat()} at {clock}" if clock else on_date.isoformat()
        return self.add(
            user_id,
            APPOINTMENT_REMINDER,
            f"Upcoming appointment: {title} on {when}",
            {
                "appointment_id": appointment_id,
                "title": title,
                "date": on_date.isoformat(),
                "time": clock,
                "location": location,
            },
        )

    def create_health_score_notification(self, user_id: int, score: int, trend: int, score_date: date) -> Notification:
        message = f"Your health score is {score}/100"
        if trend > 0:
            message += f" (improved by {trend} points)"
        elif trend < 0:
            message += f" (decreased by {abs(trend)} points)"
        else:
            message += " (no change)"
        return self.add(
            user_id,
            HEALTH_SCORE,
            message,
            {"score": score, "trend": trend, "date": score_date.isoformat()},
        )
