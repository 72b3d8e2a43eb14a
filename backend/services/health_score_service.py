from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from db.database import session_scope
from services.adherence_store import AdherenceStore
from services.errors import Conflict
from services.notification_service import NotificationService
from utils.datetime_utils import days_ago, local_today

logger = logging.getLogger(__name__)

BASE_SCORE = 50
MAX_SCORED_METRICS = 5
POINTS_PER_METRIC = 6
MAX_CONSISTENCY_BONUS = 30
MAX_ADHERENCE_BONUS = 20
POINTS_PER_APPOINTMENT = 5
MAX_PLANNING_BONUS = 10

METRIC_LOOKBACK_DAYS = 30
HISTORY_DAYS = 7
# The daily job counts every prescription, the on-demand path only the last
# week. Both are kept as named windows rather than unified.
DAILY_JOB_MEDICATION_LOOKBACK_DAYS: int | None = None
ON_DEMAND_MEDICATION_LOOKBACK_DAYS = 7
USER_LOCK_STRIPES = 64


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_health_score(
    metric_count: int,
    taken: int,
    total: int,
    upcoming_appointments: int,
    *,
    base: int = BASE_SCORE,
) -> int:
    score = base
    score += min(min(MAX_SCORED_METRICS, max(metric_count, 0)) * POINTS_PER_METRIC, MAX_CONSISTENCY_BONUS)
    if total > 0:
        score += _round_half_up(MAX_ADHERENCE_BONUS * (taken / total))
    score += min(max(upcoming_appointments, 0) * POINTS_PER_APPOINTMENT, MAX_PLANNING_BONUS)
    return max(0, min(100, score))


def score_trend(history: list[dict[str, Any]]) -> int:
    if len(history) < 2:
        return 0
    return int(history[-1]["score"]) - int(history[-2]["score"])


@dataclass(frozen=True)
class ScoreResult:
    user_id: int
    score: int
    trend: int
    score_date: date
    history: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "trend": self.trend,
            "score_date": self.score_date.isoformat(),
            "history": self.history,
        }


class HealthScoreService:
    """Computes, stores and announces the per-user daily health score."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationService,
        *,
        clock: Callable[[], date] = local_today,
    ) -> None:
        self.session_factory = session_factory
        self.notifications = notifications
        self._clock = clock
        # bounded set of locks; users sharing a stripe serialize together
        self._user_locks = [threading.Lock() for _ in range(USER_LOCK_STRIPES)]

    def _lock_for(self, user_id: int) -> threading.Lock:
        return self._user_locks[hash(user_id) % len(self._user_locks)]

    def _store_score(self, user_id: int, score_date: date, score: int) -> None:
        try:
            with session_scope(self.session_factory) as db:
                AdherenceStore(db).upsert_health_score(user_id, score_date, score)
        except Conflict:
            with session_scope(self.session_factory) as db:
                AdherenceStore(db).update_health_score_if_exists(user_id, score_date, score)
            logger.debug("Health score for user %s on %s was inserted concurrently; updated", user_id, score_date)

    def recompute_for_user(
        self,
        user_id: int,
        *,
        medication_lookback_days: int | None,
        metric_lookback_days: int = METRIC_LOOKBACK_DAYS,
        notify: bool = True,
    ) -> ScoreResult:
        today = self._clock()
        with self._lock_for(user_id):
            with session_scope(self.session_factory) as db:
                store = AdherenceStore(db)
                metrics = store.list_recent_metrics(user_id, days_ago(today, metric_lookback_days))
                since = None if medication_lookback_days is None else days_ago(today, medication_lookback_days)
                counts = store.medication_adherence_counts(user_id, since)
                upcoming = store.upcoming_appointment_count(user_id, today)

            score = compute_health_score(len(metrics), counts.taken, counts.total, upcoming)
            self._store_score(user_id, today, score)

            with session_scope(self.session_factory) as db:
                history = [
                    {"score": int(row.score), "score_date": row.score_date.isoformat()}
                    for row in AdherenceStore(db).list_score_history(user_id, days_ago(today, HISTORY_DAYS))
                ]

        trend = score_trend(history)
        logger.debug("Calculated health score for user %s: %s (trend %s)", user_id, score, trend)
        if notify:
            self.notifications.create_health_score_notification(user_id, score, trend, today)
        return ScoreResult(user_id=user_id, score=score, trend=trend, score_date=today, history=history)

    def get_health_score(self, user_id: int) -> dict[str, Any]:
        """On-demand recomputation; storage errors propagate to the caller."""
        logger.info("Fetching health score for user %s", user_id)
        result = self.recompute_for_user(user_id, medication_lookback_days=ON_DEMAND_MEDICATION_LOOKBACK_DAYS)
        return result.to_dict()

    def run_daily_job(self) -> dict[str, int]:
        logger.info("Starting daily health score calculation job")
        with session_scope(self.session_factory) as db:
            user_ids = AdherenceStore(db).list_user_ids()

        processed = 0
        failed = 0
        for user_id in user_ids:
            try:
                self.recompute_for_user(user_id, medication_lookback_days=DAILY_JOB_MEDICATION_LOOKBACK_DAYS)
                processed += 1
            except Exception as exc:
                failed += 1
                logger.error("Failed to calculate health score for user %s: %s", user_id, exc)

        logger.info("Daily health score calculation job completed: %s processed, %s failed", processed, failed)
        return {"processed": processed, "failed": failed}
