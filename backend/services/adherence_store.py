from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Callable, TypeVar

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Appointment, HealthMetric, HealthScore, Medication, MedicationAction, User
from services.errors import Conflict, StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AdherenceCounts:
    total: int
    taken: int


def _storage_call(operation: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Re-raise SQLAlchemy errors as StorageFailure tagged with the operation name."""

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as exc:
                raise StorageFailure(f"{operation} failed: {exc}", cause=exc) from exc

        return wrapper

    return decorator


def _active_on(today: date):
    return and_(Medication.start_date <= today, Medication.end_date >= today)


def _not_taken():
    return or_(Medication.taken.is_(False), Medication.taken.is_(None))


class AdherenceStore:
    """Storage boundary for the adherence engine.

    One store wraps one SQLAlchemy session; the caller owns the transaction
    (see ``db.database.session_scope``). Writes are flushed, never committed,
    so multi-step operations stay atomic.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # Medications

    @_storage_call("list_active_medications")
    def list_active_medications(self, today: date, taken: bool | None = None) -> list[Medication]:
        query = self.db.query(Medication).filter(_active_on(today))
        if taken is True:
            query = query.filter(Medication.taken.is_(True))
        elif taken is False:
            query = query.filter(_not_taken())
        return query.order_by(Medication.id.asc()).all()

    @_storage_call("reset_taken_flags")
    def reset_taken_flags(self, today: date) -> int:
        rows = self.list_active_medications(today, taken=True)
        for row in rows:
            row.taken = False
        self.db.flush()
        return len(rows)

    @_storage_call("list_due_medications")
    def list_due_medications(
        self,
        today: date,
        window_start: time,
        window_end: time | None,
        user_id: int | None = None,
    ) -> list[Medication]:
        """Untaken doses due in ``[window_start, window_end)`` today.

        ``window_end=None`` runs to midnight; doses after midnight belong to
        tomorrow and are picked up by tomorrow's first tick.
        """
        if window_end is None:
            in_window = Medication.time >= window_start
        else:
            in_window = and_(Medication.time >= window_start, Medication.time < window_end)
        query = self.db.query(Medication).filter(
            _active_on(today),
            _not_taken(),
            Medication.time.isnot(None),
            in_window,
        )
        if user_id is not None:
            query = query.filter(Medication.user_id == user_id)
        return query.order_by(Medication.time.asc(), Medication.id.asc()).all()

    @_storage_call("get_medication")
    def get_medication(self, user_id: int, medication_id: int) -> Medication | None:
        return (
            self.db.query(Medication)
            .filter(Medication.id == medication_id, Medication.user_id == user_id)
            .first()
        )

    @_storage_call("set_taken")
    def set_taken(self, medication_id: int, taken: bool) -> int:
        result = self.db.execute(
            update(Medication)
            .where(Medication.id == medication_id)
            .values(taken=bool(taken))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    @_storage_call("list_user_ids")
    def list_user_ids(self) -> list[int]:
        return [int(row.id) for row in self.db.query(User.id).order_by(User.id.asc()).all()]

    # Score inputs

    @_storage_call("list_recent_metrics")
    def list_recent_metrics(self, user_id: int, since: date) -> list[HealthMetric]:
        return (
            self.db.query(HealthMetric)
            .filter(HealthMetric.user_id == user_id, HealthMetric.metric_date >= since)
            .order_by(HealthMetric.metric_date.desc(), HealthMetric.id.desc())
            .all()
        )

    @_storage_call("medication_adherence_counts")
    def medication_adherence_counts(self, user_id: int, since: date | None = None) -> AdherenceCounts:
        """Taken vs total medications; ``since=None`` counts every prescription."""
        query = self.db.query(
            func.count(Medication.id),
            func.coalesce(func.sum(case((Medication.taken.is_(True), 1), else_=0)), 0),
        ).filter(Medication.user_id == user_id)
        if since is not None:
            query = query.filter(Medication.end_date >= since)
        total, taken = query.one()
        return AdherenceCounts(total=int(total or 0), taken=int(taken or 0))

    @_storage_call("upcoming_appointment_count")
    def upcoming_appointment_count(self, user_id: int, from_date: date) -> int:
        count = (
            self.db.query(func.count(Appointment.id))
            .filter(Appointment.user_id == user_id, Appointment.date >= from_date)
            .scalar()
        )
        return int(count or 0)

    # Health score

    def insert_health_score(self, user_id: int, score_date: date, score: int) -> HealthScore:
        row = HealthScore(user_id=user_id, score_date=score_date, score=int(score))
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise Conflict(
                f"health score for user {user_id} on {score_date.isoformat()} already exists",
                cause=exc,
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageFailure(f"insert_health_score failed: {exc}", cause=exc) from exc
        return row

    @_storage_call("update_health_score_if_exists")
    def update_health_score_if_exists(self, user_id: int, score_date: date, score: int) -> bool:
        result = self.db.execute(
            update(HealthScore)
            .where(HealthScore.user_id == user_id, HealthScore.score_date == score_date)
            .values(score=int(score))
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def upsert_health_score(self, user_id: int, score_date: date, score: int) -> None:
        """Update the day's row when present, insert otherwise.

        Raises ``Conflict`` when a concurrent writer inserted the row between
        the two statements; the caller retries the update in a new transaction.
        """
        if not self.update_health_score_if_exists(user_id, score_date, score):
            self.insert_health_score(user_id, score_date, score)

    @_storage_call("list_score_history")
    def list_score_history(self, user_id: int, since: date) -> list[HealthScore]:
        return (
            self.db.query(HealthScore)
            .filter(HealthScore.user_id == user_id, HealthScore.score_date >= since)
            .order_by(HealthScore.score_date.asc())
            .all()
        )

    # Medication action ledger

    @_storage_call("insert_medication_action")
    def insert_medication_action(
        self,
        user_id: int,
        medication_id: int,
        previous_taken: bool,
        new_taken: bool,
    ) -> MedicationAction:
        row = MedicationAction(
            user_id=user_id,
            medication_id=medication_id,
            previous_taken=bool(previous_taken),
            new_taken=bool(new_taken),
            reverted=False,
        )
        self.db.add(row)
        self.db.flush()
        return row

    @_storage_call("get_medication_action")
    def get_medication_action(self, action_id: int, user_id: int) -> MedicationAction | None:
        return (
            self.db.query(MedicationAction)
            .filter(MedicationAction.id == action_id, MedicationAction.user_id == user_id)
            .first()
        )

    @_storage_call("mark_action_reverted")
    def mark_action_reverted(self, action_id: int) -> bool:
        """Compare-and-swap ``reverted`` false -> true; False when another writer won."""
        result = self.db.execute(
            update(MedicationAction)
            .where(MedicationAction.id == action_id, MedicationAction.reverted.is_(False))
            .values(reverted=True)
            .execution_options(synchronize_session="fetch")
        )
        return bool(result.rowcount)

    @_storage_call("list_medication_actions")
    def list_medication_actions(self, user_id: int, on_date: date | None = None) -> list[tuple[MedicationAction, str]]:
        query = (
            self.db.query(MedicationAction, Medication.name)
            .join(Medication, MedicationAction.medication_id == Medication.id)
            .filter(MedicationAction.user_id == user_id)
        )
        if on_date is not None:
            query = query.filter(func.date(MedicationAction.action_time) == on_date.isoformat())
        rows = query.order_by(MedicationAction.action_time.desc(), MedicationAction.id.desc()).all()
        return [(action, name) for action, name in rows]

    @_storage_call("delete_medication_action")
    def delete_medication_action(self, action_id: int, user_id: int) -> bool:
        deleted = (
            self.db.query(MedicationAction)
            .filter(MedicationAction.id == action_id, MedicationAction.user_id == user_id)
            .delete(synchronize_session=False)
        )
        return bool(deleted)
