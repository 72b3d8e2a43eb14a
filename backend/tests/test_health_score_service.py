from __future__ import annotations

import sys
import threading
from datetime import date, time, timedelta
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from db.database import Base  # noqa: E402
from db.models import Appointment, HealthMetric, HealthScore, Medication, User  # noqa: E402
from services.adherence_store import AdherenceStore  # noqa: E402
from services.errors import StorageFailure  # noqa: E402
from services.health_score_service import (  # noqa: E402
    USER_LOCK_STRIPES,
    HealthScoreService,
    compute_health_score,
    score_trend,
)
from services.notification_service import HEALTH_SCORE, NotificationService  # noqa: E402


TODAY = date(2024, 5, 10)


def _new_session_factory(url: str = "sqlite:///:memory:"):
    engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _seed(factory, *rows) -> None:
    db = factory()
    db.add_all(list(rows))
    db.commit()
    db.close()


def _new_user(factory, username: str) -> int:
    db = factory()
    user = User(username=username)
    db.add(user)
    db.commit()
    user_id = user.id
    db.close()
    return user_id


def _service(factory, notifications: NotificationService | None = None) -> HealthScoreService:
    return HealthScoreService(factory, notifications or NotificationService(), clock=lambda: TODAY)


def _metric(user_id: int, days_back: int) -> HealthMetric:
    return HealthMetric(
        user_id=user_id,
        metric_date=TODAY - timedelta(days=days_back),
        metric_type="weight",
        value=70.0,
        unit="kg",
    )


def _medication(user_id: int, *, taken: bool, end_days_back: int = -5) -> Medication:
    end_date = TODAY - timedelta(days=end_days_back)
    return Medication(
        user_id=user_id,
        name="Metformin",
        dosage="500mg",
        start_date=end_date - timedelta(days=30),
        end_date=end_date,
        time=time(8, 0),
        taken=taken,
    )


def _appointment(user_id: int, days_ahead: int) -> Appointment:
    return Appointment(user_id=user_id, title="Checkup", date=TODAY + timedelta(days=days_ahead))


def _score_rows(factory, user_id: int) -> list[HealthScore]:
    db = factory()
    try:
        return db.query(HealthScore).filter(HealthScore.user_id == user_id).all()
    finally:
        db.close()


def test_score_formula_baseline_and_ceiling():
    assert compute_health_score(0, 0, 0, 0) == 50
    assert compute_health_score(5, 10, 10, 3) == 100
    assert compute_health_score(12, 10, 10, 9) == 100


def test_score_formula_partial_terms():
    assert compute_health_score(2, 0, 0, 0) == 62
    assert compute_health_score(0, 1, 2, 0) == 60
    assert compute_health_score(0, 0, 0, 1) == 55
    # 20 * 1/8 = 2.5 rounds half up
    assert compute_health_score(0, 1, 8, 0) == 53


def test_score_formula_clamps_to_zero_for_negative_base():
    assert compute_health_score(0, 0, 0, 0, base=-40) == 0
    assert compute_health_score(1, 0, 0, 0, base=-100) == 0


def test_score_trend_needs_two_rows():
    assert score_trend([]) == 0
    assert score_trend([{"score": 70}]) == 0
    assert score_trend([{"score": 70}, {"score": 64}]) == -6


def test_recompute_without_data_stores_base_score_and_notifies():
    factory = _new_session_factory()
    notifications = NotificationService()
    user_id = _new_user(factory, "empty_user")

    result = _service(factory, notifications).get_health_score(user_id)

    assert result == {
        "score": 50,
        "trend": 0,
        "score_date": TODAY.isoformat(),
        "history": [{"score": 50, "score_date": TODAY.isoformat()}],
    }
    rows = _score_rows(factory, user_id)
    assert [(r.score_date, r.score) for r in rows] == [(TODAY, 50)]
    notes = notifications.list(user_id)
    assert len(notes) == 1
    assert notes[0].type == HEALTH_SCORE
    assert notes[0].payload == {"score": 50, "trend": 0, "date": TODAY.isoformat()}


def test_full_marks_reach_one_hundred():
    factory = _new_session_factory()
    user_id = _new_user(factory, "full_marks")
    _seed(
        factory,
        *[_metric(user_id, d) for d in range(6)],
        *[_medication(user_id, taken=True) for _ in range(10)],
        *[_appointment(user_id, d) for d in (0, 3, 9)],
    )
    result = _service(factory).get_health_score(user_id)
    assert result["score"] == 100


def test_recompute_twice_same_day_keeps_one_row_with_latest_score():
    factory = _new_session_factory()
    user_id = _new_user(factory, "twice_user")
    service = _service(factory)

    first = service.get_health_score(user_id)
    _seed(factory, _metric(user_id, 1), _metric(user_id, 2))
    second = service.get_health_score(user_id)

    assert first["score"] == 50
    assert second["score"] == 62
    rows = _score_rows(factory, user_id)
    assert len(rows) == 1
    assert rows[0].score == 62
    assert second["history"] == [{"score": 62, "score_date": TODAY.isoformat()}]
    assert second["trend"] == 0


def test_store_score_twice_keeps_latest():
    factory = _new_session_factory()
    user_id = _new_user(factory, "conflict_user")
    service = _service(factory)

    service._store_score(user_id, TODAY, 55)
    service._store_score(user_id, TODAY, 77)

    rows = _score_rows(factory, user_id)
    assert [(r.score_date, r.score) for r in rows] == [(TODAY, 77)]


def test_row_inserted_by_another_writer_falls_back_to_update(tmp_path, monkeypatch):
    factory = _new_session_factory(f"sqlite:///{tmp_path / 'race.db'}")
    user_id = _new_user(factory, "racing_user")
    real_update = AdherenceStore.update_health_score_if_exists
    seen: list[int] = []

    def _racing_update(self, owner, score_date, score):
        seen.append(score)
        if len(seen) == 1:
            # another writer commits the day's row after our update found nothing
            _seed(factory, HealthScore(user_id=owner, score_date=score_date, score=40))
            return False
        return real_update(self, owner, score_date, score)

    monkeypatch.setattr(AdherenceStore, "update_health_score_if_exists", _racing_update)

    _service(factory)._store_score(user_id, TODAY, 77)

    assert seen == [77, 77]
    rows = _score_rows(factory, user_id)
    assert [(r.score_date, r.score) for r in rows] == [(TODAY, 77)]


def test_user_locks_are_bounded_and_stable():
    service = _service(_new_session_factory())
    locks = {id(service._lock_for(user_id)) for user_id in range(10_000)}
    assert len(locks) <= USER_LOCK_STRIPES
    assert service._lock_for(12345) is service._lock_for(12345)


def test_daily_job_counts_all_medications_while_on_demand_uses_last_week():
    # The two call sites disagree on the medication window; both are kept.
    factory = _new_session_factory()
    user_id = _new_user(factory, "window_user")
    _seed(
        factory,
        _medication(user_id, taken=True),
        _medication(user_id, taken=False, end_days_back=20),
    )
    service = _service(factory)

    summary = service.run_daily_job()
    daily_rows = _score_rows(factory, user_id)
    on_demand = service.get_health_score(user_id)

    assert summary == {"processed": 1, "failed": 0}
    assert daily_rows[0].score == 60  # 1 of 2 taken, all time
    assert on_demand["score"] == 70  # 1 of 1 taken in the last 7 days


def test_metrics_older_than_thirty_days_are_ignored():
    factory = _new_session_factory()
    user_id = _new_user(factory, "old_metrics")
    _seed(factory, _metric(user_id, 5), _metric(user_id, 31), _metric(user_id, 45))
    result = _service(factory).get_health_score(user_id)
    assert result["score"] == 56


def test_past_appointments_do_not_count():
    factory = _new_session_factory()
    user_id = _new_user(factory, "past_appts")
    _seed(factory, _appointment(user_id, -1), _appointment(user_id, 2))
    assert _service(factory).get_health_score(user_id)["score"] == 55


def test_trend_compares_with_previous_stored_score():
    factory = _new_session_factory()
    notifications = NotificationService()
    user_id = _new_user(factory, "trend_user")
    _seed(
        factory,
        HealthScore(user_id=user_id, score_date=TODAY - timedelta(days=9), score=10),
        HealthScore(user_id=user_id, score_date=TODAY - timedelta(days=1), score=48),
        _appointment(user_id, 1),
    )

    result = _service(factory, notifications).get_health_score(user_id)

    assert result["score"] == 55
    assert result["trend"] == 7
    assert [row["score"] for row in result["history"]] == [48, 55]
    assert notifications.list(user_id)[0].message == "Your health score is 55/100 (improved by 7 points)"


def test_daily_job_isolates_per_user_failures(monkeypatch):
    factory = _new_session_factory()
    notifications = NotificationService()
    good_user = _new_user(factory, "good_user")
    bad_user = _new_user(factory, "bad_user")
    real_list_metrics = AdherenceStore.list_recent_metrics

    def _flaky(self, user_id, since):
        if user_id == bad_user:
            raise StorageFailure("list_recent_metrics failed: disk I/O error")
        return real_list_metrics(self, user_id, since)

    monkeypatch.setattr(AdherenceStore, "list_recent_metrics", _flaky)

    summary = _service(factory, notifications).run_daily_job()

    assert summary == {"processed": 1, "failed": 1}
    assert len(_score_rows(factory, good_user)) == 1
    assert _score_rows(factory, bad_user) == []
    assert notifications.count(good_user) == 1
    assert notifications.count(bad_user) == 0


def test_on_demand_storage_failure_propagates(monkeypatch):
    factory = _new_session_factory()
    user_id = _new_user(factory, "broken_user")

    def _broken(self, user_id, since=None):
        raise StorageFailure("medication_adherence_counts failed: database is locked")

    monkeypatch.setattr(AdherenceStore, "medication_adherence_counts", _broken)

    with pytest.raises(StorageFailure):
        _service(factory).get_health_score(user_id)
    assert _score_rows(factory, user_id) == []


def test_concurrent_recomputation_leaves_single_row(tmp_path):
    factory = _new_session_factory(f"sqlite:///{tmp_path / 'scores.db'}")
    user_id = _new_user(factory, "race_user")
    _seed(factory, _metric(user_id, 1), _appointment(user_id, 2))
    # separate services share no lock, as two processes would not
    services = [_service(factory), _service(factory)]
    barrier = threading.Barrier(2)
    results: list[int] = []
    errors: list[BaseException] = []

    def _worker(service: HealthScoreService) -> None:
        barrier.wait()
        try:
            results.append(service.get_health_score(user_id)["score"])
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(service,)) for service in services]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    rows = _score_rows(factory, user_id)
    assert len(rows) == 1
    assert rows[0].score in results
    assert results == [61, 61]


def test_same_service_serializes_recomputation_per_user(tmp_path):
    factory = _new_session_factory(f"sqlite:///{tmp_path / 'serial.db'}")
    user_id = _new_user(factory, "serial_user")
    service = _service(factory)
    errors: list[BaseException] = []

    def _worker() -> None:
        try:
            service.get_health_score(user_id)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(_score_rows(factory, user_id)) == 1
