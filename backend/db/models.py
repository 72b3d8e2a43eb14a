from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    Date, DateTime, Time, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    email = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    medications = relationship("Medication", back_populates="user", cascade="all, delete-orphan")
    medication_actions = relationship("MedicationAction", back_populates="user", cascade="all, delete-orphan")
    health_metrics = relationship("HealthMetric", back_populates="user", cascade="all, delete-orphan")
    appointments = relationship("Appointment", back_populates="user", cascade="all, delete-orphan")
    health_scores = relationship("HealthScore", back_populates="user", cascade="all, delete-orphan")


class Medication(Base):
    __tablename__ = "medications"
    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_medications_date_range"),
        Index("idx_medications_active", "start_date", "end_date", "taken"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    dosage = Column(Text)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    time = Column(Time)  # time of day the dose is due
    taken = Column(Boolean, default=False)  # reset daily
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="medications")
    actions = relationship("MedicationAction", back_populates="medication", cascade="all, delete-orphan")


class MedicationAction(Base):
    __tablename__ = "medication_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    medication_id = Column(Integer, ForeignKey("medications.id"), nullable=False)
    previous_taken = Column(Boolean, nullable=False)
    new_taken = Column(Boolean, nullable=False)
    action_time = Column(DateTime, nullable=False, default=datetime.now)
    reverted = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="medication_actions")
    medication = relationship("Medication", back_populates="actions")


class HealthMetric(Base):
    __tablename__ = "health_metrics"
    __table_args__ = (Index("idx_health_metrics_user_date", "user_id", "metric_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    metric_date = Column(Date, nullable=False)
    metric_type = Column(Text, nullable=False)  # weight | blood_pressure | heart_rate | ...
    value = Column(Float, nullable=False)
    unit = Column(Text)

    user = relationship("User", back_populates="health_metrics")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    time = Column(Time)
    location = Column(Text)

    user = relationship("User", back_populates="appointments")


class HealthScore(Base):
    __tablename__ = "health_score"
    __table_args__ = (UniqueConstraint("user_id", "score_date", name="uq_health_score_user_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    score_date = Column(Date, nullable=False)
    score = Column(Integer, nullable=False)

    user = relationship("User", back_populates="health_scores")
