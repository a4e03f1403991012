"""SQLAlchemy models backing the external-store implementations in storage.py."""

import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, Boolean, Text

from database import Base


class Config(Base):
    """Key/value overrides for algorithm tunables and persisted learner snapshots."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class MovementPoint(Base):
    """One entry of a user's bounded movement history (oldest rows are trimmed)."""

    __tablename__ = "movement_points"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy_m = Column(Float, nullable=False)
    timestamp = Column(Integer, nullable=False)  # epoch milliseconds
    received_at = Column(DateTime, default=datetime.datetime.utcnow)


class UserFlag(Base):
    """Fraud bookkeeping for one user: suspicious-activity counter and block flag."""

    __tablename__ = "user_flags"

    user_id = Column(String, primary_key=True)
    blocked = Column(Boolean, default=False, nullable=False)
    suspicious_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class RegionalPatternRow(Base):
    """Learned per-store GPS behaviour (EMA statistics, peak hours, radius)."""

    __tablename__ = "regional_patterns"

    store_id = Column(String, primary_key=True)
    avg_accuracy = Column(Float, nullable=False)
    avg_confidence = Column(Float, nullable=False)
    success_rate = Column(Float, nullable=False)
    peak_hours = Column(Text, nullable=False, default="[]")  # JSON list of hours
    optimal_radius = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
