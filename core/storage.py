"""Pluggable state stores for the fraud detector and the threshold learner.

Three small interfaces cover all mutable engine state:

- HistoryStore: bounded FIFO of recent fixes per user
- UserFlagStore: block flag and suspicious-activity counter per user
- PatternStore: learned per-store pattern, kept as a plain dict

Each has an in-memory default (process lifetime) and a SQLAlchemy
implementation for deployments that need the state to outlive the process.
The SQL stores open one short session per call from the session factory they
are given, so they are safe to share across threads.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from collections import deque

from sqlalchemy.orm import sessionmaker

from geo import PositionFix
from models import Config, MovementPoint, RegionalPatternRow, UserFlag

logger = logging.getLogger(__name__)

SNAPSHOT_CONFIG_KEY = "threshold_learner_snapshot"


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class HistoryStore(ABC):
    """Bounded per-key history; appending beyond ``capacity`` drops the oldest entry."""

    def __init__(self, capacity: int = 20):
        self.capacity = capacity

    @abstractmethod
    def get(self, key: str) -> list[PositionFix]:
        """Oldest-first copy of the history for ``key`` (empty if unknown)."""

    @abstractmethod
    def append(self, key: str, fix: PositionFix):
        ...

    @abstractmethod
    def delete(self, key: str):
        ...

    @abstractmethod
    def clear(self):
        ...

    @abstractmethod
    def count_keys(self) -> int:
        ...


class UserFlagStore(ABC):
    @abstractmethod
    def is_blocked(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def block(self, user_id: str):
        ...

    @abstractmethod
    def unblock(self, user_id: str):
        """Lift the block and forget the suspicious-activity counter."""

    @abstractmethod
    def get_count(self, user_id: str) -> int:
        ...

    @abstractmethod
    def increment(self, user_id: str) -> int:
        ...

    @abstractmethod
    def blocked_count(self) -> int:
        ...

    @abstractmethod
    def counters(self) -> dict[str, int]:
        """Suspicious-activity counters of every user that has one."""

    @abstractmethod
    def delete(self, user_id: str):
        ...

    @abstractmethod
    def clear(self):
        ...


class PatternStore(ABC):
    @abstractmethod
    def get(self, key: str) -> dict | None:
        ...

    @abstractmethod
    def put(self, key: str, pattern: dict):
        ...

    @abstractmethod
    def values(self) -> list[dict]:
        ...

    @abstractmethod
    def replace_all(self, patterns: dict[str, dict]):
        ...

    @abstractmethod
    def clear(self):
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryHistoryStore(HistoryStore):
    def __init__(self, capacity: int = 20):
        super().__init__(capacity)
        self._history: dict[str, deque] = {}

    def get(self, key):
        return list(self._history.get(key, ()))

    def append(self, key, fix):
        if key not in self._history:
            self._history[key] = deque(maxlen=self.capacity)
        self._history[key].append(fix)

    def delete(self, key):
        self._history.pop(key, None)

    def clear(self):
        self._history.clear()

    def count_keys(self):
        return len(self._history)


class InMemoryUserFlagStore(UserFlagStore):
    def __init__(self):
        self._blocked: set[str] = set()
        self._counts: dict[str, int] = {}

    def is_blocked(self, user_id):
        return user_id in self._blocked

    def block(self, user_id):
        self._blocked.add(user_id)

    def unblock(self, user_id):
        self._blocked.discard(user_id)
        self._counts.pop(user_id, None)

    def get_count(self, user_id):
        return self._counts.get(user_id, 0)

    def increment(self, user_id):
        self._counts[user_id] = self._counts.get(user_id, 0) + 1
        return self._counts[user_id]

    def blocked_count(self):
        return len(self._blocked)

    def counters(self):
        return dict(self._counts)

    def delete(self, user_id):
        self.unblock(user_id)

    def clear(self):
        self._blocked.clear()
        self._counts.clear()


class InMemoryPatternStore(PatternStore):
    def __init__(self):
        self._patterns: dict[str, dict] = {}

    def get(self, key):
        pattern = self._patterns.get(key)
        return copy.deepcopy(pattern) if pattern is not None else None

    def put(self, key, pattern):
        self._patterns[key] = copy.deepcopy(pattern)

    def values(self):
        return [copy.deepcopy(p) for p in self._patterns.values()]

    def replace_all(self, patterns):
        self._patterns = copy.deepcopy(patterns)

    def clear(self):
        self._patterns.clear()


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

class SqlHistoryStore(HistoryStore):
    def __init__(self, session_factory: sessionmaker, capacity: int = 20):
        super().__init__(capacity)
        self._session_factory = session_factory

    def get(self, key):
        db = self._session_factory()
        try:
            rows = (
                db.query(MovementPoint)
                .filter(MovementPoint.user_id == key)
                .order_by(MovementPoint.id.asc())
                .all()
            )
            return [
                PositionFix(lat=r.latitude, lng=r.longitude, accuracy_m=r.accuracy_m, timestamp=r.timestamp)
                for r in rows
            ]
        finally:
            db.close()

    def append(self, key, fix):
        db = self._session_factory()
        try:
            db.add(MovementPoint(
                user_id=key,
                latitude=fix.lat,
                longitude=fix.lng,
                accuracy_m=fix.accuracy_m,
                timestamp=fix.timestamp,
            ))
            db.flush()
            # Trim everything older than the newest `capacity` rows
            keep_ids = [
                row.id for row in (
                    db.query(MovementPoint.id)
                    .filter(MovementPoint.user_id == key)
                    .order_by(MovementPoint.id.desc())
                    .limit(self.capacity)
                    .all()
                )
            ]
            (
                db.query(MovementPoint)
                .filter(MovementPoint.user_id == key, MovementPoint.id.notin_(keep_ids))
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

    def delete(self, key):
        db = self._session_factory()
        try:
            db.query(MovementPoint).filter(MovementPoint.user_id == key).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def clear(self):
        db = self._session_factory()
        try:
            db.query(MovementPoint).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def count_keys(self):
        db = self._session_factory()
        try:
            return db.query(MovementPoint.user_id).distinct().count()
        finally:
            db.close()


class SqlUserFlagStore(UserFlagStore):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_or_create(self, db, user_id) -> UserFlag:
        flag = db.query(UserFlag).filter(UserFlag.user_id == user_id).first()
        if flag is None:
            flag = UserFlag(user_id=user_id, blocked=False, suspicious_count=0)
            db.add(flag)
        return flag

    def is_blocked(self, user_id):
        db = self._session_factory()
        try:
            flag = db.query(UserFlag).filter(UserFlag.user_id == user_id).first()
            return bool(flag and flag.blocked)
        finally:
            db.close()

    def block(self, user_id):
        db = self._session_factory()
        try:
            self._get_or_create(db, user_id).blocked = True
            db.commit()
        finally:
            db.close()

    def unblock(self, user_id):
        self.delete(user_id)

    def get_count(self, user_id):
        db = self._session_factory()
        try:
            flag = db.query(UserFlag).filter(UserFlag.user_id == user_id).first()
            return flag.suspicious_count if flag else 0
        finally:
            db.close()

    def increment(self, user_id):
        db = self._session_factory()
        try:
            flag = self._get_or_create(db, user_id)
            flag.suspicious_count = (flag.suspicious_count or 0) + 1
            db.commit()
            return flag.suspicious_count
        finally:
            db.close()

    def blocked_count(self):
        db = self._session_factory()
        try:
            return db.query(UserFlag).filter(UserFlag.blocked.is_(True)).count()
        finally:
            db.close()

    def counters(self):
        db = self._session_factory()
        try:
            rows = db.query(UserFlag).filter(UserFlag.suspicious_count > 0).all()
            return {r.user_id: r.suspicious_count for r in rows}
        finally:
            db.close()

    def delete(self, user_id):
        db = self._session_factory()
        try:
            db.query(UserFlag).filter(UserFlag.user_id == user_id).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def clear(self):
        db = self._session_factory()
        try:
            db.query(UserFlag).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()


class SqlPatternStore(PatternStore):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _to_dict(row: RegionalPatternRow) -> dict:
        return {
            "store_id": row.store_id,
            "avg_accuracy": row.avg_accuracy,
            "avg_confidence": row.avg_confidence,
            "success_rate": row.success_rate,
            "peak_hours": json.loads(row.peak_hours or "[]"),
            "optimal_radius": row.optimal_radius,
        }

    @staticmethod
    def _apply(row: RegionalPatternRow, pattern: dict):
        row.avg_accuracy = pattern["avg_accuracy"]
        row.avg_confidence = pattern["avg_confidence"]
        row.success_rate = pattern["success_rate"]
        row.peak_hours = json.dumps(list(pattern["peak_hours"]))
        row.optimal_radius = pattern["optimal_radius"]

    def get(self, key):
        db = self._session_factory()
        try:
            row = db.query(RegionalPatternRow).filter(RegionalPatternRow.store_id == key).first()
            return self._to_dict(row) if row else None
        finally:
            db.close()

    def put(self, key, pattern):
        db = self._session_factory()
        try:
            row = db.query(RegionalPatternRow).filter(RegionalPatternRow.store_id == key).first()
            if row is None:
                row = RegionalPatternRow(store_id=key)
                db.add(row)
            self._apply(row, pattern)
            db.commit()
        finally:
            db.close()

    def values(self):
        db = self._session_factory()
        try:
            rows = db.query(RegionalPatternRow).order_by(RegionalPatternRow.store_id).all()
            return [self._to_dict(r) for r in rows]
        finally:
            db.close()

    def replace_all(self, patterns):
        db = self._session_factory()
        try:
            db.query(RegionalPatternRow).delete(synchronize_session=False)
            for key, pattern in patterns.items():
                row = RegionalPatternRow(store_id=key)
                self._apply(row, pattern)
                db.add(row)
            db.commit()
        finally:
            db.close()

    def clear(self):
        db = self._session_factory()
        try:
            db.query(RegionalPatternRow).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()


# ---------------------------------------------------------------------------
# Learner snapshots
# ---------------------------------------------------------------------------

def save_snapshot(db, snapshot: dict):
    """Persist an exported learner snapshot as JSON in the config table."""
    row = db.query(Config).filter(Config.key == SNAPSHOT_CONFIG_KEY).first()
    payload = json.dumps(snapshot)
    if row is None:
        db.add(Config(key=SNAPSHOT_CONFIG_KEY, value=payload))
    else:
        row.value = payload
    db.commit()
    logger.info("Saved threshold learner snapshot (%d patterns)", len(snapshot.get("patterns", [])))


def load_snapshot(db) -> dict | None:
    row = db.query(Config).filter(Config.key == SNAPSHOT_CONFIG_KEY).first()
    if row is None:
        return None
    return json.loads(row.value)
