"""GPS spoofing detection from each user's raw fix stream.

Every new fix is compared with the user's recent movement history and scored
0-100 by independent physics and artefact checks. All checks run, so several
weak signals can add up to a block. A user whose score reaches the critical
level stays blocked until an administrator unblocks them. Malformed fixes
score as suspicious on their own and never enter the history.
"""

import logging
import statistics
import threading
from dataclasses import asdict, dataclass, field

from geo import PositionFix, haversine_m
from storage import HistoryStore, InMemoryHistoryStore, InMemoryUserFlagStore, UserFlagStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

HISTORY_SIZE = 20

MAX_RUNNING_SPEED_MS = 6.0      # 21.6 km/h
MAX_DRIVING_SPEED_MS = 30.0     # 108 km/h
MAX_TELEPORT_DISTANCE_M = 1000.0
TELEPORT_WINDOW_MS = 60_000
BURST_WINDOW_MS = 10_000
MAX_ACCELERATION_MS2 = 5.0
MIN_PLAUSIBLE_ACCURACY_M = 1.0
MAX_ACCURACY_JUMP_M = 80.0
PATTERN_WINDOW = 5
REPEAT_OFFENDER_THRESHOLD = 3

SCORE_TELEPORT = 50
SCORE_IMPOSSIBLE_SPEED = 40
SCORE_HIGH_SPEED = 20
SCORE_ACCELERATION = 25
SCORE_PERFECT_ACCURACY = 15
SCORE_REPETITIVE = 20
SCORE_TIME_REGRESSION = 30
SCORE_ACCURACY_JUMP = 10
SCORE_PER_OFFENCE = 15
SCORE_MALFORMED = 40

SUSPICIOUS_SCORE = 30   # strictly above this counts as a suspicious event
BLOCK_SCORE = 80


@dataclass(frozen=True)
class AnomalyScore:
    score: int
    reasons: list[str] = field(default_factory=list)
    severity: str = "low"  # "low", "medium", "high" or "critical"
    should_block: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Movement:
    distance_m: float
    duration_ms: float
    speed_ms: float


def severity_for(score: float) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def measure_movement(a: PositionFix, b: PositionFix) -> Movement:
    distance = haversine_m(a.lat, a.lng, b.lat, b.lng)
    duration = b.timestamp - a.timestamp
    speed = distance / (duration / 1000) if duration > 0 else 0.0
    return Movement(distance_m=distance, duration_ms=duration, speed_ms=speed)


def is_repetitive(points: list[PositionFix]) -> bool:
    """Uniform non-trivial steps between consecutive points (scripted replay signature)."""
    if len(points) < PATTERN_WINDOW + 1:
        return False
    recent = points[-(PATTERN_WINDOW + 1):]
    steps = [haversine_m(a.lat, a.lng, b.lat, b.lng) for a, b in zip(recent, recent[1:])]
    return statistics.pstdev(steps) < 1.0 and statistics.fmean(steps) > 5.0


def _movement_checks(history: list[PositionFix], fix: PositionFix) -> tuple[int, list[str]]:
    """Physics and artefact checks of a valid fix against a non-empty history."""
    last = history[-1]
    movement = measure_movement(last, fix)
    reasons = []
    score = 0

    # 1. Teleportation
    if movement.distance_m > MAX_TELEPORT_DISTANCE_M and movement.duration_ms < TELEPORT_WINDOW_MS:
        score += SCORE_TELEPORT
        reasons.append(
            f"Teleportation detected: {movement.distance_m:.0f}m in {movement.duration_ms / 1000:.0f}s"
        )

    # 2. Speed
    if movement.speed_ms > MAX_DRIVING_SPEED_MS:
        score += SCORE_IMPOSSIBLE_SPEED
        reasons.append(f"Impossible speed: {movement.speed_ms * 3.6:.1f} km/h")
    elif movement.speed_ms > MAX_RUNNING_SPEED_MS and movement.duration_ms < BURST_WINDOW_MS:
        score += SCORE_HIGH_SPEED
        reasons.append(f"Unusually high speed: {movement.speed_ms * 3.6:.1f} km/h")

    # 3. Acceleration
    if len(history) >= 2 and movement.duration_ms > 0:
        previous = measure_movement(history[-2], last)
        acceleration = abs(movement.speed_ms - previous.speed_ms) / (movement.duration_ms / 1000)
        if acceleration > MAX_ACCELERATION_MS2:
            score += SCORE_ACCELERATION
            reasons.append(f"Impossible acceleration: {acceleration:.1f} m/s²")

    # 4. Sub-metre accuracy, typical of spoofing tools
    if fix.accuracy_m < MIN_PLAUSIBLE_ACCURACY_M:
        score += SCORE_PERFECT_ACCURACY
        reasons.append("Suspiciously accurate GPS (<1m)")

    # 5. Replay
    if is_repetitive(history + [fix]):
        score += SCORE_REPETITIVE
        reasons.append("Repetitive movement pattern detected")

    # 6. Clock running backwards
    if fix.timestamp < last.timestamp:
        score += SCORE_TIME_REGRESSION
        reasons.append("Timestamp goes backwards")

    # 7. Accuracy jump
    accuracy_change = abs(fix.accuracy_m - last.accuracy_m)
    if accuracy_change > MAX_ACCURACY_JUMP_M:
        score += SCORE_ACCURACY_JUMP
        reasons.append(f"Sudden accuracy change: {accuracy_change:.0f}m")

    return score, reasons


class FraudDetector:
    """Per-user spoofing scorer with a terminal block state.

    Calls for the same user are serialized on a per-user lock so history
    order and counters stay consistent; different users never contend.
    """

    def __init__(
        self,
        history_store: HistoryStore | None = None,
        flag_store: UserFlagStore | None = None,
        history_size: int = HISTORY_SIZE,
    ):
        self.history = history_store or InMemoryHistoryStore(capacity=history_size)
        self.flags = flag_store or InMemoryUserFlagStore()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def detect_spoofing(self, user_id: str, fix: PositionFix) -> AnomalyScore:
        with self._lock_for(user_id):
            return self._score(user_id, fix)

    def _score(self, user_id: str, fix: PositionFix) -> AnomalyScore:
        if self.flags.is_blocked(user_id):
            logger.warning("Rejected fix from blocked user=%s", user_id)
            return AnomalyScore(
                score=100,
                reasons=["User previously blocked for suspicious activity"],
                severity="critical",
                should_block=True,
            )

        if not fix.is_valid():
            # never stored, so later fixes are measured against the last sane one
            score, reasons = SCORE_MALFORMED, ["Malformed GPS fix"]
        else:
            history = self.history.get(user_id)
            if not history:
                self.history.append(user_id, fix)
                return AnomalyScore(score=0)
            score, reasons = _movement_checks(history, fix)
            self.history.append(user_id, fix)

        # 8. Repeat offender
        offences = self.flags.get_count(user_id)
        if offences > REPEAT_OFFENDER_THRESHOLD:
            score += SCORE_PER_OFFENCE * offences
            reasons.append(f"Multiple suspicious activities: {offences}")

        if score > SUSPICIOUS_SCORE:
            self.flags.increment(user_id)

        should_block = score >= BLOCK_SCORE
        if should_block:
            self.flags.block(user_id)
            logger.warning("Blocking user=%s score=%d reasons=%s", user_id, score, "; ".join(reasons))
        elif reasons:
            logger.info("Suspicious fix for user=%s score=%d reasons=%s", user_id, score, "; ".join(reasons))

        score = min(100, score)
        return AnomalyScore(
            score=score,
            reasons=reasons,
            severity=severity_for(score),
            should_block=should_block,
        )

    # -----------------------------------------------------------------------
    # Administrative / observability hooks
    # -----------------------------------------------------------------------

    def is_user_blocked(self, user_id: str) -> bool:
        return self.flags.is_blocked(user_id)

    def unblock_user(self, user_id: str):
        with self._lock_for(user_id):
            self.flags.unblock(user_id)
        logger.info("User %s unblocked", user_id)

    def get_user_risk_score(self, user_id: str) -> int:
        return min(100, self.flags.get_count(user_id) * SCORE_PER_OFFENCE)

    def clear_history(self, user_id: str | None = None):
        """Forget history, counters and blocks for one user, or for everyone."""
        if user_id is not None:
            with self._lock_for(user_id):
                self.history.delete(user_id)
                self.flags.delete(user_id)
            with self._locks_guard:
                self._locks.pop(user_id, None)
            return
        self.history.clear()
        self.flags.clear()
        with self._locks_guard:
            self._locks.clear()

    def get_statistics(self) -> dict:
        counters = self.flags.counters()
        suspicious = len(counters)
        total_risk = sum(count * SCORE_PER_OFFENCE for count in counters.values())
        return {
            "total_users": self.history.count_keys(),
            "blocked_users": self.flags.blocked_count(),
            "suspicious_users": suspicious,
            "average_risk_score": total_risk / suspicious if suspicious else 0.0,
        }
