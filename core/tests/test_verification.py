"""End-to-end tests for the verification pipeline."""

import math

from geo import PositionFix
from models import Config
from spoofing import FraudDetector
from storage import SqlHistoryStore, SqlPatternStore
from thresholds import ThresholdLearner
from verification import TrustVerifier, build_verifier
from tests.gps_test_fixtures import BASE_TS, COFFEE_SHOP, JEWELLERY_STORE, STATIONARY, TELEPORT, fix_at


class TestSessions:
    def test_one_smoother_per_session(self):
        verifier = TrustVerifier()
        assert verifier.smoother_for("s1") is verifier.smoother_for("s1")
        assert verifier.smoother_for("s1") is not verifier.smoother_for("s2")
        assert verifier.active_sessions == 2

    def test_end_session(self):
        verifier = TrustVerifier()
        verifier.verify("s1", "u1", fix_at(), COFFEE_SHOP)
        verifier.end_session("s1")
        verifier.end_session("never-started")
        assert verifier.active_sessions == 0

    def test_max_gap_passed_to_smoothers(self):
        verifier = TrustVerifier(max_gap_s=5.0)
        assert verifier.smoother_for("s1").max_gap_s == 5.0


class TestVerify:
    def test_customer_at_the_counter(self):
        verifier = TrustVerifier()
        results = [verifier.verify("s1", "u1", fix, COFFEE_SHOP) for fix in STATIONARY]

        assert all(r.validation.status == "allow" for r in results)
        assert all(r.anomaly.score == 0 for r in results)
        assert results[0].position.source == "raw"
        assert results[-1].position.source == "fused"

    def test_strict_store_still_allows_a_steady_fix(self):
        verifier = TrustVerifier()
        result = verifier.verify("s1", "u1", fix_at(accuracy=8.0), JEWELLERY_STORE)
        assert result.position.confidence == 92
        assert result.validation.status == "allow"

    def test_teleporting_user(self):
        verifier = TrustVerifier()
        verifier.verify("s1", "u1", TELEPORT[0], COFFEE_SHOP)
        result = verifier.verify("s1", "u1", TELEPORT[1], COFFEE_SHOP)

        assert result.anomaly.should_block
        assert result.validation.status == "block"
        assert verifier.detector.is_user_blocked("u1")

    def test_locale(self):
        verifier = TrustVerifier(locale="ko")
        result = verifier.verify("s1", "u1", fix_at(), COFFEE_SHOP)
        assert result.validation.recommendation.startswith("위치 확인됨")

    def test_to_dict(self):
        result = TrustVerifier().verify("s1", "u1", fix_at(), COFFEE_SHOP)
        data = result.to_dict()
        assert data["target_id"] == COFFEE_SHOP.id
        assert data["position"]["source"] == "raw"
        assert data["validation"]["status"] == "allow"
        assert data["anomaly"] == {"score": 0, "reasons": [], "severity": "low", "should_block": False}

    def test_malformed_fix_is_blocked(self):
        verifier = TrustVerifier()
        fix = PositionFix(lat=math.nan, lng=-122.4, accuracy_m=10.0, timestamp=BASE_TS)
        result = verifier.verify("s1", "u1", fix, COFFEE_SHOP)

        assert result.position.confidence == 0
        assert result.validation.status == "block"
        assert result.validation.distance_m == -1
        assert result.anomaly.score == 40
        assert result.anomaly.reasons == ["Malformed GPS fix"]
        assert verifier.detector.history.get("u1") == []

    def test_infinite_values_do_not_raise(self):
        verifier = TrustVerifier()
        verifier.verify("s1", "u1", fix_at(), COFFEE_SHOP)
        fix = fix_at(seconds=1)
        bad = PositionFix(lat=fix.lat, lng=math.inf, accuracy_m=fix.accuracy_m, timestamp=fix.timestamp)
        result = verifier.verify("s1", "u1", bad, COFFEE_SHOP)

        assert result.validation.status == "block"
        assert result.anomaly.reasons == ["Malformed GPS fix"]
        assert verifier.detector.history.get("u1") == [fix_at()]


class TestRecordOutcome:
    def test_feeds_the_learner(self):
        verifier = TrustVerifier()
        result = verifier.verify("s1", "u1", fix_at(), COFFEE_SHOP)
        verifier.record_outcome(result, success=True, weather="clear")

        assert verifier.learner.data_size == 1
        [pattern] = verifier.learner.get_regional_patterns()
        assert pattern.store_id == COFFEE_SHOP.id
        assert pattern.avg_confidence == result.position.confidence

    def test_malformed_position_is_not_learned(self):
        verifier = TrustVerifier()
        fix = PositionFix(lat=math.nan, lng=-122.4, accuracy_m=10.0, timestamp=BASE_TS)
        verifier.record_outcome(verifier.verify("s1", "u1", fix, COFFEE_SHOP), success=False)

        assert verifier.learner.data_size == 0
        assert verifier.learner.get_regional_patterns() == []

    def test_shared_learner_and_detector(self):
        detector, learner = FraudDetector(), ThresholdLearner()
        verifier = TrustVerifier(detector=detector, learner=learner)
        verifier.record_outcome(verifier.verify("s1", "u1", fix_at(), COFFEE_SHOP), success=False)
        assert learner.data_size == 1
        assert detector.get_statistics()["total_users"] == 1


class TestBuildVerifier:
    def test_in_memory_defaults(self):
        verifier = build_verifier()
        assert verifier.max_gap_s == 30.0
        assert verifier.learner.min_data_points == 100
        assert verifier.detector.history.capacity == 20

    def test_tunables_from_config_table(self, db):
        db.add(Config(key="fraud_history_size", value="5"))
        db.add(Config(key="learner_optimize_every", value="10"))
        db.add(Config(key="smoother_max_gap_s", value="12.5"))
        db.commit()

        verifier = build_verifier(db)
        assert verifier.detector.history.capacity == 5
        assert verifier.learner.optimize_every == 10
        assert verifier.max_gap_s == 12.5

    def test_persistent_state(self, session_factory):
        verifier = build_verifier(session_factory=session_factory, locale="ko")
        assert isinstance(verifier.detector.history, SqlHistoryStore)
        assert isinstance(verifier.learner.patterns, SqlPatternStore)
        assert verifier.locale == "ko"

        for fix in TELEPORT:
            verifier.verify("s1", "u1", fix, COFFEE_SHOP)

        restarted = build_verifier(session_factory=session_factory)
        assert restarted.detector.is_user_blocked("u1")
