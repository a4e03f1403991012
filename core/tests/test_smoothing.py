"""Tests for the per-session position smoother."""

import math

import pytest

from geo import PositionFix, haversine_m
from smoothing import PositionSmoother, initial_confidence
from tests.gps_test_fixtures import (
    BASE_TS,
    SHOP_CENTER,
    STATIONARY,
    fix_at,
    stationary_stream,
)


class TestInitialization:
    def test_first_fix_passes_through(self, smoother):
        obs = fix_at(accuracy=8.0)
        out = smoother.update(obs)
        assert out.lat == obs.lat
        assert out.lng == obs.lng
        assert out.accuracy_m == 8.0
        assert out.source == "raw"
        assert out.timestamp == obs.timestamp

    def test_first_fix_confidence(self, smoother):
        assert smoother.update(fix_at(accuracy=8.0)).confidence == 92

    def test_first_fix_confidence_floor(self):
        assert initial_confidence(80.0) == 40
        assert initial_confidence(500.0) == 40

    def test_first_fix_confidence_is_clamped(self):
        assert initial_confidence(0.0) == 100

    def test_state_created_on_first_fix(self, smoother):
        assert smoother.state is None
        smoother.update(fix_at())
        assert smoother.state is not None
        assert smoother.state.velocity_lat == 0.0


class TestReset:
    def test_reset_clears_state(self, smoother):
        for obs in STATIONARY[:3]:
            smoother.update(obs)
        smoother.reset()
        assert smoother.state is None

    def test_reset_then_update_matches_fresh_smoother(self, smoother):
        for obs in STATIONARY[:5]:
            smoother.update(obs)
        smoother.reset()

        obs = fix_at(north_m=30.0, accuracy=14.0, seconds=100)
        fresh = PositionSmoother()
        assert smoother.update(obs) == fresh.update(obs)
        assert smoother.state == fresh.state

    def test_reset_then_stream_matches_fresh_smoother(self, smoother):
        for obs in STATIONARY[:5]:
            smoother.update(obs)
        smoother.reset()

        fresh = PositionSmoother()
        for obs in STATIONARY[5:]:
            assert smoother.update(obs) == fresh.update(obs)


class TestDiscontinuity:
    def test_long_gap_reinitialises(self, smoother):
        for obs in STATIONARY[:4]:
            smoother.update(obs)

        late = fix_at(north_m=15.0, accuracy=12.0, seconds=3 + 31)
        out = smoother.update(late)

        assert out == PositionSmoother().update(late)
        assert out.lat == late.lat and out.lng == late.lng
        assert out.source == "raw"

    def test_long_gap_drops_velocity(self, smoother):
        smoother.update(fix_at(seconds=0))
        smoother.update(fix_at(north_m=1.0, seconds=1))
        smoother.update(fix_at(north_m=60.0, seconds=40))
        assert smoother.state.velocity_lat == 0.0
        assert smoother.state.velocity_lng == 0.0

    def test_backwards_timestamp_reinitialises(self, smoother):
        smoother.update(fix_at(seconds=10))
        earlier = fix_at(north_m=5.0, seconds=5)
        out = smoother.update(earlier)
        assert out == PositionSmoother().update(earlier)

    def test_duplicate_timestamp_reinitialises(self, smoother):
        smoother.update(fix_at(seconds=10))
        same = fix_at(north_m=3.0, seconds=10)
        assert smoother.update(same).source == "raw"

    def test_gap_of_exactly_max_is_fused(self, smoother):
        smoother.update(fix_at(seconds=0))
        assert smoother.update(fix_at(north_m=1.0, seconds=30)).source == "fused"


class TestFusedUpdates:
    @pytest.mark.parametrize("dt_s", [0.001, 0.5, 1, 5, 10, 29.9, 30])
    @pytest.mark.parametrize("accuracy", [0.0, 3.0, 15.0, 65.0, 500.0])
    def test_confidence_in_range(self, dt_s, accuracy):
        smoother = PositionSmoother()
        smoother.update(fix_at(accuracy=accuracy))
        out = smoother.update(fix_at(north_m=4.0, accuracy=accuracy, seconds=dt_s))
        assert 0 <= out.confidence <= 100
        assert out.source == "fused"

    def test_filtered_position_between_prediction_and_fix(self, smoother):
        for obs in STATIONARY[:5]:
            smoother.update(obs)
        outlier = fix_at(north_m=5.0, accuracy=10.0, seconds=5)
        out = smoother.update(outlier)
        moved = haversine_m(SHOP_CENTER["lat"], SHOP_CENTER["lng"], out.lat, out.lng)
        assert moved < 5.0

    def test_filtered_accuracy_blends_prior(self, smoother):
        smoother.update(fix_at(accuracy=10.0, seconds=0))
        out = smoother.update(fix_at(accuracy=30.0, seconds=1))
        assert 10.0 < out.accuracy_m < 30.0

    def test_impossible_jump_lowers_confidence(self):
        steady = PositionSmoother()
        steady.update(fix_at(accuracy=10.0, seconds=0))
        steady_out = steady.update(fix_at(north_m=0.5, accuracy=10.0, seconds=1))

        jumpy = PositionSmoother()
        jumpy.update(fix_at(accuracy=10.0, seconds=0))
        jump_out = jumpy.update(fix_at(north_m=500.0, accuracy=10.0, seconds=1))

        assert jump_out.confidence < steady_out.confidence
        assert steady_out.confidence - jump_out.confidence >= 15

    def test_state_tracks_last_timestamp(self, smoother):
        for obs in STATIONARY:
            smoother.update(obs)
        assert smoother.state.timestamp == STATIONARY[-1].timestamp


class TestMalformedInput:
    @pytest.mark.parametrize("bad", [
        PositionFix(lat=math.nan, lng=-122.4, accuracy_m=10.0, timestamp=BASE_TS),
        PositionFix(lat=37.7, lng=math.inf, accuracy_m=10.0, timestamp=BASE_TS),
        PositionFix(lat=95.0, lng=-122.4, accuracy_m=10.0, timestamp=BASE_TS),
        PositionFix(lat=37.7, lng=-122.4, accuracy_m=-1.0, timestamp=BASE_TS),
    ])
    def test_malformed_fix_resets_without_raising(self, smoother, bad):
        smoother.update(fix_at(seconds=-1))
        out = smoother.update(bad)
        assert out.confidence == 0
        assert smoother.state is None

    def test_recovers_after_malformed_fix(self, smoother):
        smoother.update(PositionFix(lat=math.nan, lng=0.0, accuracy_m=5.0, timestamp=BASE_TS))
        good = fix_at(accuracy=8.0, seconds=1)
        assert smoother.update(good) == PositionSmoother().update(good)


class TestStationaryScenario:
    def test_confidence_stabilises_above_70(self, smoother):
        confidences = [smoother.update(obs).confidence for obs in STATIONARY]

        assert confidences[-1] > 70
        assert all(c >= 70 for c in confidences[1:])
        assert max(confidences[-5:]) - min(confidences[-5:]) <= 10

    def test_estimate_stays_on_location(self, smoother):
        for obs in STATIONARY:
            out = smoother.update(obs)
        drift = haversine_m(SHOP_CENTER["lat"], SHOP_CENTER["lng"], out.lat, out.lng)
        assert drift < 1.0

    def test_noisier_stream_scores_lower(self):
        clean, noisy = PositionSmoother(), PositionSmoother()
        for obs in STATIONARY:
            clean_out = clean.update(obs)
        for obs in stationary_stream([40.0] * 10):
            noisy_out = noisy.update(obs)
        assert noisy_out.confidence < clean_out.confidence
