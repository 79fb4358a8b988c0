"""
Unit tests for the Kalman fusion filter.

Tests cover:
- Sequential per-axis updates and covariance behaviour
- Accuracy sanitizing
- Floor vote
- Reset semantics and the stateless fuse_once helper
"""

import numpy as np
import pytest

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.localization.kalman_fusion import (
    KalmanFusionConfig,
    KalmanFusionFilter,
    fuse_once,
)


def _m(x: float, y: float, accuracy: float, floor: int = 0,
       source: PositionSource = PositionSource.TRILATERATION) -> PositionMeasurement:
    return PositionMeasurement(Position(x, y, floor), accuracy, source)


class TestKalmanUpdate:
    """Tests for update()."""

    def test_empty_batch(self):
        """Test that an empty batch leaves the filter untouched."""
        kf = KalmanFusionFilter()
        assert kf.update([]) is None
        assert kf.update_count == 0

    def test_single_update_gain(self):
        """Test one update from the origin with P0=1, Q=0.01, R=2."""
        kf = KalmanFusionFilter()
        fused = kf.update([_m(10.0, 0.0, 2.0)])

        gain = 1.01 / 3.01
        assert fused.x == pytest.approx(10.0 * gain)
        assert fused.y == pytest.approx(0.0)
        assert kf.covariance[0, 0] == pytest.approx(1.01 * (1 - gain))

    def test_converges_to_repeated_measurement(self):
        """Test that repeated identical measurements pull the state onto them."""
        kf = KalmanFusionFilter()
        for _ in range(100):
            fused = kf.update([_m(4.0, -3.0, 2.0)])

        assert fused.x == pytest.approx(4.0, abs=0.01)
        assert fused.y == pytest.approx(-3.0, abs=0.01)

    def test_covariance_non_increasing(self):
        """Test that the diagonal covariance does not grow under steady updates."""
        kf = KalmanFusionFilter()
        previous = kf.covariance.diagonal().copy()
        for _ in range(50):
            kf.update([_m(1.0, 1.0, 2.0), _m(1.5, 0.5, 4.0, source=PositionSource.WIFI)])
            current = kf.covariance.diagonal()
            assert np.all(current <= previous + 1e-12)
            assert np.all(current > 0)
            previous = current.copy()

    def test_more_accurate_measurement_pulls_harder(self):
        """Test that the lower-accuracy-value source dominates."""
        kf = KalmanFusionFilter()
        kf.reset(Position(0.0, 0.0))
        fused = kf.update([_m(10.0, 0.0, 1.0), _m(0.0, 0.0, 100.0)])
        assert fused.x > 4.5

    def test_non_positive_accuracy_sanitized(self):
        """Test that zero accuracy acts as a near-certain measurement, not a crash."""
        kf = KalmanFusionFilter()
        fused = kf.update([_m(7.0, 8.0, 0.0)])

        assert fused.x == pytest.approx(7.0, abs=0.01)
        assert fused.y == pytest.approx(8.0, abs=0.01)
        assert kf.covariance[0, 0] >= kf.config.min_covariance


class TestFloorVote:
    """Tests for the discrete floor estimate."""

    def test_accuracy_weighted_vote(self):
        """Test that the better-accuracy floor wins."""
        kf = KalmanFusionFilter()
        fused = kf.update([_m(0.0, 0.0, 4.0, floor=0), _m(0.0, 0.0, 2.0, floor=1)])
        assert fused.floor == 1

    def test_tie_goes_to_first_floor(self):
        """Test that a tie resolves to the first floor in the batch."""
        kf = KalmanFusionFilter()
        fused = kf.update([_m(0.0, 0.0, 2.0, floor=2), _m(0.0, 0.0, 2.0, floor=3)])
        assert fused.floor == 2


class TestReset:
    """Tests for reset() and fuse_once()."""

    def test_reset_matches_fresh_filter(self):
        """Test that reset() followed by updates reproduces a new filter."""
        used = KalmanFusionFilter()
        for i in range(5):
            used.update([_m(float(i), 2.0 * i, 3.0, floor=1)])
        used.reset()

        fresh = KalmanFusionFilter()
        batch = [_m(3.0, 4.0, 2.0)]
        assert used.update(batch) == fresh.update(batch)
        assert np.allclose(used.covariance, fresh.covariance)

    def test_reset_to_position(self):
        """Test seeding the state at a confirmed position."""
        kf = KalmanFusionFilter()
        kf.reset(Position(12.0, -4.0, 3))

        assert kf.state == Position(12.0, -4.0, 3)
        assert kf.update_count == 0
        assert np.allclose(kf.covariance, np.eye(2) * kf.config.initial_covariance)

    def test_fuse_once(self):
        """Test the stateless helper seeds at the first measurement."""
        fused = fuse_once([_m(3.0, 4.0, 2.0, floor=1)])
        assert fused == Position(3.0, 4.0, 1)

    def test_fuse_once_empty(self):
        assert fuse_once([]) is None

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            KalmanFusionConfig(process_noise=-1.0)
        with pytest.raises(ValueError):
            KalmanFusionConfig(initial_covariance=0.0)
