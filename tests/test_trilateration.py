"""
Unit tests for trilateration and weighted-centroid estimation.

Tests cover:
- Linear least-squares lateration on known geometry
- Degenerate (collinear) geometry reported as an explicit status
- Weighted-centroid fallback for 1-2 emitters
- Floor vote and unknown emitter handling
"""

import math
from typing import List

import pytest

from indoornav_core.proto.position import Position, PositionSource
from indoornav_core.proto.ranging import RangingReading
from indoornav_core.localization.emitter_registry import EmitterRegistry, KnownEmitter
from indoornav_core.localization.trilateration import (
    LaterationStatus,
    TrilaterationConfig,
    TrilaterationEstimator,
    create_default_estimator,
)
from tests.conftest import distance_2d


def _readings(distances: dict, timestamp: float = 10.0) -> List[RangingReading]:
    return [RangingReading(source_id, -70, d, timestamp) for source_id, d in distances.items()]


class TestSolveLateration:
    """Tests for the coordinate-level solver."""

    def test_triangle_centre(self):
        """
        Test lateration with three emitters equidistant from (5, 5).

        Emitters at (0,0), (10,0), (0,10) all see the point at 7.07 m.
        """
        estimator = TrilaterationEstimator()
        result = estimator.solve_lateration([(0, 0), (10, 0), (0, 10)], [7.07, 7.07, 7.07])

        assert result.status == LaterationStatus.SOLVED
        assert abs(result.x - 5.0) < 0.5, f"X error: {result.x}"
        assert abs(result.y - 5.0) < 0.5, f"Y error: {result.y}"
        assert result.residual_m < 0.1

    def test_overdetermined_exact(self):
        """Test that four corner emitters with exact ranges recover the point."""
        estimator = TrilaterationEstimator()
        corners = [(0.0, 0.0), (20.0, 0.0), (0.0, 20.0), (20.0, 20.0)]
        target = (6.0, 13.0)
        distances = [math.hypot(target[0] - x, target[1] - y) for x, y in corners]

        result = estimator.solve_lateration(corners, distances)

        assert result.is_solved
        assert result.x == pytest.approx(target[0], abs=0.01)
        assert result.y == pytest.approx(target[1], abs=0.01)

    def test_collinear_is_degenerate(self):
        """Test that collinear emitters yield DEGENERATE, not an exception."""
        estimator = TrilaterationEstimator()
        result = estimator.solve_lateration([(0, 0), (5, 0), (10, 0)], [5.0, 1.0, 5.0])

        assert result.status == LaterationStatus.DEGENERATE
        assert result.requires_fallback
        assert result.geometry_score < 0.01

    def test_insufficient_points(self):
        """Test that fewer than three emitters report INSUFFICIENT."""
        estimator = TrilaterationEstimator()
        result = estimator.solve_lateration([(0, 0), (10, 0)], [5.0, 5.0])

        assert result.status == LaterationStatus.INSUFFICIENT

    def test_mismatched_lengths_raise(self):
        """Test that points and distances must pair up."""
        with pytest.raises(ValueError):
            TrilaterationEstimator().solve_lateration([(0, 0), (10, 0), (0, 10)], [1.0, 2.0])

    def test_geometry_score_ignores_scale(self):
        """Test that the same triangle shape scores the same at any size."""
        estimator = TrilaterationEstimator()
        small = estimator.solve_lateration([(0, 0), (2, 0), (0, 2)], [1.0, 1.0, 1.0])
        large = estimator.solve_lateration([(0, 0), (20, 0), (0, 20)], [10.0, 10.0, 10.0])

        assert small.geometry_score == pytest.approx(large.geometry_score)
        assert small.geometry_score == pytest.approx(math.sqrt(3.0) / 2.0)

    def test_geometry_score_prefers_even_spread(self):
        """Test that a flattened triangle scores below an equilateral one."""
        estimator = TrilaterationEstimator()
        even = estimator.solve_lateration([(0, 0), (10, 0), (5, 5 * math.sqrt(3.0))], [5.0] * 3)
        flat = estimator.solve_lateration([(0, 0), (10, 0), (5, 1)], [5.0] * 3)

        assert even.geometry_score == pytest.approx(1.0)
        assert flat.geometry_score < 0.5 * even.geometry_score

    def test_small_room_is_solved(self):
        """Test that a 1 m emitter triangle still laterates."""
        estimator = TrilaterationEstimator()
        points = [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)]
        distances = [math.hypot(0.3 - x, 0.3 - y) for x, y in points]

        result = estimator.solve_lateration(points, distances)

        assert result.status == LaterationStatus.SOLVED
        assert result.x == pytest.approx(0.3, abs=0.01)
        assert result.y == pytest.approx(0.3, abs=0.01)


class TestWeightedCentroid:
    """Tests for the inverse-square centroid."""

    def test_equal_distances_give_mean(self):
        """Test that equal distances weight emitters equally."""
        x, y = TrilaterationEstimator().weighted_centroid([(0, 0), (10, 0)], [5.0, 5.0])
        assert x == pytest.approx(5.0)
        assert y == pytest.approx(0.0)

    def test_nearer_emitter_dominates(self):
        """Test 1/d^2 weighting pulls towards the nearer emitter."""
        x, _ = TrilaterationEstimator().weighted_centroid([(0, 0), (10, 0)], [1.0, 9.0])
        assert x == pytest.approx(10.0 / 82.0)

    def test_empty_input_raises(self):
        """Test that the centroid of nothing is an error."""
        with pytest.raises(ValueError):
            TrilaterationEstimator().weighted_centroid([], [])


class TestEstimate:
    """Tests for estimate() on readings matched to known emitters."""

    def test_triangle_estimate(self, triangle_registry, metrics):
        """Test a full estimate from three readings."""
        estimator = TrilaterationEstimator(metrics=metrics)
        measurement = estimator.estimate(
            _readings({"B0": 7.07, "B1": 7.07, "B2": 7.07}), triangle_registry
        )

        assert measurement is not None
        assert measurement.source == PositionSource.TRILATERATION
        assert distance_2d(measurement.position, Position(5.0, 5.0)) < 0.5
        assert measurement.position.floor == 0
        assert measurement.timestamp == 10.0
        assert 1.0 <= measurement.accuracy <= 10.0
        assert metrics.get_counter('trilateration_solved') == 1

    def test_two_emitters_use_centroid(self, triangle_registry):
        """Test that two emitters fall back to the centroid with fixed accuracy."""
        estimator = TrilaterationEstimator()
        measurement = estimator.estimate(_readings({"B0": 5.0, "B1": 5.0}), triangle_registry)

        assert measurement.position.x == pytest.approx(5.0)
        assert measurement.position.y == pytest.approx(0.0)
        assert measurement.accuracy == pytest.approx(5.0)

    def test_collinear_emitters_fall_back(self, metrics):
        """Test degenerate geometry falls back to the centroid and is counted."""
        registry = EmitterRegistry([
            KnownEmitter("L0", Position(0.0, 0.0)),
            KnownEmitter("L1", Position(5.0, 0.0)),
            KnownEmitter("L2", Position(10.0, 0.0)),
        ])
        estimator = TrilaterationEstimator(metrics=metrics)
        measurement = estimator.estimate(_readings({"L0": 4.0, "L1": 4.0, "L2": 4.0}), registry)

        assert measurement is not None
        assert measurement.position.x == pytest.approx(5.0)
        assert measurement.position.y == pytest.approx(0.0)
        assert metrics.get_drop_count('degenerate_geometry') == 1

    def test_unknown_emitters_only(self, triangle_registry, metrics):
        """Test that readings from unknown emitters give no estimate."""
        estimator = TrilaterationEstimator(metrics=metrics)
        measurement = estimator.estimate(_readings({"X1": 3.0, "X2": 4.0}), triangle_registry)

        assert measurement is None
        assert metrics.get_drop_count('no_known_emitters') == 1

    def test_unknown_emitters_ignored(self, triangle_registry):
        """Test that unknown ids alongside known ones do not disturb the solve."""
        estimator = TrilaterationEstimator()
        measurement = estimator.estimate(
            _readings({"B0": 7.07, "B1": 7.07, "B2": 7.07, "stranger": 0.5}), triangle_registry
        )
        assert distance_2d(measurement.position, Position(5.0, 5.0)) < 0.5

    def test_floor_vote_uses_nearest_floor(self, triangle_registry):
        """Test that a much closer emitter on another floor wins the vote."""
        triangle_registry.add(KnownEmitter("UP", Position(5.0, 5.0, 1)))
        estimator = TrilaterationEstimator()
        measurement = estimator.estimate(
            _readings({"B0": 7.07, "B1": 7.07, "B2": 7.07, "UP": 0.5}), triangle_registry
        )

        assert measurement.position.floor == 1
        # Only the single floor-1 emitter takes part
        assert measurement.position.x == pytest.approx(5.0)
        assert measurement.position.y == pytest.approx(5.0)

    def test_strongest_reading_per_emitter(self, triangle_registry):
        """Test that repeated readings collapse to the strongest one."""
        readings = _readings({"B0": 7.07, "B1": 7.07, "B2": 7.07})
        readings.append(RangingReading("B0", -95, 40.0, 9.0))
        measurement = TrilaterationEstimator().estimate(readings, triangle_registry)

        assert distance_2d(measurement.position, Position(5.0, 5.0)) < 0.5


class TestConfig:
    """Tests for configuration validation."""

    def test_min_emitters_at_least_three(self):
        """Test that lateration cannot be configured below three emitters."""
        with pytest.raises(ValueError):
            TrilaterationConfig(min_emitters=2)

    def test_accuracy_bounds(self):
        """Test that the accuracy clamp must be ordered."""
        with pytest.raises(ValueError):
            TrilaterationConfig(min_accuracy_m=5.0, max_accuracy_m=1.0)

    def test_default_factory(self):
        """Test the default factory."""
        estimator = create_default_estimator()
        assert estimator.config.max_condition_number == 1000.0
