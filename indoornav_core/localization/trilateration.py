"""
Trilateration / Weighted-Centroid Estimator.

Turns BLE ranging readings matched to known emitters into a candidate
position:
- >= 3 emitters: linear least-squares multilateration (circle equations
  differenced against a reference emitter), optionally refined with
  Gauss-Newton on the true range residuals
- 1-2 emitters, or degenerate geometry: inverse-square-distance weighted
  centroid

Degenerate geometry is reported as an explicit LaterationResult status
instead of an exception, so callers must handle the fallback case.
"""

from dataclasses import dataclass
from enum import IntEnum
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.proto.ranging import RangingReading, strongest_by_source
from indoornav_core.localization.emitter_registry import EmitterRegistry, EmitterKind
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class LaterationStatus(IntEnum):
    """Outcome of a lateration solve."""

    SOLVED = 0          # Well-conditioned solution
    DEGENERATE = 1      # Near-singular geometry, use fallback
    INSUFFICIENT = 2    # Fewer than 3 emitters


@dataclass(frozen=True)
class LaterationResult:
    """
    Result of a lateration solve.

    Attributes:
        status: SOLVED, DEGENERATE or INSUFFICIENT
        x, y: Solution (only meaningful when SOLVED)
        residual_m: RMS of |p - e_i| - d_i at the solution (m)
        condition_number: Conditioning of the differenced system
        geometry_score: Emitter spread health (0 degenerate, 1 good)
    """

    status: LaterationStatus
    x: float = 0.0
    y: float = 0.0
    residual_m: float = 0.0
    condition_number: float = float('inf')
    geometry_score: float = 0.0

    @property
    def is_solved(self) -> bool:
        return self.status == LaterationStatus.SOLVED

    @property
    def requires_fallback(self) -> bool:
        return self.status != LaterationStatus.SOLVED


@dataclass
class TrilaterationConfig:
    """
    Configuration for the trilateration estimator.

    Attributes:
        min_emitters: Emitters needed for lateration
        max_emitters: Use at most this many (nearest first)
        distance_floor_m: Minimum distance for centroid weights (m)
        max_condition_number: Above this the system is degenerate
        min_geometry_score: Below this the emitter spread is degenerate
        refine_iterations: Gauss-Newton refinement steps (0 disables)
        convergence_tol_m: Refinement stops below this step size (m)
        min_accuracy_m / max_accuracy_m: Clamp for residual-based accuracy
        centroid_accuracy_m: Accuracy reported for centroid results
    """

    min_emitters: int = 3
    max_emitters: int = 8
    distance_floor_m: float = 0.1
    max_condition_number: float = 1000.0
    min_geometry_score: float = 0.01
    refine_iterations: int = 10
    convergence_tol_m: float = 0.01
    min_accuracy_m: float = 1.0
    max_accuracy_m: float = 10.0
    centroid_accuracy_m: float = 5.0

    def __post_init__(self):
        """Validate configuration."""
        if self.min_emitters < 3:
            raise ValueError("Lateration needs at least 3 emitters")
        if self.max_emitters < self.min_emitters:
            raise ValueError("max_emitters must be >= min_emitters")
        if self.distance_floor_m <= 0:
            raise ValueError("distance_floor must be positive")
        if self.min_accuracy_m > self.max_accuracy_m:
            raise ValueError("min_accuracy must not exceed max_accuracy")


class TrilaterationEstimator:
    """
    Estimate position from BLE ranging readings.

    Usage:
        estimator = TrilaterationEstimator(config, metrics=metrics)

        measurement = estimator.estimate(readings, registry)
        if measurement is not None:
            print(measurement.position, measurement.accuracy)

        # Or solve directly from coordinates
        result = estimator.solve_lateration([(0, 0), (10, 0), (0, 10)], [7.07] * 3)
        if result.requires_fallback:
            ...
    """

    def __init__(
        self,
        config: Optional[TrilaterationConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or TrilaterationConfig()
        self.metrics = metrics or MetricsCollector()

    def estimate(
        self,
        readings: Sequence[RangingReading],
        registry: EmitterRegistry,
    ) -> Optional[PositionMeasurement]:
        """
        Estimate position from readings matched against known emitters.

        Args:
            readings: Gated BLE readings
            registry: Known emitter positions

        Returns:
            PositionMeasurement, or None if no reading matches a known emitter

        Notes:
            - Floor is chosen first by 1/d^2-weighted vote; only emitters
              on that floor take part in the planar solve
            - Degenerate lateration falls back to weighted centroid
        """
        self.metrics.increment('trilateration_attempts')

        best = strongest_by_source(readings)
        matched = registry.match(best.values(), kind=EmitterKind.BLE)
        if not matched:
            self.metrics.increment_drop('no_known_emitters')
            return None

        floor = self._vote_floor(matched)
        on_floor = [(e, r) for e, r in matched if e.position.floor == floor]
        on_floor.sort(key=lambda pair: pair[1].estimated_distance)
        on_floor = on_floor[:self.config.max_emitters]

        points = [(e.position.x, e.position.y) for e, _ in on_floor]
        distances = [r.estimated_distance for _, r in on_floor]
        timestamp = max(r.timestamp for _, r in on_floor)

        if len(on_floor) >= self.config.min_emitters:
            result = self.solve_lateration(points, distances)
            if result.is_solved:
                accuracy = float(np.clip(
                    result.residual_m, self.config.min_accuracy_m, self.config.max_accuracy_m
                ))
                self.metrics.increment('trilateration_solved')
                self.metrics.record_histogram('trilateration_residual_m', result.residual_m)
                return PositionMeasurement(
                    Position(result.x, result.y, floor),
                    accuracy,
                    PositionSource.TRILATERATION,
                    timestamp,
                )

            self.metrics.increment_drop('degenerate_geometry')
            logger.debug(
                f"Degenerate lateration (cond={result.condition_number:.1f}, "
                f"geometry={result.geometry_score:.3f}), using weighted centroid"
            )

        x, y = self.weighted_centroid(points, distances)
        self.metrics.increment('trilateration_centroid')
        return PositionMeasurement(
            Position(x, y, floor),
            self.config.centroid_accuracy_m,
            PositionSource.TRILATERATION,
            timestamp,
        )

    def solve_lateration(
        self,
        points: Sequence[Tuple[float, float]],
        distances: Sequence[float],
    ) -> LaterationResult:
        """
        Solve 2D multilateration by linear least squares.

        Each circle |p - e_i|^2 = d_i^2 is differenced against the last
        emitter (reference n), giving rows
            2(e_i - e_n) . p = |e_i|^2 - |e_n|^2 + d_n^2 - d_i^2

        Args:
            points: Emitter (x, y) coordinates
            distances: Measured distances (same order)

        Returns:
            LaterationResult with explicit status
        """
        if len(points) != len(distances):
            raise ValueError("points and distances must have the same length")

        if len(points) < self.config.min_emitters:
            return LaterationResult(LaterationStatus.INSUFFICIENT)

        pts = np.asarray(points, dtype=float)
        d = np.asarray(distances, dtype=float)

        geometry_score = self._compute_geometry_score(pts)
        if geometry_score < self.config.min_geometry_score:
            return LaterationResult(LaterationStatus.DEGENERATE, geometry_score=geometry_score)

        ref = pts[-1]
        A = 2.0 * (pts[:-1] - ref)
        b = (
            np.sum(pts[:-1] ** 2, axis=1) - np.sum(ref ** 2)
            + d[-1] ** 2 - d[:-1] ** 2
        )

        try:
            solution, _, rank, singular_values = np.linalg.lstsq(A, b, rcond=None)
        except np.linalg.LinAlgError:
            return LaterationResult(LaterationStatus.DEGENERATE, geometry_score=geometry_score)

        if rank < 2 or singular_values[-1] <= 0:
            return LaterationResult(LaterationStatus.DEGENERATE, geometry_score=geometry_score)

        condition_number = float(singular_values[0] / singular_values[-1])
        if condition_number > self.config.max_condition_number:
            return LaterationResult(
                LaterationStatus.DEGENERATE,
                condition_number=condition_number,
                geometry_score=geometry_score,
            )

        x = self._refine(solution, pts, d)
        residual = self._rms_residual(x, pts, d)

        return LaterationResult(
            LaterationStatus.SOLVED,
            x=float(x[0]),
            y=float(x[1]),
            residual_m=residual,
            condition_number=condition_number,
            geometry_score=geometry_score,
        )

    def weighted_centroid(
        self,
        points: Sequence[Tuple[float, float]],
        distances: Sequence[float],
    ) -> Tuple[float, float]:
        """
        Inverse-square-distance weighted centroid.

        weight_i = 1 / max(d_i, distance_floor)^2
        """
        if not points:
            raise ValueError("weighted_centroid needs at least one point")

        pts = np.asarray(points, dtype=float)
        d = np.maximum(np.asarray(distances, dtype=float), self.config.distance_floor_m)
        weights = 1.0 / d ** 2
        centroid = weights @ pts / np.sum(weights)
        return float(centroid[0]), float(centroid[1])

    def _refine(self, x0: np.ndarray, pts: np.ndarray, d: np.ndarray) -> np.ndarray:
        """Gauss-Newton on range residuals; keeps x0 if refinement does not help."""
        x = np.array(x0, dtype=float)
        start_residual = self._rms_residual(x, pts, d)

        for _ in range(self.config.refine_iterations):
            diff = x - pts
            ranges = np.linalg.norm(diff, axis=1)
            if np.any(ranges < 1e-6):
                break
            residuals = ranges - d
            jacobian = diff / ranges[:, None]

            JTJ = jacobian.T @ jacobian
            JTr = jacobian.T @ residuals
            try:
                delta = np.linalg.solve(JTJ + 1e-6 * np.eye(2), -JTr)
            except np.linalg.LinAlgError:
                break

            x = x + delta
            if np.linalg.norm(delta) < self.config.convergence_tol_m:
                break

        if not np.all(np.isfinite(x)) or self._rms_residual(x, pts, d) > start_residual:
            return np.array(x0, dtype=float)
        return x

    @staticmethod
    def _rms_residual(x: np.ndarray, pts: np.ndarray, d: np.ndarray) -> float:
        ranges = np.linalg.norm(x - pts, axis=1)
        return float(np.sqrt(np.mean((ranges - d) ** 2)))

    @staticmethod
    def _compute_geometry_score(pts: np.ndarray) -> float:
        """
        Compute geometry health score (0-1).

        Best triangle shape quality over any three emitters:
            q = 4 * sqrt(3) * area / (a^2 + b^2 + c^2)
        which is 1 for an equilateral triangle and 0 for collinear
        emitters. The ratio does not depend on triangle size, so a 1 m
        layout scores the same as a 100 m one.
        """
        best = 0.0
        for i, j, k in combinations(range(len(pts)), 3):
            p0, p1, p2 = pts[i], pts[j], pts[k]
            area = 0.5 * abs((p1[0] - p0[0]) * (p2[1] - p0[1]) -
                             (p2[0] - p0[0]) * (p1[1] - p0[1]))
            sides_sq = (
                np.sum((p1 - p0) ** 2) + np.sum((p2 - p1) ** 2) + np.sum((p0 - p2) ** 2)
            )
            if sides_sq <= 0:
                continue
            best = max(best, 4.0 * np.sqrt(3.0) * area / sides_sq)

        return float(np.clip(best, 0.0, 1.0))

    def _vote_floor(self, matched: List) -> int:
        """1/d^2-weighted floor vote; first-encountered floor wins ties."""
        votes: Dict[int, float] = {}
        for emitter, reading in matched:
            d = max(reading.estimated_distance, self.config.distance_floor_m)
            floor = emitter.position.floor
            votes[floor] = votes.get(floor, 0.0) + 1.0 / d ** 2
        best_floor, best_vote = None, -1.0
        for floor, vote in votes.items():
            if vote > best_vote:
                best_floor, best_vote = floor, vote
        return best_floor


def create_default_estimator(metrics: Optional[MetricsCollector] = None) -> TrilaterationEstimator:
    """
    Create trilateration estimator with default configuration.

    Returns:
        Configured TrilaterationEstimator
    """
    return TrilaterationEstimator(TrilaterationConfig(), metrics=metrics)
