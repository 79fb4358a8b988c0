"""
Kalman Fusion Filter.

Merges candidate positions from several estimators into one position.

State: [x, y] with a 2x2 error covariance; floor is tracked separately as
a discrete value chosen by accuracy-weighted vote.

Each update is a random-walk prediction (process noise on the diagonal)
followed by sequential per-axis measurement updates in list order:
    K = P / (P + R),  x += K * (z - x),  P *= (1 - K)
"""

from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass
import logging
import math

import numpy as np

from indoornav_core.proto.position import Position, PositionMeasurement
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class KalmanFusionConfig:
    """
    Configuration for the fusion filter.

    Attributes:
        process_noise: Added to each diagonal covariance term per update (m^2)
        initial_covariance: Diagonal covariance after reset (m^2)
        min_covariance: Covariance clamp (never below this, never negative)
        min_accuracy: Floor for measurement accuracy (sanitizes <= 0 / NaN)
    """

    process_noise: float = 0.01
    initial_covariance: float = 1.0
    min_covariance: float = 1e-6
    min_accuracy: float = 1e-3

    def __post_init__(self):
        """Validate configuration."""
        if self.process_noise < 0:
            raise ValueError("process_noise cannot be negative")
        if self.initial_covariance <= 0:
            raise ValueError("initial_covariance must be positive")
        if self.min_covariance <= 0:
            raise ValueError("min_covariance must be positive")
        if self.min_accuracy <= 0:
            raise ValueError("min_accuracy must be positive")


class KalmanFusionFilter:
    """
    Position fusion filter over heterogeneous measurements.

    Usage:
        kf = KalmanFusionFilter(config, metrics=metrics)

        fused = kf.update([
            PositionMeasurement(ble_pos, 2.0, PositionSource.TRILATERATION),
            PositionMeasurement(wifi_pos, 4.0, PositionSource.WIFI),
        ])

        kf.reset()                      # building switch
        kf.reset(confirmed_position)    # discontinuous jump (manual fix)

    Notes:
        - Not reentrant: callers serialize update() (single writer)
        - Floor ties resolve to the first floor seen in the measurement
          list; the rule is defined but arbitrary
    """

    def __init__(
        self,
        config: Optional[KalmanFusionConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or KalmanFusionConfig()
        self.metrics = metrics or MetricsCollector()

        self._state = np.zeros(2)
        self._covariance = np.eye(2) * self.config.initial_covariance
        self._floor = 0
        self._update_count = 0

    @property
    def state(self) -> Position:
        """Current estimate (origin, floor 0 before the first update)."""
        return Position(float(self._state[0]), float(self._state[1]), self._floor)

    @property
    def covariance(self) -> np.ndarray:
        """Copy of the 2x2 error covariance."""
        return self._covariance.copy()

    @property
    def floor(self) -> int:
        return self._floor

    @property
    def uncertainty_m(self) -> float:
        """Horizontal RMS uncertainty (m)."""
        return float(np.sqrt(self._covariance[0, 0] + self._covariance[1, 1]))

    @property
    def update_count(self) -> int:
        return self._update_count

    def update(self, measurements: Sequence[PositionMeasurement]) -> Optional[Position]:
        """
        Fuse a batch of measurements.

        Args:
            measurements: Candidates in the order they should be applied

        Returns:
            Fused position, or None if measurements is empty
        """
        if not measurements:
            return None

        self._predict()

        for measurement in measurements:
            accuracy = self._sanitize_accuracy(measurement.accuracy)
            z = np.array([measurement.position.x, measurement.position.y])

            for axis in range(2):
                p = self._covariance[axis, axis]
                gain = p / (p + accuracy)
                self._state[axis] += gain * (z[axis] - self._state[axis])
                self._covariance[axis, axis] = self._clamp_covariance(p * (1.0 - gain))

        self._floor = self._vote_floor(measurements)
        self._update_count += 1

        self.metrics.increment('kalman_updates')
        self.metrics.record_histogram('kalman_uncertainty_m', self.uncertainty_m)

        return self.state

    def reset(self, position: Optional[Position] = None):
        """
        Reset state and covariance.

        Args:
            position: Seed state at this position instead of the origin
        """
        if position is None:
            self._state = np.zeros(2)
            self._floor = 0
        else:
            self._state = np.array([position.x, position.y], dtype=float)
            self._floor = position.floor
        self._covariance = np.eye(2) * self.config.initial_covariance
        self._update_count = 0
        self.metrics.increment('kalman_resets')

    def _predict(self):
        """Random-walk prediction: add process noise to the diagonal."""
        for axis in range(2):
            self._covariance[axis, axis] += self.config.process_noise

    def _sanitize_accuracy(self, accuracy: float) -> float:
        if not math.isfinite(accuracy) or accuracy < self.config.min_accuracy:
            logger.debug(f"Sanitizing measurement accuracy {accuracy}")
            return self.config.min_accuracy
        return accuracy

    def _clamp_covariance(self, value: float) -> float:
        if not math.isfinite(value) or value < self.config.min_covariance:
            return self.config.min_covariance
        return value

    def _vote_floor(self, measurements: Sequence[PositionMeasurement]) -> int:
        """Accuracy-weighted floor vote; first-encountered floor wins ties."""
        votes: Dict[int, float] = {}
        for measurement in measurements:
            weight = 1.0 / self._sanitize_accuracy(measurement.accuracy)
            floor = measurement.position.floor
            votes[floor] = votes.get(floor, 0.0) + weight

        best_floor = self._floor
        best_vote = -1.0
        for floor, vote in votes.items():
            if vote > best_vote:
                best_floor, best_vote = floor, vote
        return best_floor


def fuse_once(
    measurements: List[PositionMeasurement],
    config: Optional[KalmanFusionConfig] = None,
) -> Optional[Position]:
    """
    Fuse a batch with a fresh filter seeded at the first measurement.

    Stateless helper for recovery probes; the pipeline filter is untouched.
    """
    if not measurements:
        return None
    kf = KalmanFusionFilter(config, metrics=MetricsCollector())
    kf.reset(measurements[0].position)
    return kf.update(measurements)
