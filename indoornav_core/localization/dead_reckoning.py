"""
Dead-Reckoning Integrator (pedestrian step + heading).

Integrates detected steps along the current heading into an offset from
a base position. The base is re-anchored whenever a better fix becomes
available, which bounds drift.

Heading convention: radians clockwise from north (+y), so a step adds
(L*sin(h), L*cos(h)).

Reference: Android sensor frame (x east, y north, z up when flat) for
the orientation helpers.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import logging
import math

import numpy as np

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class DeadReckoningConfig:
    """
    Configuration for dead reckoning.

    Attributes:
        step_threshold: Rise in |a| between samples that counts as a step (m/s^2)
        min_step_interval_s: Debounce between steps (s)
        step_length_m: Stride length (m)
        base_accuracy_m: Accuracy right after a reset (m)
        accuracy_growth_per_step_m: Accuracy degradation per step (m)
        max_accuracy_m: Upper bound on reported accuracy (m)
    """

    step_threshold: float = 1.0
    min_step_interval_s: float = 0.25
    step_length_m: float = 0.75
    base_accuracy_m: float = 6.0
    accuracy_growth_per_step_m: float = 0.1
    max_accuracy_m: float = 20.0

    def __post_init__(self):
        """Validate configuration."""
        if self.step_threshold <= 0:
            raise ValueError("step_threshold must be positive")
        if self.min_step_interval_s < 0:
            raise ValueError("min_step_interval cannot be negative")
        if self.step_length_m <= 0:
            raise ValueError("step_length must be positive")
        if self.max_accuracy_m < self.base_accuracy_m:
            raise ValueError("max_accuracy must be >= base_accuracy")


def heading_from_orientation(
    gravity: Sequence[float],
    magnetic: Sequence[float],
) -> Optional[float]:
    """
    Tilt-compensated azimuth from accelerometer and magnetometer vectors.

    Builds the device rotation matrix the way Android's
    SensorManager.getRotationMatrix does and returns its azimuth.

    Args:
        gravity: Accelerometer (ax, ay, az), device frame
        magnetic: Magnetometer (mx, my, mz), device frame

    Returns:
        Heading in radians [-pi, pi], or None in free fall or near the
        magnetic pole (ill-defined)
    """
    a = np.asarray(gravity, dtype=float)
    e = np.asarray(magnetic, dtype=float)

    h = np.cross(e, a)
    norm_h = np.linalg.norm(h)
    norm_a = np.linalg.norm(a)
    if norm_h < 0.1 or norm_a < 1e-6:
        return None

    h /= norm_h
    a = a / norm_a
    m = np.cross(a, h)
    return float(math.atan2(h[1], m[1]))


def heading_from_rotation_vector(
    qx: float,
    qy: float,
    qz: float,
    qw: Optional[float] = None,
) -> float:
    """
    Azimuth from a rotation-vector sensor sample (unit quaternion).

    Args:
        qx, qy, qz: Vector part
        qw: Scalar part (derived from the unit norm if omitted)

    Returns:
        Heading in radians [-pi, pi]
    """
    if qw is None:
        qw = math.sqrt(max(0.0, 1.0 - qx * qx - qy * qy - qz * qz))

    # Rows 0 and 1, column 1 of the rotation matrix
    r1 = 2 * qx * qy - 2 * qz * qw
    r4 = 1 - 2 * qx * qx - 2 * qz * qz
    return float(math.atan2(r1, r4))


class DeadReckoningIntegrator:
    """
    Step-and-heading position integrator.

    Usage:
        dr = DeadReckoningIntegrator(config, metrics=metrics)
        dr.set_initial_position(Position(0, 0, 1))

        dr.update_heading(math.radians(90))
        dr.process_accelerometer(ax, ay, az, t)   # True when a step is registered

        dr.current_position   # base + offset
        dr.accuracy           # grows with steps since reset
        dr.reset(fused_fix)   # re-anchor when a better fix arrives
    """

    def __init__(
        self,
        config: Optional[DeadReckoningConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or DeadReckoningConfig()
        self.metrics = metrics or MetricsCollector()

        self._base: Optional[Position] = None
        self._offset_x = 0.0
        self._offset_y = 0.0
        self._heading = 0.0
        self._step_count = 0
        self._total_steps = 0
        self._last_magnitude: Optional[float] = None
        self._last_step_time: Optional[float] = None

    @property
    def is_anchored(self) -> bool:
        return self._base is not None

    @property
    def base_position(self) -> Optional[Position]:
        return self._base

    @property
    def heading(self) -> float:
        return self._heading

    @property
    def offset(self) -> Tuple[float, float]:
        """Accumulated (dx, dy) since the last reset."""
        return (self._offset_x, self._offset_y)

    @property
    def steps_since_reset(self) -> int:
        return self._step_count

    @property
    def total_steps(self) -> int:
        return self._total_steps

    @property
    def current_position(self) -> Optional[Position]:
        """Base + offset on the base floor, or None before anchoring."""
        if self._base is None:
            return None
        return self._base.offset(self._offset_x, self._offset_y)

    @property
    def accuracy(self) -> float:
        """Accuracy estimate; non-decreasing between resets."""
        accuracy = (
            self.config.base_accuracy_m
            + self._step_count * self.config.accuracy_growth_per_step_m
        )
        return min(accuracy, self.config.max_accuracy_m)

    def set_initial_position(self, position: Position):
        """Anchor the integrator (keeps heading and step detector state)."""
        self.reset(position)

    def update_position(self, position: Position):
        """Re-anchor from an external fix."""
        self.reset(position)

    def reset(self, reference: Optional[Position] = None):
        """
        Re-anchor base position and zero offset and step count.

        Args:
            reference: New base (None leaves the integrator unanchored)
        """
        self._base = reference
        self._offset_x = 0.0
        self._offset_y = 0.0
        self._step_count = 0
        self.metrics.increment('dead_reckoning_resets')

    def update_heading(self, heading_rad: float):
        """Set heading in radians, clockwise from north."""
        if math.isfinite(heading_rad):
            self._heading = heading_rad

    def update_orientation(self, gravity: Sequence[float], magnetic: Sequence[float]) -> bool:
        """Derive heading from accelerometer + magnetometer; False if ill-defined."""
        heading = heading_from_orientation(gravity, magnetic)
        if heading is None:
            return False
        self._heading = heading
        return True

    def process_accelerometer(self, ax: float, ay: float, az: float, timestamp: float) -> bool:
        """
        Feed one accelerometer sample.

        A step is registered when the magnitude rises by more than
        step_threshold since the previous sample and at least
        min_step_interval_s has passed since the last step.

        Args:
            ax, ay, az: Acceleration (m/s^2)
            timestamp: Sample time (s)

        Returns:
            True if a step was registered
        """
        magnitude = math.sqrt(ax * ax + ay * ay + az * az)
        previous = self._last_magnitude
        self._last_magnitude = magnitude

        if previous is None:
            return False

        if (self._last_step_time is not None and
                timestamp - self._last_step_time < self.config.min_step_interval_s):
            return False

        if magnitude - previous > self.config.step_threshold:
            self._last_step_time = timestamp
            self.register_step()
            return True

        return False

    def register_step(self, step_length_m: Optional[float] = None):
        """Advance one step along the current heading."""
        length = step_length_m if step_length_m is not None else self.config.step_length_m
        self._offset_x += length * math.sin(self._heading)
        self._offset_y += length * math.cos(self._heading)
        self._step_count += 1
        self._total_steps += 1
        self.metrics.increment('dead_reckoning_steps')

    def get_measurement(self, timestamp: Optional[float] = None) -> Optional[PositionMeasurement]:
        """Current position as a fusion measurement, or None before anchoring."""
        position = self.current_position
        if position is None:
            return None
        return PositionMeasurement(position, self.accuracy, PositionSource.DEAD_RECKONING, timestamp)
