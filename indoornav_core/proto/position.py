"""
Position and Measurement Schemas.

Defines the indoor position value type and the measurement contract
between signal estimators and the Kalman fusion filter.

Coordinates are metres in the building's floor-plan frame; floor is a
discrete level index and is never interpolated.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional
import math


class PositionSource(IntEnum):
    """Origin of a candidate position."""

    TRILATERATION = 0   # BLE ranging (lateration or weighted centroid)
    WIFI = 1            # Wi-Fi log-distance estimate
    FINGERPRINT = 2     # RSSI fingerprint match
    DEAD_RECKONING = 3  # Step/heading integration
    FALLBACK = 4        # Degraded source while recovering
    MANUAL = 5          # User-confirmed position


@dataclass(frozen=True)
class Position:
    """
    Location inside a building.

    Attributes:
        x: Floor-plan x coordinate (m)
        y: Floor-plan y coordinate (m)
        floor: Building level index
    """

    x: float
    y: float
    floor: int = 0

    def __post_init__(self):
        """Validate coordinates."""
        if not (math.isfinite(self.x) and math.isfinite(self.y)):
            raise ValueError(f"Position coordinates must be finite: ({self.x}, {self.y})")

    def distance_2d(self, other: "Position") -> float:
        """Planar distance ignoring floor."""
        return math.hypot(self.x - other.x, self.y - other.y)

    def distance_to(self, other: "Position", floor_penalty_m: float = 0.0) -> float:
        """
        Planar distance plus a fixed penalty when floors differ.

        Args:
            other: Position to measure to
            floor_penalty_m: Cost added once if floors differ

        Returns:
            Distance in metres (always finite)
        """
        distance = self.distance_2d(other)
        if self.floor != other.floor:
            distance += floor_penalty_m
        return distance

    def is_same_floor(self, other: "Position") -> bool:
        return self.floor == other.floor

    def offset(self, dx: float, dy: float) -> "Position":
        """Return a new position shifted in the plane, same floor."""
        return Position(self.x + dx, self.y + dy, self.floor)

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'floor': self.floor}

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(float(data['x']), float(data['y']), int(data.get('floor', 0)))


@dataclass(frozen=True)
class PositionMeasurement:
    """
    Candidate position handed to the fusion filter.

    Attributes:
        position: Estimated position
        accuracy: Inverse confidence in metres (lower is better)
        source: Which estimator produced it
        timestamp: Time of the newest input used (s), if known

    Notes:
        - Accuracy is not range-checked here: the filter sanitizes
          non-positive values so a bad estimator cannot corrupt covariance.
    """

    position: Position
    accuracy: float
    source: PositionSource = PositionSource.TRILATERATION
    timestamp: Optional[float] = None

    def __post_init__(self):
        """Validate measurement."""
        if math.isnan(self.accuracy):
            raise ValueError("Measurement accuracy cannot be NaN")

    def with_accuracy(self, accuracy: float) -> "PositionMeasurement":
        """Copy with a different accuracy (used for nominal source weighting)."""
        return PositionMeasurement(self.position, accuracy, self.source, self.timestamp)
