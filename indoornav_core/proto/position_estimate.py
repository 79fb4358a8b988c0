"""
Position Estimate Output Schema.

Defines the element of the outbound position stream produced once per
pipeline cycle by the fusion engine or, while recovering, by the
fallback source.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
from enum import IntEnum

from .position import Position, PositionSource


class FixType(IntEnum):
    """Type of position fix."""

    NO_FIX = 0          # No valid solution
    FIX = 1             # Fused from at least one absolute source
    HOLD = 2            # Dead reckoning only, within hold window
    FALLBACK = 3        # Degraded source while recovering
    MANUAL = 4          # User-confirmed position


@dataclass
class PositionEstimate:
    """
    Fused position estimate.

    Attributes:
        position: Fused position (last known for NO_FIX)
        accuracy: Estimated error in metres (lower is better)
        confidence: Confidence score (0-1, higher is better)
        fix_type: Type of fix (NO_FIX, FIX, HOLD, FALLBACK, MANUAL)
        timestamp: Time the estimate was produced (s)
        sources: Estimator sources that contributed
        num_emitters: Number of known emitters matched this cycle

    Notes:
        - For NO_FIX, confidence = 0
        - For FALLBACK, confidence decays with time since signal loss
    """

    position: Position
    accuracy: float
    confidence: float
    fix_type: FixType
    timestamp: float
    sources: Tuple[PositionSource, ...] = field(default_factory=tuple)
    num_emitters: int = 0

    def __post_init__(self):
        """Validate position estimate."""
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"Confidence must be in [0,1]: {self.confidence}")

        if self.accuracy < 0:
            raise ValueError(f"Accuracy cannot be negative: {self.accuracy}")

        if self.num_emitters < 0:
            raise ValueError(f"Emitter count cannot be negative: {self.num_emitters}")

    @property
    def has_valid_fix(self) -> bool:
        """Check if this is a usable position (not NO_FIX)."""
        return self.fix_type != FixType.NO_FIX

    @property
    def is_absolute(self) -> bool:
        """Check if an absolute radio source or the user confirmed it."""
        return self.fix_type in (FixType.FIX, FixType.MANUAL)

    @property
    def is_degraded(self) -> bool:
        return self.fix_type in (FixType.HOLD, FixType.FALLBACK)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': self.position.to_dict(),
            'accuracy': self.accuracy,
            'confidence': self.confidence,
            'fix_type': self.fix_type.name,
            'timestamp': self.timestamp,
            'sources': [s.name for s in self.sources],
            'num_emitters': self.num_emitters,
        }


def create_no_fix(
    timestamp: float,
    last_position: Optional[Position] = None,
) -> PositionEstimate:
    """
    Create a NO_FIX position estimate.

    Args:
        timestamp: Cycle time
        last_position: Last known position (default: origin, floor 0)

    Returns:
        PositionEstimate with NO_FIX
    """
    return PositionEstimate(
        position=last_position or Position(0.0, 0.0, 0),
        accuracy=0.0,
        confidence=0.0,
        fix_type=FixType.NO_FIX,
        timestamp=timestamp,
    )
