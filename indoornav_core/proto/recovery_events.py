"""
Recovery Event Schemas.

Events emitted by the recovery state machine for UI-layer handling.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import time

from .position import Position


@dataclass(frozen=True)
class Landmark:
    """
    Named point a user can recognise to confirm their position.

    Attributes:
        id: Landmark identifier
        name: Display name
        position: Landmark location
        description: Optional hint text
    """

    id: str
    name: str
    position: Position
    description: str = ""


class RecoveryEvent:
    """Base class for recovery events."""


@dataclass(frozen=True)
class PositionLostEvent(RecoveryEvent):
    """Tracking lost; last known position and nearby landmarks for disambiguation."""

    last_known_position: Optional[Position]
    nearby_landmarks: Tuple[Landmark, ...] = ()
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecoveryProgressEvent(RecoveryEvent):
    """An automatic recovery attempt failed; more may follow."""

    attempt: int
    max_attempts: int
    next_delay_s: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ManualRecoveryRequiredEvent(RecoveryEvent):
    """Automatic attempts exhausted; a user-confirmed position is needed."""

    last_known_position: Optional[Position]
    nearby_landmarks: Tuple[Landmark, ...] = ()
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PositionRecoveredEvent(RecoveryEvent):
    """Tracking resumed."""

    position: Position
    manual: bool = False
    attempt: int = 0
    timestamp: float = field(default_factory=time.time)
