"""
Recovery Module: Signal-loss handling.

Key classes:
- PositionTracker: INACTIVE/INITIALIZING/ACTIVE/RECOVERING state machine
  with backoff retries and manual override
- FallbackPositionSource: Dead reckoning with decaying confidence
"""

from .fallback import (
    FallbackPositionSource,
    FallbackConfig,
)
from .tracker import (
    PositionTracker,
    RecoveryConfig,
    RecoveryPhase,
    TrackerState,
    LandmarkProvider,
    landmarks_within,
)

__all__ = [
    'FallbackPositionSource',
    'FallbackConfig',
    'PositionTracker',
    'RecoveryConfig',
    'RecoveryPhase',
    'TrackerState',
    'LandmarkProvider',
    'landmarks_within',
]
