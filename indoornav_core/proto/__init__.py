"""
Protocol Module: Data schemas exchanged between pipeline stages.

- Positions, measurements and fused estimates
- Ranging readings and Wi-Fi scan results (emitter ids validated here)
- RSSI fingerprints
- Paths, instructions, progress and reroute events
- Recovery events
"""

from .position import (
    Position,
    PositionMeasurement,
    PositionSource,
)
from .position_estimate import (
    PositionEstimate,
    FixType,
    create_no_fix,
)
from .ranging import (
    RangingReading,
    WifiScanResult,
    normalize_emitter_id,
    rssi_to_distance,
    strongest_by_source,
    BLE_REFERENCE_RSSI_DBM,
    BLE_PATH_LOSS_EXPONENT,
    WIFI_REFERENCE_RSSI_DBM,
    WIFI_PATH_LOSS_EXPONENT,
)
from .fingerprint import Fingerprint
from .navigation import (
    Path,
    TransitionType,
    InstructionType,
    Direction,
    NavigationInstruction,
    NavigationProgress,
    RerouteEvent,
)
from .recovery_events import (
    Landmark,
    RecoveryEvent,
    PositionLostEvent,
    RecoveryProgressEvent,
    ManualRecoveryRequiredEvent,
    PositionRecoveredEvent,
)

__all__ = [
    # Positions
    'Position',
    'PositionMeasurement',
    'PositionSource',
    'PositionEstimate',
    'FixType',
    'create_no_fix',
    # Signals
    'RangingReading',
    'WifiScanResult',
    'normalize_emitter_id',
    'rssi_to_distance',
    'strongest_by_source',
    'BLE_REFERENCE_RSSI_DBM',
    'BLE_PATH_LOSS_EXPONENT',
    'WIFI_REFERENCE_RSSI_DBM',
    'WIFI_PATH_LOSS_EXPONENT',
    'Fingerprint',
    # Navigation
    'Path',
    'TransitionType',
    'InstructionType',
    'Direction',
    'NavigationInstruction',
    'NavigationProgress',
    'RerouteEvent',
    # Recovery
    'Landmark',
    'RecoveryEvent',
    'PositionLostEvent',
    'RecoveryProgressEvent',
    'ManualRecoveryRequiredEvent',
    'PositionRecoveredEvent',
]
