"""
Localization Module: Signal estimators and multi-source fusion.

Key classes:
- EmitterRegistry: Known beacon/AP positions
- ReadingGate: Staleness and outlier rejection for ranging readings
- TrilaterationEstimator: Least-squares lateration with centroid fallback
- WifiPositionEstimator: Log-distance Wi-Fi estimate
- FingerprintMatcher: Weighted k-NN RSSI fingerprint matching
- DeadReckoningIntegrator: Step detection and heading integration
- KalmanFusionFilter: Per-axis Kalman fusion with floor voting
- PositionFusionEngine: Per-tick pipeline tying the above together
"""

from .emitter_registry import (
    EmitterRegistry,
    EmitterKind,
    KnownEmitter,
)
from .reading_gate import (
    ReadingGate,
    ReadingGateConfig,
)
from .trilateration import (
    TrilaterationEstimator,
    TrilaterationConfig,
    LaterationResult,
    LaterationStatus,
    create_default_estimator,
)
from .wifi_estimator import (
    WifiPositionEstimator,
    WifiEstimatorConfig,
)
from .fingerprint_matcher import (
    FingerprintMatcher,
    FingerprintMatcherConfig,
    FingerprintMatch,
    FingerprintStore,
    InMemoryFingerprintStore,
    signature_distance,
)
from .dead_reckoning import (
    DeadReckoningIntegrator,
    DeadReckoningConfig,
    heading_from_orientation,
    heading_from_rotation_vector,
)
from .kalman_fusion import (
    KalmanFusionFilter,
    KalmanFusionConfig,
    fuse_once,
)
from .fusion_engine import (
    PositionFusionEngine,
    FusionEngineConfig,
    estimate_accuracy,
    estimate_confidence,
    create_default_engine,
)

__all__ = [
    # Emitters and gating
    'EmitterRegistry',
    'EmitterKind',
    'KnownEmitter',
    'ReadingGate',
    'ReadingGateConfig',
    # Estimators
    'TrilaterationEstimator',
    'TrilaterationConfig',
    'LaterationResult',
    'LaterationStatus',
    'create_default_estimator',
    'WifiPositionEstimator',
    'WifiEstimatorConfig',
    'FingerprintMatcher',
    'FingerprintMatcherConfig',
    'FingerprintMatch',
    'FingerprintStore',
    'InMemoryFingerprintStore',
    'signature_distance',
    'DeadReckoningIntegrator',
    'DeadReckoningConfig',
    'heading_from_orientation',
    'heading_from_rotation_vector',
    # Fusion
    'KalmanFusionFilter',
    'KalmanFusionConfig',
    'fuse_once',
    'PositionFusionEngine',
    'FusionEngineConfig',
    'estimate_accuracy',
    'estimate_confidence',
    'create_default_engine',
]
