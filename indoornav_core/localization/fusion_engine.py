"""
Position Fusion Engine.

Integrates the signal estimators (trilateration, Wi-Fi, fingerprint, dead
reckoning) and the Kalman fusion filter into one pipeline stage that is
ticked once per update cycle.

Usage:
    engine = PositionFusionEngine(registry, fingerprint_matcher=matcher, metrics=metrics)

    # Producers push raw input at any rate
    engine.submit_ble_readings(readings)
    engine.submit_wifi_scan(scan)
    engine.submit_accelerometer(ax, ay, az, t)
    engine.update_heading(heading_rad)

    # Pipeline tick
    estimate = engine.tick()
    if estimate is None:
        ...  # failed cycle: no absolute fix and hold window exceeded
    elif estimate.fix_type == FixType.HOLD:
        ...  # dead reckoning only

Pipeline stages per tick:
1. Gate buffered readings (age, RSSI band, range)
2. BLE -> trilateration / weighted centroid
3. Wi-Fi -> log-distance estimate
4. Fingerprint match on the current floor
5. Dead reckoning from the last anchor
6. Kalman fusion with nominal per-source accuracies
7. Re-anchor dead reckoning on an absolute fix
"""

from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import threading
import time

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.proto.position_estimate import PositionEstimate, FixType
from indoornav_core.proto.ranging import RangingReading, WifiScanResult
from indoornav_core.localization.emitter_registry import EmitterRegistry, EmitterKind
from indoornav_core.localization.reading_gate import ReadingGate, ReadingGateConfig
from indoornav_core.localization.trilateration import TrilaterationEstimator, TrilaterationConfig
from indoornav_core.localization.wifi_estimator import WifiPositionEstimator, WifiEstimatorConfig
from indoornav_core.localization.fingerprint_matcher import FingerprintMatcher
from indoornav_core.localization.dead_reckoning import DeadReckoningIntegrator, DeadReckoningConfig
from indoornav_core.localization.kalman_fusion import (
    KalmanFusionFilter,
    KalmanFusionConfig,
    fuse_once,
)
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class FusionEngineConfig:
    """
    Configuration for the fusion engine.

    Attributes:
        beacon_accuracy_m: Nominal accuracy of BLE candidates (best)
        wifi_accuracy_m: Nominal accuracy of Wi-Fi candidates
        fingerprint_accuracy_m: Nominal accuracy of fingerprint candidates
        max_dead_reckoning_hold_s: Max time to coast on dead reckoning alone (s)
        hold_confidence: Confidence reported for dead-reckoning-only cycles
        fingerprint_confidence: Confidence of a fingerprint match
        use_fingerprints: Run the fingerprint matcher when available
        reanchor_dead_reckoning: Reset dead reckoning to each absolute fix
        seed_from_first_fix: Seed the filter at the first absolute measurement
        history_size: Number of recent estimates kept
        gate_config / trilateration_config / wifi_config /
        dead_reckoning_config / kalman_config: Stage configs (defaults if None)
    """

    beacon_accuracy_m: float = 2.0
    wifi_accuracy_m: float = 4.0
    fingerprint_accuracy_m: float = 3.0
    max_dead_reckoning_hold_s: float = 3.0
    hold_confidence: float = 0.3
    fingerprint_confidence: float = 0.7
    use_fingerprints: bool = True
    reanchor_dead_reckoning: bool = True
    seed_from_first_fix: bool = True
    history_size: int = 20

    gate_config: Optional[ReadingGateConfig] = None
    trilateration_config: Optional[TrilaterationConfig] = None
    wifi_config: Optional[WifiEstimatorConfig] = None
    dead_reckoning_config: Optional[DeadReckoningConfig] = None
    kalman_config: Optional[KalmanFusionConfig] = None

    def __post_init__(self):
        """Validate configuration."""
        for name in ('beacon_accuracy_m', 'wifi_accuracy_m', 'fingerprint_accuracy_m'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_dead_reckoning_hold_s < 0:
            raise ValueError("max_dead_reckoning_hold_s cannot be negative")
        if not 0 <= self.hold_confidence <= 1 or not 0 <= self.fingerprint_confidence <= 1:
            raise ValueError("Confidences must be in [0,1]")
        if self.history_size < 1:
            raise ValueError("history_size must be >= 1")


def estimate_accuracy(num_sources: int) -> float:
    """Output accuracy by number of absolute sources that contributed."""
    if num_sources <= 0:
        return 10.0
    if num_sources == 1:
        return 5.0
    if num_sources == 2:
        return 3.0
    return 2.0


def estimate_confidence(num_ble: int, num_wifi: int) -> float:
    """
    Confidence from the number of known emitters heard.

    Three beacons give 0.8, five access points give 0.6; the better
    channel wins.
    """
    ble_confidence = min(num_ble / 3.0, 1.0) * 0.8
    wifi_confidence = min(num_wifi / 5.0, 1.0) * 0.6
    return max(ble_confidence, wifi_confidence)


class PositionFusionEngine:
    """
    Multi-source position pipeline.

    Features:
    - Tolerates partial or zero inputs (each estimator may return None)
    - Dead-reckoning holdover for brief radio dropouts
    - Probe mode for recovery attempts (no filter mutation)
    - Single lock serializes submits, ticks and resets

    Notes:
        - Owns its estimators; the registry and fingerprint matcher are
          injected so a building switch is an explicit load_building()
    """

    def __init__(
        self,
        registry: EmitterRegistry,
        fingerprint_matcher: Optional[FingerprintMatcher] = None,
        config: Optional[FusionEngineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize fusion engine.

        Args:
            registry: Known emitter positions
            fingerprint_matcher: Optional fingerprint matcher
            config: Engine configuration (uses defaults if None)
            metrics: Metrics collector shared by all stages
            clock: Time source for ticks without explicit time
        """
        self.config = config or FusionEngineConfig()
        self.metrics = metrics or MetricsCollector()
        self.registry = registry
        self.fingerprint_matcher = fingerprint_matcher
        self._clock = clock

        self.gate = ReadingGate(self.config.gate_config, metrics=self.metrics)
        self.trilateration = TrilaterationEstimator(self.config.trilateration_config, metrics=self.metrics)
        self.wifi = WifiPositionEstimator(registry, self.config.wifi_config, metrics=self.metrics)
        self.dead_reckoning = DeadReckoningIntegrator(self.config.dead_reckoning_config, metrics=self.metrics)
        self.kalman = KalmanFusionFilter(self.config.kalman_config, metrics=self.metrics)

        self._lock = threading.Lock()
        self._ble_buffer: Dict[str, RangingReading] = {}
        self._wifi_buffer: List[WifiScanResult] = []
        self._last_absolute_time: Optional[float] = None
        self._latest: Optional[PositionEstimate] = None
        self._history: Deque[PositionEstimate] = deque(maxlen=self.config.history_size)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def submit_ble_readings(self, readings: Iterable[RangingReading]):
        """Buffer BLE readings, keeping the newest per emitter."""
        with self._lock:
            for reading in readings:
                current = self._ble_buffer.get(reading.source_id)
                if current is None or reading.timestamp >= current.timestamp:
                    self._ble_buffer[reading.source_id] = reading

    def submit_ble_rssi(self, source_id: str, rssi: int, timestamp: float):
        """Buffer a raw BLE advertisement using the emitter's calibrated reference."""
        reading = RangingReading.from_rssi(source_id, rssi, timestamp)
        emitter = self.registry.get(reading.source_id)
        if emitter is not None:
            reading = RangingReading.from_rssi(
                source_id, rssi, timestamp, reference_rssi=emitter.reference_rssi
            )
        self.submit_ble_readings([reading])

    def submit_wifi_scan(self, scan_results: Sequence[WifiScanResult]):
        """Replace the buffered Wi-Fi scan with a newer one."""
        with self._lock:
            self._wifi_buffer = list(scan_results)

    def submit_accelerometer(self, ax: float, ay: float, az: float, timestamp: float) -> bool:
        """Feed one accelerometer sample to the step detector."""
        with self._lock:
            return self.dead_reckoning.process_accelerometer(ax, ay, az, timestamp)

    def update_heading(self, heading_rad: float):
        with self._lock:
            self.dead_reckoning.update_heading(heading_rad)

    def update_orientation(self, gravity: Sequence[float], magnetic: Sequence[float]) -> bool:
        with self._lock:
            return self.dead_reckoning.update_orientation(gravity, magnetic)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def tick(self, t_now: Optional[float] = None) -> Optional[PositionEstimate]:
        """
        Run one fusion cycle.

        Args:
            t_now: Cycle time (defaults to the engine clock)

        Returns:
            PositionEstimate (FIX or HOLD), or None for a failed cycle
        """
        t_now = self._clock() if t_now is None else t_now

        with self._lock:
            started = time.perf_counter()
            self.metrics.increment('fusion_ticks')

            absolute, num_ble, num_wifi, used_fingerprint = self._absolute_measurements(t_now)
            measurements = list(absolute)

            dr_measurement = self.dead_reckoning.get_measurement(t_now)
            if dr_measurement is not None:
                measurements.append(dr_measurement)

            if not absolute:
                if dr_measurement is None or self._last_absolute_time is None:
                    self.metrics.increment_drop('no_measurements')
                    return None
                if t_now - self._last_absolute_time > self.config.max_dead_reckoning_hold_s:
                    self.metrics.increment_drop('hold_exceeded')
                    return None

            if absolute and self.config.seed_from_first_fix and self.kalman.update_count == 0:
                self.kalman.reset(absolute[0].position)

            fused = self.kalman.update(measurements)

            if absolute:
                self._last_absolute_time = t_now
                if self.config.reanchor_dead_reckoning or not self.dead_reckoning.is_anchored:
                    self.dead_reckoning.reset(fused)

                confidence = estimate_confidence(num_ble, num_wifi)
                if used_fingerprint:
                    confidence = max(confidence, self.config.fingerprint_confidence)
                estimate = PositionEstimate(
                    position=fused,
                    accuracy=estimate_accuracy(len(absolute)),
                    confidence=confidence,
                    fix_type=FixType.FIX,
                    timestamp=t_now,
                    sources=tuple(m.source for m in measurements),
                    num_emitters=num_ble + num_wifi,
                )
            else:
                estimate = PositionEstimate(
                    position=fused,
                    accuracy=dr_measurement.accuracy,
                    confidence=self.config.hold_confidence,
                    fix_type=FixType.HOLD,
                    timestamp=t_now,
                    sources=(PositionSource.DEAD_RECKONING,),
                )
                self.metrics.increment('fusion_holds')

            self._latest = estimate
            self._history.append(estimate)

            self.metrics.increment('position_estimates')
            self.metrics.record_histogram('fusion_tick_ms', (time.perf_counter() - started) * 1000.0)

            return estimate

    def probe(self, t_now: Optional[float] = None) -> Optional[PositionEstimate]:
        """
        Estimate from buffered radio signals only, without touching the filter.

        Used by recovery attempts: the result carries the confidence the
        caller compares against its acceptance threshold.

        Returns:
            PositionEstimate, or None if no absolute source produced a result
        """
        t_now = self._clock() if t_now is None else t_now

        with self._lock:
            absolute, num_ble, num_wifi, used_fingerprint = self._absolute_measurements(t_now)

        if not absolute:
            return None

        position = fuse_once(absolute, self.config.kalman_config)
        confidence = estimate_confidence(num_ble, num_wifi)
        if used_fingerprint:
            confidence = max(confidence, self.config.fingerprint_confidence)

        return PositionEstimate(
            position=position,
            accuracy=estimate_accuracy(len(absolute)),
            confidence=confidence,
            fix_type=FixType.FIX,
            timestamp=t_now,
            sources=tuple(m.source for m in absolute),
            num_emitters=num_ble + num_wifi,
        )

    def reset(self, position: Optional[Position] = None, clear_signals: bool = False):
        """
        Reset fusion state after a discontinuity.

        Args:
            position: Confirmed position to restart from (manual recovery)
            clear_signals: Drop buffered readings (building switch)
        """
        with self._lock:
            self.kalman.reset(position)
            self.dead_reckoning.reset(position)
            if clear_signals:
                self._ble_buffer.clear()
                self._wifi_buffer = []
            self._last_absolute_time = self._clock() if position is not None else None
            self._latest = None
            self._history.clear()
            self.metrics.increment('fusion_resets')
        logger.info(f"Fusion engine reset (position={position})")

    def load_building(
        self,
        registry: EmitterRegistry,
        fingerprint_matcher: Optional[FingerprintMatcher] = None,
    ):
        """Switch to another building's emitter table and fingerprints."""
        with self._lock:
            self.registry = registry
            self.wifi.registry = registry
            self.fingerprint_matcher = fingerprint_matcher
        self.reset(clear_signals=True)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    @property
    def latest_estimate(self) -> Optional[PositionEstimate]:
        with self._lock:
            return self._latest

    @property
    def history(self) -> List[PositionEstimate]:
        with self._lock:
            return list(self._history)

    def get_statistics(self) -> dict:
        """Get pipeline statistics."""
        return {
            'ticks': self.metrics.get_counter('fusion_ticks'),
            'estimates': self.metrics.get_counter('position_estimates'),
            'holds': self.metrics.get_counter('fusion_holds'),
            'no_measurements': self.metrics.get_drop_count('no_measurements'),
            'hold_exceeded': self.metrics.get_drop_count('hold_exceeded'),
            'resets': self.metrics.get_counter('fusion_resets'),
            'gate_stats': self.gate.get_statistics(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _absolute_measurements(
        self,
        t_now: float,
    ) -> Tuple[List[PositionMeasurement], int, int, bool]:
        """
        Run the radio estimators on buffered input (caller holds the lock).

        Returns:
            (measurements, known BLE emitters, known Wi-Fi APs, fingerprint used)
        """
        ble_readings = self.gate.check_batch(list(self._ble_buffer.values()), t_now)
        stale = [sid for sid, r in self._ble_buffer.items() if r.age(t_now) > self.gate.config.max_age_s]
        for sid in stale:
            del self._ble_buffer[sid]

        max_age = self.gate.config.max_age_s
        wifi_scan = [r for r in self._wifi_buffer if t_now - r.timestamp <= max_age]

        measurements: List[PositionMeasurement] = []

        ble_measurement = self.trilateration.estimate(ble_readings, self.registry)
        if ble_measurement is not None:
            measurements.append(ble_measurement.with_accuracy(self.config.beacon_accuracy_m))

        wifi_measurement = self.wifi.estimate(wifi_scan) if wifi_scan else None
        if wifi_measurement is not None:
            measurements.append(wifi_measurement.with_accuracy(self.config.wifi_accuracy_m))

        used_fingerprint = False
        if self.config.use_fingerprints and self.fingerprint_matcher is not None:
            floor = self._fingerprint_floor(measurements)
            if floor is not None:
                fp_measurement = self.fingerprint_matcher.estimate(
                    {r.source_id: r.rssi for r in ble_readings},
                    {r.bssid: r.rssi for r in wifi_scan},
                    floor,
                    t_now,
                )
                if fp_measurement is not None:
                    measurements.append(fp_measurement.with_accuracy(self.config.fingerprint_accuracy_m))
                    used_fingerprint = True

        num_ble = len(self.registry.match(ble_readings, kind=EmitterKind.BLE))
        num_wifi = self.wifi.count_known(wifi_scan)

        return measurements, num_ble, num_wifi, used_fingerprint

    def _fingerprint_floor(self, measurements: List[PositionMeasurement]) -> Optional[int]:
        """Floor to search: this cycle's radio floor, else the filter's floor."""
        if measurements:
            return measurements[0].position.floor
        if self.kalman.update_count > 0:
            return self.kalman.floor
        return None


def create_default_engine(
    registry: EmitterRegistry,
    fingerprint_matcher: Optional[FingerprintMatcher] = None,
    metrics: Optional[MetricsCollector] = None,
) -> PositionFusionEngine:
    """
    Create fusion engine with default configuration.

    Returns:
        Configured PositionFusionEngine
    """
    return PositionFusionEngine(
        registry,
        fingerprint_matcher=fingerprint_matcher,
        config=FusionEngineConfig(),
        metrics=metrics,
    )
