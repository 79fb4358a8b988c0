"""
Signal Simulator.

Generates synthetic BLE readings, Wi-Fi scans and accelerometer samples
for a known true position, for demos and end-to-end tests.

RSSI model (log-distance with Gaussian shadowing):
    rssi = P_ref - 10 * n * log10(max(d, d_min)) + N(0, sigma^2)
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

import numpy as np

from indoornav_core.proto.position import Position
from indoornav_core.proto.ranging import (
    BLE_PATH_LOSS_EXPONENT,
    WIFI_PATH_LOSS_EXPONENT,
    RangingReading,
    WifiScanResult,
)
from indoornav_core.localization.emitter_registry import EmitterKind, EmitterRegistry

logger = logging.getLogger(__name__)

GRAVITY_MPS2 = 9.81


@dataclass
class SimulationConfig:
    """
    Configuration for the signal simulator.

    Attributes:
        ble_path_loss_exponent: Propagation exponent for beacons
        wifi_path_loss_exponent: Propagation exponent for access points
        rssi_noise_db: Std dev of RSSI shadowing (dB)
        min_distance_m: Distances are clamped to at least this (m)
        min_rssi_dbm / max_rssi_dbm: RSSI clip band; weaker signals are not heard
        wifi_frequency_mhz: Frequency reported in scan results
        step_peak_mps2: Accelerometer magnitude at a step peak
        accel_noise_mps2: Std dev of accelerometer noise
    """

    ble_path_loss_exponent: float = BLE_PATH_LOSS_EXPONENT
    wifi_path_loss_exponent: float = WIFI_PATH_LOSS_EXPONENT
    rssi_noise_db: float = 2.0
    min_distance_m: float = 0.1
    min_rssi_dbm: int = -100
    max_rssi_dbm: int = -30
    wifi_frequency_mhz: int = 2437
    step_peak_mps2: float = 12.0
    accel_noise_mps2: float = 0.05

    def __post_init__(self):
        """Validate configuration."""
        if self.ble_path_loss_exponent <= 0 or self.wifi_path_loss_exponent <= 0:
            raise ValueError("Path loss exponents must be positive")
        if self.rssi_noise_db < 0 or self.accel_noise_mps2 < 0:
            raise ValueError("Noise levels cannot be negative")
        if self.max_rssi_dbm <= self.min_rssi_dbm:
            raise ValueError("max_rssi must be greater than min_rssi")


class SignalSimulator:
    """
    Synthetic radio and motion signals.

    Usage:
        sim = SignalSimulator(registry, rng_seed=42)
        engine.submit_ble_readings(sim.ble_readings(true_position, t))
        engine.submit_wifi_scan(sim.wifi_scan(true_position, t))

        for ax, ay, az, ts in sim.walking_accelerometer(t, steps=4):
            engine.submit_accelerometer(ax, ay, az, ts)

    Notes:
        - Only emitters on the true position's floor are heard
        - A fixed rng_seed makes every sequence reproducible
    """

    def __init__(
        self,
        registry: EmitterRegistry,
        config: Optional[SimulationConfig] = None,
        rng_seed: Optional[int] = None,
    ):
        self.registry = registry
        self.config = config or SimulationConfig()
        self.rng = np.random.default_rng(rng_seed)

    def expected_rssi(self, reference_rssi: float, distance_m: float, path_loss_exponent: float) -> float:
        """Noise-free RSSI at distance_m."""
        distance = max(distance_m, self.config.min_distance_m)
        return reference_rssi - 10.0 * path_loss_exponent * np.log10(distance)

    def ble_readings(self, true_position: Position, timestamp: float) -> List[RangingReading]:
        """One advertisement per audible beacon on the same floor."""
        readings = []
        for emitter in self.registry.emitters(EmitterKind.BLE):
            rssi = self._sample_rssi(emitter.position, true_position, emitter.reference_rssi,
                                     self.config.ble_path_loss_exponent)
            if rssi is None:
                continue
            readings.append(RangingReading.from_rssi(
                emitter.emitter_id,
                rssi,
                timestamp,
                reference_rssi=emitter.reference_rssi,
                path_loss_exponent=self.config.ble_path_loss_exponent,
            ))
        return readings

    def wifi_scan(self, true_position: Position, timestamp: float) -> List[WifiScanResult]:
        """One scan result per audible access point on the same floor."""
        results = []
        for emitter in self.registry.emitters(EmitterKind.WIFI):
            rssi = self._sample_rssi(emitter.position, true_position, emitter.reference_rssi,
                                     self.config.wifi_path_loss_exponent)
            if rssi is None:
                continue
            results.append(WifiScanResult(
                bssid=emitter.emitter_id,
                ssid="sim-net",
                rssi=rssi,
                frequency=self.config.wifi_frequency_mhz,
                timestamp=timestamp,
            ))
        return results

    def walking_accelerometer(
        self,
        start_time: float,
        steps: int,
        step_interval_s: float = 0.5,
    ) -> List[Tuple[float, float, float, float]]:
        """
        Accelerometer samples for a walk of the given number of steps.

        Each step is four samples: rest, peak, rest, rest.

        Returns:
            List of (ax, ay, az, timestamp)
        """
        samples = []
        quarter = step_interval_s / 4.0
        for step in range(steps):
            t0 = start_time + step * step_interval_s
            for k, magnitude in enumerate((GRAVITY_MPS2, self.config.step_peak_mps2,
                                           GRAVITY_MPS2, GRAVITY_MPS2)):
                noise = self.rng.normal(0.0, self.config.accel_noise_mps2, size=3)
                samples.append((
                    float(noise[0]),
                    float(noise[1]),
                    float(magnitude + noise[2]),
                    t0 + k * quarter,
                ))
        return samples

    def _sample_rssi(
        self,
        emitter_position: Position,
        true_position: Position,
        reference_rssi: float,
        path_loss_exponent: float,
    ) -> Optional[int]:
        if not emitter_position.is_same_floor(true_position):
            return None
        distance = emitter_position.distance_2d(true_position)
        rssi = self.expected_rssi(reference_rssi, distance, path_loss_exponent)
        if self.config.rssi_noise_db > 0:
            rssi += self.rng.normal(0.0, self.config.rssi_noise_db)
        if rssi < self.config.min_rssi_dbm:
            return None
        return int(round(min(rssi, self.config.max_rssi_dbm)))
