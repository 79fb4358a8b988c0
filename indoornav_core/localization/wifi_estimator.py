"""
Wi-Fi log-distance position estimator.

Converts scan results from access points with known positions into
distances via the log-distance path-loss model, votes the floor, and
returns the inverse-square-distance weighted average of the AP positions
on that floor.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence
import logging

import numpy as np

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.proto.ranging import (
    WifiScanResult,
    rssi_to_distance,
    WIFI_PATH_LOSS_EXPONENT,
)
from indoornav_core.localization.emitter_registry import EmitterRegistry, EmitterKind
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class WifiEstimatorConfig:
    """
    Configuration for the Wi-Fi estimator.

    Attributes:
        path_loss_exponent: Environment exponent n
        distance_floor_m: Minimum distance for weights (m)
        min_access_points: Known APs required for an estimate
        min_accuracy_m / max_accuracy_m: Clamp for the reported accuracy
    """

    path_loss_exponent: float = WIFI_PATH_LOSS_EXPONENT
    distance_floor_m: float = 0.1
    min_access_points: int = 1
    min_accuracy_m: float = 2.0
    max_accuracy_m: float = 15.0

    def __post_init__(self):
        if self.path_loss_exponent <= 0:
            raise ValueError("path_loss_exponent must be positive")
        if self.min_access_points < 1:
            raise ValueError("min_access_points must be >= 1")


class WifiPositionEstimator:
    """
    Estimate position from Wi-Fi scan results.

    Usage:
        estimator = WifiPositionEstimator(registry, metrics=metrics)
        measurement = estimator.estimate(scan_results)
    """

    def __init__(
        self,
        registry: EmitterRegistry,
        config: Optional[WifiEstimatorConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.config = config or WifiEstimatorConfig()
        self.metrics = metrics or MetricsCollector()

    def estimate(self, scan_results: Sequence[WifiScanResult]) -> Optional[PositionMeasurement]:
        """
        Estimate position from one scan.

        Args:
            scan_results: Scan results (unknown BSSIDs are ignored)

        Returns:
            PositionMeasurement, or None if too few known APs were seen

        Notes:
            - Each AP's own reference RSSI is used for the distance model
            - Floor is the 1/d^2-weighted vote; first-seen floor wins ties
            - Position and accuracy use the winning floor's APs only
            - Accuracy is the weighted mean AP distance, clamped
        """
        self.metrics.increment('wifi_estimate_attempts')

        strongest: Dict[str, WifiScanResult] = {}
        for result in scan_results:
            current = strongest.get(result.bssid)
            if current is None or result.rssi > current.rssi:
                strongest[result.bssid] = result

        heard = []
        floor_votes: Dict[int, float] = {}
        for bssid, result in strongest.items():
            emitter = self.registry.get(bssid)
            if emitter is None or emitter.kind != EmitterKind.WIFI:
                continue

            distance = rssi_to_distance(
                result.rssi, emitter.reference_rssi, self.config.path_loss_exponent
            )
            distance = max(distance, self.config.distance_floor_m)
            weight = 1.0 / distance ** 2
            heard.append((emitter, result, distance, weight))
            floor = emitter.position.floor
            floor_votes[floor] = floor_votes.get(floor, 0.0) + weight

        if len(heard) < self.config.min_access_points:
            self.metrics.increment_drop('no_known_emitters')
            return None

        # Only APs on the winning floor place the point
        floor = max(floor_votes, key=floor_votes.get)
        on_floor = [entry for entry in heard if entry[0].position.floor == floor]

        weights = np.array([weight for _, _, _, weight in on_floor])
        xs = np.array([emitter.position.x for emitter, _, _, _ in on_floor])
        ys = np.array([emitter.position.y for emitter, _, _, _ in on_floor])
        distances = np.array([distance for _, _, distance, _ in on_floor])
        total_weight = float(np.sum(weights))

        accuracy = float(np.clip(
            weights @ distances / total_weight,
            self.config.min_accuracy_m,
            self.config.max_accuracy_m,
        ))
        newest = max(result.timestamp for _, result, _, _ in on_floor)

        self.metrics.increment('wifi_estimates')
        logger.debug(f"Wi-Fi estimate from {len(on_floor)} of {len(heard)} APs on floor {floor}")

        return PositionMeasurement(
            Position(float(weights @ xs / total_weight), float(weights @ ys / total_weight), floor),
            accuracy,
            PositionSource.WIFI,
            newest,
        )

    def count_known(self, scan_results: Sequence[WifiScanResult]) -> int:
        """Number of distinct known APs present in a scan."""
        known = set()
        for result in scan_results:
            emitter = self.registry.get(result.bssid)
            if emitter is not None and emitter.kind == EmitterKind.WIFI:
                known.add(result.bssid)
        return len(known)
