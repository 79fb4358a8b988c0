"""
RSSI Fingerprint Matcher (weighted k-nearest neighbours).

Compares an observed BLE/Wi-Fi signature against surveyed fingerprints
on the same floor and returns the inverse-distance-weighted average of
the k closest fingerprint positions.

Signal-space distance per channel is the RMS RSSI difference over the
emitter ids both signatures contain. Channels without common ids do not
contribute; a fingerprint sharing no id with the observation in any
channel is excluded.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import math

import numpy as np

from indoornav_core.proto.position import Position, PositionMeasurement, PositionSource
from indoornav_core.proto.fingerprint import Fingerprint, normalize_signatures
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class FingerprintStore(ABC):
    """
    Source of surveyed fingerprints (database, cloud sync, file).

    Subclasses must implement load_fingerprints(); save_fingerprint() is
    optional and raises NotImplementedError for read-only stores.
    """

    @abstractmethod
    def load_fingerprints(self, floor: int) -> List[Fingerprint]:
        """All fingerprints surveyed on floor."""

    def save_fingerprint(self, fingerprint: Fingerprint):
        raise NotImplementedError(f"{type(self).__name__} is read-only")


class InMemoryFingerprintStore(FingerprintStore):
    """Fingerprint store backed by a dict of lists (tests, demos)."""

    def __init__(self, fingerprints: Optional[List[Fingerprint]] = None):
        self._by_floor: Dict[int, List[Fingerprint]] = {}
        self.load_count = 0
        for fp in fingerprints or []:
            self.save_fingerprint(fp)

    def load_fingerprints(self, floor: int) -> List[Fingerprint]:
        self.load_count += 1
        return list(self._by_floor.get(floor, []))

    def save_fingerprint(self, fingerprint: Fingerprint):
        self._by_floor.setdefault(fingerprint.floor, []).append(fingerprint)


@dataclass
class FingerprintMatcherConfig:
    """
    Configuration for fingerprint matching.

    Attributes:
        k: Number of nearest fingerprints to average
        ble_weight: Weight of BLE channel distance
        wifi_weight: Weight of Wi-Fi channel distance
        exact_match_distance: Distance at or below which a match is "exact" (dB)
        exact_match_weight: Fixed weight for exact matches
        min_accuracy_m / max_accuracy_m: Clamp for reported accuracy
    """

    k: int = 3
    ble_weight: float = 0.7
    wifi_weight: float = 0.3
    exact_match_distance: float = 0.1
    exact_match_weight: float = 10.0
    min_accuracy_m: float = 1.0
    max_accuracy_m: float = 10.0

    def __post_init__(self):
        """Validate configuration."""
        if self.k < 1:
            raise ValueError(f"k must be >= 1: {self.k}")
        if self.ble_weight < 0 or self.wifi_weight < 0:
            raise ValueError("Channel weights cannot be negative")
        if self.ble_weight + self.wifi_weight <= 0:
            raise ValueError("At least one channel weight must be positive")


@dataclass(frozen=True)
class FingerprintMatch:
    """
    Result of a k-NN fingerprint match.

    Attributes:
        position: Weighted position (floor = queried floor)
        neighbours: (fingerprint, distance) pairs, nearest first
        best_distance: Signal-space distance of the nearest fingerprint
    """

    position: Position
    neighbours: Tuple[Tuple[Fingerprint, float], ...]
    best_distance: float


def signature_distance(observed: Dict[str, int], stored: Dict[str, int]) -> float:
    """
    RMS RSSI difference over common emitter ids.

    Returns:
        Distance in dB, or inf if the signatures share no id
    """
    common = [key for key in observed if key in stored]
    if not common:
        return math.inf
    diffs = np.array([observed[key] - stored[key] for key in common], dtype=float)
    return float(np.sqrt(np.sum(diffs ** 2) / len(common)))


class FingerprintMatcher:
    """
    Match observed signatures against a per-floor fingerprint database.

    Usage:
        matcher = FingerprintMatcher(store, metrics=metrics)

        position = matcher.get_position(ble_rssi, wifi_rssi, floor=1)
        match = matcher.match(ble_rssi, wifi_rssi, floor=1)

    Notes:
        - Fingerprints are loaded lazily per floor and cached until
          clear_cache()
        - Output floor is always the queried floor
    """

    def __init__(
        self,
        store: Optional[FingerprintStore] = None,
        config: Optional[FingerprintMatcherConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.config = config or FingerprintMatcherConfig()
        self.metrics = metrics or MetricsCollector()
        self._cache: Dict[int, List[Fingerprint]] = {}

    def fingerprints_for_floor(self, floor: int) -> List[Fingerprint]:
        """Cached fingerprints for a floor, loading from the store on first use."""
        if floor not in self._cache:
            loaded = self.store.load_fingerprints(floor) if self.store is not None else []
            self._cache[floor] = [fp for fp in loaded if fp.floor == floor]
            logger.info(f"Loaded {len(self._cache[floor])} fingerprints for floor {floor}")
        return self._cache[floor]

    def add_fingerprint(self, fingerprint: Fingerprint):
        """Add a surveyed fingerprint to the cache and persist it if possible."""
        self.fingerprints_for_floor(fingerprint.floor).append(fingerprint)
        if self.store is not None:
            try:
                self.store.save_fingerprint(fingerprint)
            except NotImplementedError:
                logger.debug("Fingerprint store is read-only; kept in cache only")

    def clear_cache(self):
        self._cache.clear()

    def combined_distance(
        self,
        ble_observed: Dict[str, int],
        wifi_observed: Dict[str, int],
        fingerprint: Fingerprint,
    ) -> float:
        """
        Weighted BLE/Wi-Fi signal distance.

        Channels without common ids are left out and the remaining
        weights renormalized; inf if no channel has common ids.
        """
        channels = (
            (self.config.ble_weight, signature_distance(ble_observed, fingerprint.ble_signatures)),
            (self.config.wifi_weight, signature_distance(wifi_observed, fingerprint.wifi_signatures)),
        )
        total = 0.0
        weight_sum = 0.0
        for weight, distance in channels:
            if math.isfinite(distance) and weight > 0:
                total += weight * distance
                weight_sum += weight
        if weight_sum == 0:
            return math.inf
        return total / weight_sum

    def match(
        self,
        ble_observed: Dict[str, int],
        wifi_observed: Dict[str, int],
        floor: int,
    ) -> Optional[FingerprintMatch]:
        """
        Weighted k-NN match on one floor.

        Args:
            ble_observed: Beacon id -> RSSI
            wifi_observed: BSSID -> RSSI
            floor: Floor to search

        Returns:
            FingerprintMatch, or None if no fingerprint shares a signal
        """
        self.metrics.increment('fingerprint_match_attempts')
        ble_observed = normalize_signatures(ble_observed)
        wifi_observed = normalize_signatures(wifi_observed)

        scored = []
        for fingerprint in self.fingerprints_for_floor(floor):
            distance = self.combined_distance(ble_observed, wifi_observed, fingerprint)
            if math.isfinite(distance):
                scored.append((fingerprint, distance))

        if not scored:
            self.metrics.increment_drop('no_fingerprint_match')
            return None

        scored.sort(key=lambda pair: pair[1])
        neighbours = scored[:self.config.k]

        weighted_x = 0.0
        weighted_y = 0.0
        total_weight = 0.0
        for fingerprint, distance in neighbours:
            if distance <= self.config.exact_match_distance:
                weight = self.config.exact_match_weight
            else:
                weight = 1.0 / distance
            weighted_x += fingerprint.position.x * weight
            weighted_y += fingerprint.position.y * weight
            total_weight += weight

        self.metrics.increment('fingerprint_matches')
        self.metrics.record_histogram('fingerprint_best_distance_db', neighbours[0][1])

        return FingerprintMatch(
            position=Position(weighted_x / total_weight, weighted_y / total_weight, floor),
            neighbours=tuple(neighbours),
            best_distance=neighbours[0][1],
        )

    def get_position(
        self,
        ble_observed: Dict[str, int],
        wifi_observed: Dict[str, int],
        floor: int,
    ) -> Optional[Position]:
        """Matched position, or None if nothing matched."""
        match = self.match(ble_observed, wifi_observed, floor)
        return match.position if match else None

    def estimate(
        self,
        ble_observed: Dict[str, int],
        wifi_observed: Dict[str, int],
        floor: int,
        timestamp: Optional[float] = None,
    ) -> Optional[PositionMeasurement]:
        """
        Match and wrap as a measurement for fusion.

        Accuracy grows with the spread of the neighbour positions.
        """
        match = self.match(ble_observed, wifi_observed, floor)
        if match is None:
            return None

        spread = max(fp.position.distance_2d(match.position) for fp, _ in match.neighbours)
        accuracy = min(max(spread, self.config.min_accuracy_m), self.config.max_accuracy_m)
        return PositionMeasurement(match.position, accuracy, PositionSource.FINGERPRINT, timestamp)
