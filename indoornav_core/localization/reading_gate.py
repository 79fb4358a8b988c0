"""
Gating for BLE/Wi-Fi ranging readings.

Sanity checks applied to readings before any estimator sees them.
RSSI-derived distances are noisy; the gate removes readings that are
stale or physically implausible so one bad value cannot drag the
lateration solution across the building.
"""

from typing import Dict, List, Optional
from dataclasses import dataclass

from indoornav_core.proto.ranging import RangingReading
from indoornav_core.metrics import MetricsCollector


@dataclass
class ReadingGateConfig:
    """
    Configuration for reading gating.

    Attributes:
        min_rssi_dbm: Weakest usable RSSI (dBm)
        max_rssi_dbm: Strongest plausible RSSI (dBm)
        d_max_m: Maximum operational distance (m)
        max_age_s: Maximum age of a reading (s)
    """

    min_rssi_dbm: int = -100
    max_rssi_dbm: int = 0
    d_max_m: float = 50.0
    max_age_s: float = 10.0       # Beacon advertisements older than 10s are stale

    def __post_init__(self):
        """Validate configuration."""
        if self.max_rssi_dbm <= self.min_rssi_dbm:
            raise ValueError("max_rssi must be greater than min_rssi")
        if self.d_max_m <= 0:
            raise ValueError("d_max must be positive")
        if self.max_age_s <= 0:
            raise ValueError("max_age must be positive")


class ReadingGate:
    """
    Gate ranging readings for staleness and outliers.

    Applies checks:
    1. Age: t_now - timestamp <= max_age (future timestamps are accepted)
    2. RSSI band: min_rssi <= rssi <= max_rssi
    3. Distance: estimated_distance <= d_max

    Usage:
        gate = ReadingGate(config, metrics=metrics)

        fresh = gate.check_batch(readings, t_now)
        for r in readings:
            if not gate.check_reading(r, t_now):
                print(gate.get_rejection_reason(r.source_id))
    """

    def __init__(
        self,
        config: Optional[ReadingGateConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize reading gate.

        Args:
            config: Gating configuration (uses defaults if None)
            metrics: Metrics collector (a private one if None)
        """
        self.config = config or ReadingGateConfig()
        self.metrics = metrics or MetricsCollector()

        # Last rejection reason per emitter (for debugging)
        self._last_rejection: Dict[str, str] = {}

    def check_reading(self, reading: RangingReading, t_now: float) -> bool:
        """
        Check if a reading passes all gating criteria.

        Args:
            reading: Reading to validate
            t_now: Current time (s)

        Returns:
            True if reading passes all checks
        """
        self.metrics.increment('readings_in')

        if reading.age(t_now) > self.config.max_age_s:
            self._reject(reading.source_id, "stale")
            return False

        if not self.config.min_rssi_dbm <= reading.rssi <= self.config.max_rssi_dbm:
            self._reject(reading.source_id, "rssi_out_of_range")
            return False

        if reading.estimated_distance > self.config.d_max_m:
            self._reject(reading.source_id, "too_far")
            return False

        self._accept(reading.source_id)
        return True

    def check_batch(self, readings: List[RangingReading], t_now: float) -> List[RangingReading]:
        """Return only readings that pass, preserving order."""
        return [r for r in readings if self.check_reading(r, t_now)]

    def get_rejection_reason(self, source_id: str) -> Optional[str]:
        """Reason the emitter's last reading was rejected, or None."""
        return self._last_rejection.get(source_id)

    def _accept(self, source_id: str):
        self.metrics.increment('readings_accepted')
        self._last_rejection.pop(source_id, None)

    def _reject(self, source_id: str, reason: str):
        self._last_rejection[source_id] = reason
        self.metrics.increment('readings_rejected')
        self.metrics.increment_drop(reason)

    def get_statistics(self) -> dict:
        """Get gating statistics for diagnostics."""
        return {
            'accepted_total': self.metrics.get_counter('readings_accepted'),
            'rejected_total': self.metrics.get_counter('readings_rejected'),
        }
