"""
Ranging Reading Message Schema.

Defines readings from BLE beacons and Wi-Fi access points, the
log-distance path-loss conversion, and emitter-id validation.

Emitter ids are validated here, at the boundary, so estimators can treat
them as opaque keys.
"""

from dataclasses import dataclass
from typing import Optional
import re

# Log-distance model defaults
BLE_REFERENCE_RSSI_DBM = -59       # Typical iBeacon measured power at 1m
BLE_PATH_LOSS_EXPONENT = 2.7       # Indoor environment
WIFI_REFERENCE_RSSI_DBM = -40      # Typical AP power at 1m
WIFI_PATH_LOSS_EXPONENT = 2.7      # Indoor environment

_MAC_PATTERN = re.compile(r'^[0-9A-Fa-f]{2}([:-][0-9A-Fa-f]{2}){5}$')
_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:\-]{1,64}$')


def normalize_emitter_id(emitter_id: str) -> str:
    """
    Validate and normalize an emitter identifier.

    MAC-style ids (BLE address, BSSID) are upper-cased with ':' separators;
    other ids (UUID/major/minor strings, config names) must be 1-64 chars
    of [A-Za-z0-9_.:-].

    Args:
        emitter_id: Raw identifier from a scanner or config

    Returns:
        Normalized identifier

    Raises:
        ValueError: If the identifier is empty or malformed
    """
    if not isinstance(emitter_id, str):
        raise ValueError(f"Emitter id must be a string: {emitter_id!r}")

    candidate = emitter_id.strip()
    if _MAC_PATTERN.match(candidate):
        return candidate.upper().replace('-', ':')

    if not _ID_PATTERN.match(candidate):
        raise ValueError(f"Invalid emitter id: {emitter_id!r}")

    return candidate


def rssi_to_distance(
    rssi: float,
    reference_rssi: float = WIFI_REFERENCE_RSSI_DBM,
    path_loss_exponent: float = WIFI_PATH_LOSS_EXPONENT,
) -> float:
    """
    Convert RSSI to distance with the log-distance path-loss model.

    d = 10 ^ ((P_ref - RSSI) / (10 * n))

    Args:
        rssi: Received signal strength (dBm)
        reference_rssi: RSSI at 1m (dBm)
        path_loss_exponent: Environment exponent n

    Returns:
        Estimated distance (m)
    """
    if path_loss_exponent <= 0:
        raise ValueError(f"Path loss exponent must be positive: {path_loss_exponent}")
    return 10.0 ** ((reference_rssi - rssi) / (10.0 * path_loss_exponent))


@dataclass(frozen=True)
class RangingReading:
    """
    One reading from a beacon or access point.

    Attributes:
        source_id: Emitter identifier (normalized)
        rssi: Received signal strength (dBm)
        estimated_distance: Distance from path-loss model (m)
        timestamp: Time of reception (s)

    Notes:
        - Distance is always positive
        - Use from_rssi() to derive distance from RSSI
    """

    source_id: str
    rssi: int
    estimated_distance: float
    timestamp: float

    def __post_init__(self):
        """Validate reading after initialization."""
        object.__setattr__(self, 'source_id', normalize_emitter_id(self.source_id))

        if not self.estimated_distance > 0:
            raise ValueError(f"Distance must be positive: {self.estimated_distance}")

    @classmethod
    def from_rssi(
        cls,
        source_id: str,
        rssi: int,
        timestamp: float,
        reference_rssi: float = BLE_REFERENCE_RSSI_DBM,
        path_loss_exponent: float = BLE_PATH_LOSS_EXPONENT,
    ) -> "RangingReading":
        """Build a reading, deriving distance from RSSI."""
        distance = rssi_to_distance(rssi, reference_rssi, path_loss_exponent)
        return cls(source_id, int(rssi), distance, timestamp)

    def age(self, t_now: float) -> float:
        """Seconds since reception."""
        return t_now - self.timestamp


@dataclass(frozen=True)
class WifiScanResult:
    """
    Wi-Fi scan result as delivered by the platform scanner.

    Attributes:
        bssid: Access point MAC address
        ssid: Network name (may be empty for hidden networks)
        rssi: Signal level (dBm)
        frequency: Channel frequency (MHz)
        timestamp: Time of scan (s)
    """

    bssid: str
    ssid: str
    rssi: int
    frequency: int
    timestamp: float

    def __post_init__(self):
        object.__setattr__(self, 'bssid', normalize_emitter_id(self.bssid))

    @property
    def is_5ghz(self) -> bool:
        return self.frequency >= 4900

    def to_ranging_reading(
        self,
        reference_rssi: float = WIFI_REFERENCE_RSSI_DBM,
        path_loss_exponent: float = WIFI_PATH_LOSS_EXPONENT,
    ) -> RangingReading:
        """Convert to a ranging reading keyed by BSSID."""
        return RangingReading.from_rssi(
            self.bssid, self.rssi, self.timestamp, reference_rssi, path_loss_exponent
        )


def strongest_by_source(readings: list) -> dict:
    """
    Keep the strongest reading per emitter.

    Args:
        readings: List of RangingReading (possibly repeated ids)

    Returns:
        Dict source_id -> RangingReading, in first-seen order
    """
    best = {}
    for reading in readings:
        current: Optional[RangingReading] = best.get(reading.source_id)
        if current is None or reading.rssi > current.rssi:
            best[reading.source_id] = reading
    return best
