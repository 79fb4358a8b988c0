"""
RSSI Fingerprint Schema.

A fingerprint records the signals observed at a surveyed position. Both
signature maps are keyed by normalized emitter ids and hold signed RSSI
values in dBm.
"""

from dataclasses import dataclass, field
from typing import Dict
import time

from .position import Position
from .ranging import normalize_emitter_id


def normalize_signatures(signatures: Dict[str, int]) -> Dict[str, int]:
    """Validate ids and coerce RSSI values to int."""
    return {normalize_emitter_id(k): int(v) for k, v in signatures.items()}


@dataclass
class Fingerprint:
    """
    Surveyed signal signature at a known position.

    Attributes:
        id: Fingerprint identifier
        position: Surveyed position (floor included)
        ble_signatures: Beacon id -> RSSI
        wifi_signatures: BSSID -> RSSI
        timestamp: Survey time (s)

    Notes:
        - A fingerprint with no signature in either channel is invalid
    """

    id: str
    position: Position
    ble_signatures: Dict[str, int] = field(default_factory=dict)
    wifi_signatures: Dict[str, int] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        """Validate fingerprint."""
        self.ble_signatures = normalize_signatures(self.ble_signatures)
        self.wifi_signatures = normalize_signatures(self.wifi_signatures)

        if not self.ble_signatures and not self.wifi_signatures:
            raise ValueError(f"Fingerprint {self.id} has no signatures")

    @property
    def floor(self) -> int:
        return self.position.floor

    def to_dict(self) -> dict:
        """Convert to dictionary for the external store."""
        return {
            'id': self.id,
            'x': self.position.x,
            'y': self.position.y,
            'floor': self.position.floor,
            'bleSignatures': dict(self.ble_signatures),
            'wifiSignatures': dict(self.wifi_signatures),
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fingerprint":
        return cls(
            id=str(data['id']),
            position=Position(float(data['x']), float(data['y']), int(data.get('floor', 0))),
            ble_signatures=data.get('bleSignatures', {}),
            wifi_signatures=data.get('wifiSignatures', {}),
            timestamp=float(data.get('timestamp', 0.0)),
        )
