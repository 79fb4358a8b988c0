"""
Known emitter positions.

Table of BLE beacons and Wi-Fi access points with surveyed positions,
loaded once per building from an external configuration store.
Emitters absent from the table are treated as public/unmanaged: they
can still appear in fingerprints but are never used for lateration.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from indoornav_core.proto.position import Position
from indoornav_core.proto.ranging import (
    normalize_emitter_id,
    RangingReading,
    BLE_REFERENCE_RSSI_DBM,
    WIFI_REFERENCE_RSSI_DBM,
)


class EmitterKind(Enum):
    BLE = "ble"
    WIFI = "wifi"


@dataclass(frozen=True)
class KnownEmitter:
    """
    Emitter with a fixed surveyed position.

    Attributes:
        emitter_id: Normalized identifier (beacon id or BSSID)
        position: Mounting position
        kind: BLE beacon or Wi-Fi access point
        reference_rssi: Calibrated RSSI at 1m (dBm)
    """

    emitter_id: str
    position: Position
    kind: EmitterKind = EmitterKind.BLE
    reference_rssi: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'emitter_id', normalize_emitter_id(self.emitter_id))
        if self.reference_rssi is None:
            default = BLE_REFERENCE_RSSI_DBM if self.kind == EmitterKind.BLE else WIFI_REFERENCE_RSSI_DBM
            object.__setattr__(self, 'reference_rssi', float(default))

    def to_dict(self) -> dict:
        return {
            'id': self.emitter_id,
            'x': self.position.x,
            'y': self.position.y,
            'floor': self.position.floor,
            'kind': self.kind.value,
            'reference_rssi': self.reference_rssi,
        }


class EmitterRegistry:
    """
    Lookup table from emitter id to known position.

    Usage:
        registry = EmitterRegistry()
        registry.add(KnownEmitter("B1", Position(0, 0, 0)))

        matched = registry.match(readings)   # [(KnownEmitter, reading), ...]
    """

    def __init__(self, emitters: Optional[Iterable[KnownEmitter]] = None):
        self._emitters: Dict[str, KnownEmitter] = {}
        for emitter in emitters or []:
            self.add(emitter)

    def add(self, emitter: KnownEmitter):
        """Add or replace an emitter."""
        self._emitters[emitter.emitter_id] = emitter

    def remove(self, emitter_id: str) -> bool:
        return self._emitters.pop(normalize_emitter_id(emitter_id), None) is not None

    def get(self, emitter_id: str) -> Optional[KnownEmitter]:
        return self._emitters.get(emitter_id)

    def position_of(self, emitter_id: str) -> Optional[Position]:
        emitter = self._emitters.get(emitter_id)
        return emitter.position if emitter else None

    def __contains__(self, emitter_id: str) -> bool:
        return emitter_id in self._emitters

    def __len__(self) -> int:
        return len(self._emitters)

    def emitters(self, kind: Optional[EmitterKind] = None) -> List[KnownEmitter]:
        """All emitters, optionally of one kind, in insertion order."""
        return [e for e in self._emitters.values() if kind is None or e.kind == kind]

    def match(
        self,
        readings: Iterable[RangingReading],
        kind: Optional[EmitterKind] = None,
    ) -> List[Tuple[KnownEmitter, RangingReading]]:
        """
        Pair readings with known emitters.

        Args:
            readings: Readings (ids already normalized)
            kind: Restrict to one emitter kind

        Returns:
            List of (emitter, reading) in reading order; unknown ids skipped
        """
        matched = []
        for reading in readings:
            emitter = self._emitters.get(reading.source_id)
            if emitter is None:
                continue
            if kind is not None and emitter.kind != kind:
                continue
            matched.append((emitter, reading))
        return matched

    def floors(self) -> List[int]:
        """Floors that have at least one emitter, sorted."""
        return sorted({e.position.floor for e in self._emitters.values()})

    def to_dicts(self) -> List[dict]:
        return [e.to_dict() for e in self._emitters.values()]

    @classmethod
    def from_dicts(cls, rows: Iterable[dict]) -> "EmitterRegistry":
        """
        Build from config rows {id, x, y, floor, kind?, reference_rssi?}.

        Raises:
            ValueError: On malformed rows or invalid ids
        """
        registry = cls()
        for row in rows:
            try:
                emitter = KnownEmitter(
                    emitter_id=row['id'],
                    position=Position(float(row['x']), float(row['y']), int(row.get('floor', 0))),
                    kind=EmitterKind(row.get('kind', EmitterKind.BLE.value)),
                    reference_rssi=row.get('reference_rssi'),
                )
            except KeyError as e:
                raise ValueError(f"Emitter row missing field {e}: {row}") from e
            registry.add(emitter)
        return registry
