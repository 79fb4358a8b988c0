"""
Pytest configuration and shared fixtures for indoor navigation core tests.

This module provides reusable fixtures for emitter layouts, fingerprint
stores, navigation graphs and a manual clock for time-driven components.
"""

import sys
import math
from pathlib import Path
from typing import List

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from indoornav_core.metrics import MetricsCollector
from indoornav_core.proto.position import Position
from indoornav_core.proto.fingerprint import Fingerprint
from indoornav_core.proto.navigation import TransitionType
from indoornav_core.localization.emitter_registry import EmitterKind, EmitterRegistry, KnownEmitter
from indoornav_core.localization.fingerprint_matcher import InMemoryFingerprintStore
from indoornav_core.navigation.graph import NavGraph


# =============================================================================
# Metrics Fixtures
# =============================================================================


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh collector per test (no shared counters)."""
    return MetricsCollector()


# =============================================================================
# Emitter Layout Fixtures
# =============================================================================


@pytest.fixture
def triangle_registry() -> EmitterRegistry:
    """
    Three BLE beacons on floor 0 at (0,0), (10,0) and (0,10).

    Returns:
        EmitterRegistry with ids B0, B1, B2.
    """
    return EmitterRegistry([
        KnownEmitter("B0", Position(0.0, 0.0, 0)),
        KnownEmitter("B1", Position(10.0, 0.0, 0)),
        KnownEmitter("B2", Position(0.0, 10.0, 0)),
    ])


@pytest.fixture
def building_registry() -> EmitterRegistry:
    """
    Square 20 m floor with four corner beacons and two access points.

    Returns:
        EmitterRegistry with BLE ids Q0..Q3 and two Wi-Fi BSSIDs.
    """
    emitters = [
        KnownEmitter("Q0", Position(0.0, 0.0, 0)),
        KnownEmitter("Q1", Position(20.0, 0.0, 0)),
        KnownEmitter("Q2", Position(0.0, 20.0, 0)),
        KnownEmitter("Q3", Position(20.0, 20.0, 0)),
        KnownEmitter("AA:BB:CC:00:00:01", Position(5.0, 5.0, 0), EmitterKind.WIFI),
        KnownEmitter("AA:BB:CC:00:00:02", Position(15.0, 15.0, 0), EmitterKind.WIFI),
    ]
    return EmitterRegistry(emitters)


# =============================================================================
# Fingerprint Fixtures
# =============================================================================


@pytest.fixture
def fingerprints() -> List[Fingerprint]:
    """Four surveyed fingerprints on floor 0 and one on floor 1."""
    return [
        Fingerprint("fp_a", Position(0.0, 0.0, 0), {"B0": -50, "B1": -70}, {"AA:BB:CC:00:00:01": -60}),
        Fingerprint("fp_b", Position(10.0, 0.0, 0), {"B0": -70, "B1": -50}, {"AA:BB:CC:00:00:01": -65}),
        Fingerprint("fp_c", Position(0.0, 10.0, 0), {"B0": -65, "B2": -50}, {}),
        Fingerprint("fp_d", Position(10.0, 10.0, 0), {"B1": -65, "B2": -65}, {}),
        Fingerprint("fp_up", Position(5.0, 5.0, 1), {"B0": -50, "B1": -70}, {}),
    ]


@pytest.fixture
def fingerprint_store(fingerprints) -> InMemoryFingerprintStore:
    return InMemoryFingerprintStore(fingerprints)


# =============================================================================
# Navigation Graph Fixtures
# =============================================================================


@pytest.fixture
def chain_graph() -> NavGraph:
    """Linear chain A-B-C along the x axis, 10 m apart."""
    graph = NavGraph()
    graph.add_node("A", Position(0.0, 0.0, 0))
    graph.add_node("B", Position(10.0, 0.0, 0))
    graph.add_node("C", Position(20.0, 0.0, 0))
    graph.connect_nodes("A", "B")
    graph.connect_nodes("B", "C")
    return graph


@pytest.fixture
def corridor_graph() -> NavGraph:
    """
    L-shaped corridor with a staircase to floor 1.

    Layout (floor 0):
        S(0,0) - M(20,0) - T(20,20)
    then T connects by stairs to U(20,20,1) - D(0,20,1).
    """
    graph = NavGraph()
    graph.add_node("S", Position(0.0, 0.0, 0))
    graph.add_node("M", Position(20.0, 0.0, 0))
    graph.add_node("T", Position(20.0, 20.0, 0))
    graph.add_node("U", Position(20.0, 20.0, 1))
    graph.add_node("D", Position(0.0, 20.0, 1))
    graph.connect_nodes("S", "M")
    graph.connect_nodes("M", "T")
    graph.connect_nodes("T", "U", transition_type=TransitionType.STAIRS)
    graph.connect_nodes("U", "D")
    return graph


# =============================================================================
# Time Fixtures
# =============================================================================


class ManualClock:
    """Deterministic clock for time-driven components."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


# =============================================================================
# Helper Functions
# =============================================================================


def distance_2d(a: Position, b: Position) -> float:
    """Planar distance between two positions."""
    return math.hypot(a.x - b.x, a.y - b.y)
