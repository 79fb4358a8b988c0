"""
Integration tests for the positioning service.

Tests cover:
- Tick pipeline: engine -> tracker -> position channel
- Signal loss, fallback publishing and automatic recovery
- Manual position override
- Navigation from the fused position in the demo building
- Thread lifecycle
"""

import math
from typing import List

import pytest

from indoornav_core.proto.position import Position
from indoornav_core.proto.position_estimate import FixType, PositionEstimate
from indoornav_core.proto.ranging import RangingReading
from indoornav_core.proto.recovery_events import PositionLostEvent, PositionRecoveredEvent
from indoornav_core.localization.fusion_engine import FusionEngineConfig
from indoornav_core.localization.reading_gate import ReadingGateConfig
from indoornav_core.navigation.graph import NavGraph, grid_node_id
from indoornav_core.recovery.tracker import RecoveryConfig, TrackerState
from indoornav_core.service import (
    PositioningService,
    ServiceConfig,
    _point_along,
    create_demo_building,
)
from tests.conftest import distance_2d

CORNERS = {"Q0": (0.0, 0.0), "Q1": (20.0, 0.0), "Q2": (0.0, 20.0), "Q3": (20.0, 20.0)}


def _readings(layout, x: float, y: float, timestamp: float) -> List[RangingReading]:
    return [
        RangingReading(source_id, -70, max(math.hypot(x - cx, y - cy), 0.1), timestamp)
        for source_id, (cx, cy) in layout.items()
    ]


@pytest.fixture
def service(building_registry, metrics, clock) -> PositioningService:
    """Service driven by tick() with caller-driven recovery attempts."""
    svc = PositioningService(
        building_registry,
        NavGraph(),
        fusion_config=FusionEngineConfig(gate_config=ReadingGateConfig(max_age_s=1.0)),
        recovery_config=RecoveryConfig(background_attempts=False),
        metrics=metrics,
        clock=clock,
    )
    svc.tracker.start()
    return svc


class TestPipeline:
    """Tests for the tick pipeline."""

    def test_tick_publishes_fix(self, service, clock):
        service.engine.submit_ble_readings(_readings(CORNERS, 6.0, 9.0, clock()))

        estimate = service.tick()

        assert estimate.fix_type == FixType.FIX
        assert service.position_channel.latest() is estimate
        assert distance_2d(service.current_position(), Position(6.0, 9.0)) < 0.1
        assert service.tracker.state == TrackerState.ACTIVE

    def test_tracker_not_started(self, building_registry, clock):
        """Test that nothing is published before the tracker starts."""
        svc = PositioningService(building_registry, NavGraph(), clock=clock)
        svc.engine.submit_ble_readings(_readings(CORNERS, 6.0, 9.0, clock()))

        assert svc.tick() is None
        assert svc.current_position() is None

    def test_signal_loss_publishes_fallback(self, service, clock):
        """Test that a failed cycle enters recovery and publishes a FALLBACK."""
        events = []
        service.tracker.add_listener(events.append)
        service.engine.submit_ble_readings(_readings(CORNERS, 6.0, 9.0, clock()))
        fix = service.tick()

        clock.advance(5.0)
        fallback = service.tick()

        assert service.tracker.state == TrackerState.RECOVERING
        assert fallback.fix_type == FixType.FALLBACK
        assert fallback.position == fix.position
        assert service.position_channel.latest() is fallback
        assert isinstance(events[0], PositionLostEvent)

    def test_automatic_recovery_resets_engine(self, service, clock, metrics):
        """Test that an accepted recovery fix re-seeds the engine at its position."""
        service.engine.submit_ble_readings(_readings(CORNERS, 6.0, 9.0, clock()))
        service.tick()
        clock.advance(5.0)
        service.tick()

        service.engine.submit_ble_readings(_readings(CORNERS, 14.0, 3.0, clock()))
        assert service.tracker.attempt_recovery()

        assert service.tracker.state == TrackerState.ACTIVE
        assert distance_2d(service.engine.kalman.state, Position(14.0, 3.0)) < 0.1
        assert not service.fallback.is_active
        assert metrics.get_counter('automatic_recoveries') == 1

    def test_manual_position(self, service, clock):
        """Test that a user-confirmed position is applied and published."""
        events = []
        service.tracker.add_listener(events.append)
        confirmed = Position(2.0, 18.0, 0)

        service.set_manual_position(confirmed)

        latest = service.position_channel.latest()
        assert latest.fix_type == FixType.MANUAL
        assert latest.position == confirmed
        assert latest.confidence == 1.0
        assert service.engine.kalman.state == confirmed
        assert isinstance(events[-1], PositionRecoveredEvent)
        assert events[-1].manual

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            ServiceConfig(tick_interval_s=0.0)


class TestDemoBuilding:
    """Tests for the demo building and navigation through the service."""

    def test_layout(self):
        registry, graph, landmarks = create_demo_building()

        assert len(registry) == 14
        assert len(graph) == 18
        assert {lm.id for lm in landmarks} == {"entrance", "stairs", "cafe"}

    def test_cross_floor_route(self):
        _, graph, _ = create_demo_building()

        path = graph.find_path(grid_node_id(0, 0, 0), grid_node_id(1, 2, 2))

        assert path[0].id == grid_node_id(0, 0, 0)
        assert path[-1].id == grid_node_id(1, 2, 2)
        assert {n.position.floor for n in path} == {0, 1}

    def test_navigate_from_fused_position(self, clock):
        """Test that navigation starts from the current published position."""
        registry, graph, landmarks = create_demo_building()
        svc = PositioningService(registry, graph, landmarks=landmarks, clock=clock)
        svc.tracker.start()
        destination = grid_node_id(1, 2, 2)

        assert not svc.navigate_to(destination)

        floor0 = {
            e.emitter_id: (e.position.x, e.position.y)
            for e in registry.emitters()
            if e.emitter_id.startswith("BLE_0_")
        }
        svc.engine.submit_ble_readings(_readings(floor0, 1.0, 1.0, clock()))
        svc.tick()

        assert svc.navigate_to(destination)
        assert svc.controller.current_path[0].id == grid_node_id(0, 0, 0)
        assert svc.controller.current_path[-1].id == destination

    def test_point_along(self):
        """Test walking a polyline with a floor change."""
        waypoints = [
            Position(0.0, 0.0, 0),
            Position(10.0, 0.0, 0),
            Position(10.0, 0.0, 1),
            Position(10.0, 10.0, 1),
        ]

        assert _point_along(waypoints, 5.0) == Position(5.0, 0.0, 0)
        assert _point_along(waypoints, 12.0) == Position(10.0, 0.0, 0)
        assert _point_along(waypoints, 20.0) == Position(10.0, 5.0, 1)
        assert _point_along(waypoints, 100.0) == waypoints[-1]


class TestLifecycle:
    """Tests for the service threads."""

    def test_start_and_stop(self, building_registry):
        svc = PositioningService(
            building_registry,
            NavGraph(),
            config=ServiceConfig(tick_interval_s=0.01),
        )

        svc.start()
        assert svc.is_running
        assert svc.tracker.state != TrackerState.INACTIVE

        svc.stop()
        assert not svc.is_running
        assert svc.tracker.state == TrackerState.INACTIVE

    def test_stop_cancels_recovery_worker(self, building_registry):
        """Test that stopping the service cancels a pending recovery attempt."""
        svc = PositioningService(
            building_registry,
            NavGraph(),
            config=ServiceConfig(tick_interval_s=60.0),
            recovery_config=RecoveryConfig(backoff_delays_s=(30.0,), max_attempts=1),
        )
        calls = []

        def locate():
            calls.append(1)
            return None

        svc.tracker.probe = locate
        svc.start()
        svc.tracker.process_cycle(PositionEstimate(Position(5.0, 5.0), 3.0, 0.8, FixType.FIX, 0.0))
        for _ in range(svc.tracker.config.failures_before_recovery):
            svc.tracker.process_cycle(None)
        worker = svc.tracker._worker
        assert worker is not None and worker.is_alive()

        svc.stop()

        assert not worker.is_alive()
        assert calls == []
        assert svc.tracker.state == TrackerState.INACTIVE

    def test_stop_when_idle(self, building_registry):
        svc = PositioningService(building_registry, NavGraph())
        svc.stop()
        assert not svc.is_running
