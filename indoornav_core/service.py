"""
Positioning Service.

Wires the fusion engine, recovery tracker and navigation controller into
one running pipeline:

    producers -> engine.submit_*()            (any thread)
    tick thread: engine.tick() -> tracker.process_cycle() -> position_channel
    nav monitor: position_channel -> controller reroute/progress
    recovery worker: engine.probe() on backoff, override on success

Run the demo building:
    python -m indoornav_core.service --debug --duration 10
"""

import argparse
import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from indoornav_core import config as app_config
from indoornav_core.proto.position import Position, PositionSource
from indoornav_core.proto.position_estimate import PositionEstimate, FixType
from indoornav_core.proto.navigation import NavigationProgress, TransitionType
from indoornav_core.proto.recovery_events import Landmark, RecoveryEvent
from indoornav_core.localization.emitter_registry import EmitterKind, EmitterRegistry, KnownEmitter
from indoornav_core.localization.fingerprint_matcher import FingerprintMatcher
from indoornav_core.localization.fusion_engine import FusionEngineConfig, PositionFusionEngine
from indoornav_core.navigation.graph import NavGraph, grid_node_id
from indoornav_core.navigation.controller import NavigationController, NavigationControllerConfig
from indoornav_core.navigation.metrics_calculator import NavigationMetricsCalculator
from indoornav_core.recovery.fallback import FallbackPositionSource
from indoornav_core.recovery.tracker import PositionTracker, RecoveryConfig, landmarks_within
from indoornav_core.io.channel import LatestValueChannel
from indoornav_core.simulation import SignalSimulator
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

DEMO_TRANSITION_WALK_M = 5.0


@dataclass
class ServiceConfig:
    """
    Configuration for the service loop.

    Attributes:
        tick_interval_s: Fusion tick period (s)
        summary_interval_s: Status log period (s)
        join_timeout_s: Max wait per thread on stop (s)
    """

    tick_interval_s: float = 0.5
    summary_interval_s: float = 5.0
    join_timeout_s: float = 2.0

    def __post_init__(self):
        """Validate configuration."""
        if self.tick_interval_s <= 0:
            raise ValueError("tick_interval must be positive")
        if self.summary_interval_s <= 0:
            raise ValueError("summary_interval must be positive")


class PositioningService:
    """
    Running positioning and navigation pipeline for one building.

    Usage:
        service = PositioningService(registry, graph, landmarks=landmarks)
        service.position_channel.subscribe(update_map)
        service.tracker.add_listener(show_recovery_ui)

        service.start()
        service.engine.submit_ble_readings(readings)
        service.navigate_to("room_101")
        ...
        service.stop()

    Notes:
        - tick() can be called directly instead of start() to drive the
          pipeline deterministically
        - One MetricsCollector is shared by every component
    """

    def __init__(
        self,
        registry: EmitterRegistry,
        graph: NavGraph,
        fingerprint_matcher: Optional[FingerprintMatcher] = None,
        landmarks: Optional[List[Landmark]] = None,
        config: Optional[ServiceConfig] = None,
        fusion_config: Optional[FusionEngineConfig] = None,
        recovery_config: Optional[RecoveryConfig] = None,
        controller_config: Optional[NavigationControllerConfig] = None,
        metrics_calculator: Optional[NavigationMetricsCalculator] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ServiceConfig()
        self.metrics = metrics or MetricsCollector()
        self._clock = clock

        self.engine = PositionFusionEngine(
            registry,
            fingerprint_matcher=fingerprint_matcher,
            config=fusion_config,
            metrics=self.metrics,
            clock=clock,
        )
        self.fallback = FallbackPositionSource(self.engine.dead_reckoning, metrics=self.metrics, clock=clock)
        self.tracker = PositionTracker(
            probe=self.engine.probe,
            fallback=self.fallback,
            landmark_provider=landmarks_within(landmarks or []),
            on_position_override=self._override_position,
            config=recovery_config,
            metrics=self.metrics,
            clock=clock,
        )
        self.graph = graph
        self.controller = NavigationController(
            graph,
            metrics_calculator=metrics_calculator,
            config=controller_config,
            metrics=self.metrics,
        )
        self.position_channel: LatestValueChannel[PositionEstimate] = LatestValueChannel(name='position')

        self._running = False
        self._stop_event = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def current_position(self) -> Optional[Position]:
        estimate = self.position_channel.latest()
        return estimate.position if estimate is not None else None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def tick(self, t_now: Optional[float] = None) -> Optional[PositionEstimate]:
        """Run one fusion cycle through the tracker and publish the result."""
        t_now = self._clock() if t_now is None else t_now
        estimate = self.tracker.process_cycle(self.engine.tick(t_now))
        if estimate is not None:
            self.position_channel.publish(estimate)
        return estimate

    def start(self):
        if self._running:
            logger.warning("Positioning service already running")
            return

        self.tracker.start()
        self._stop_event.clear()
        self._tick_thread = threading.Thread(target=self._tick_loop, name='fusion-tick', daemon=True)
        self._running = True
        self._tick_thread.start()
        self.controller.start_monitoring(self.current_position)
        logger.info("Positioning service started")

    def stop(self):
        """Stop every thread and cancel in-flight recovery attempts."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._tick_thread is not None:
            self._tick_thread.join(timeout=self.config.join_timeout_s)
            if self._tick_thread.is_alive():
                logger.warning("Fusion tick thread did not stop in time")
        self._tick_thread = None
        self.controller.stop_monitoring(timeout=self.config.join_timeout_s)
        self.tracker.stop()
        logger.info("Positioning service stopped")

    def _tick_loop(self):
        last_summary = time.monotonic()
        while not self._stop_event.wait(self.config.tick_interval_s):
            try:
                self.tick()
            except Exception:
                logger.exception("Fusion tick failed")

            if time.monotonic() - last_summary > self.config.summary_interval_s:
                last_summary = time.monotonic()
                logger.info(
                    f"Status: state={self.tracker.state.value}, "
                    f"estimates={self.metrics.get_counter('position_estimates')}, "
                    f"failed={self.metrics.get_counter('failed_cycles')}"
                )

    # ------------------------------------------------------------------
    # Navigation and overrides
    # ------------------------------------------------------------------

    def navigate_to(self, destination_id: str) -> bool:
        """Start navigation from the current fused position."""
        position = self.current_position()
        if position is None:
            logger.warning("Cannot navigate without a position fix")
            return False
        return self.controller.start_navigation(destination_id, position)

    def set_manual_position(self, position: Position):
        """Apply a user-confirmed position and publish it."""
        self.tracker.set_manual_position(position)
        self.position_channel.publish(PositionEstimate(
            position=position,
            accuracy=1.0,
            confidence=1.0,
            fix_type=FixType.MANUAL,
            timestamp=self._clock(),
            sources=(PositionSource.MANUAL,),
        ))

    def _override_position(self, position: Position):
        self.engine.reset(position)


# ----------------------------------------------------------------------
# Demo building
# ----------------------------------------------------------------------

def create_demo_building():
    """
    Two 20 m x 20 m floors joined by stairs and an elevator.

    Returns:
        (registry, graph, landmarks)
    """
    registry = EmitterRegistry()
    for floor in (0, 1):
        for i, (x, y) in enumerate([(0.0, 0.0), (20.0, 0.0), (0.0, 20.0), (20.0, 20.0), (10.0, 10.0)]):
            registry.add(KnownEmitter(f"BLE_{floor}_{i}", Position(x, y, floor), EmitterKind.BLE))
        registry.add(KnownEmitter(f"02:00:00:00:0{floor}:01", Position(5.0, 15.0, floor), EmitterKind.WIFI))
        registry.add(KnownEmitter(f"02:00:00:00:0{floor}:02", Position(15.0, 5.0, floor), EmitterKind.WIFI))

    graph = NavGraph()
    for floor in (0, 1):
        graph.create_grid_graph(rows=3, cols=3, floor=floor, width=20.0, height=20.0)
    graph.connect_nodes(grid_node_id(0, 0, 2), grid_node_id(1, 0, 2), transition_type=TransitionType.STAIRS)
    graph.connect_nodes(grid_node_id(0, 2, 0), grid_node_id(1, 2, 0), transition_type=TransitionType.ELEVATOR)

    landmarks = [
        Landmark("entrance", "Main entrance", Position(0.0, 0.0, 0), "Glass doors"),
        Landmark("stairs", "Stairwell", Position(20.0, 0.0, 0)),
        Landmark("cafe", "Cafe", Position(10.0, 10.0, 1), "Next to the elevator lobby"),
    ]
    return registry, graph, landmarks


def _point_along(waypoints: Sequence[Position], distance_m: float) -> Position:
    """Position distance_m along the waypoint polyline (clamped to its end)."""
    travelled = 0.0
    for a, b in zip(waypoints, waypoints[1:]):
        if not a.is_same_floor(b):
            # Floor change takes a fixed walking distance, then jumps to b
            if travelled + DEMO_TRANSITION_WALK_M >= distance_m:
                return a
            travelled += DEMO_TRANSITION_WALK_M
            continue
        segment = a.distance_2d(b)
        if segment > 0 and travelled + segment >= distance_m:
            ratio = (distance_m - travelled) / segment
            return Position(a.x + ratio * (b.x - a.x), a.y + ratio * (b.y - a.y), a.floor)
        travelled += segment
    return waypoints[-1]


def run_demo(duration_s: float, destination_id: str = grid_node_id(1, 2, 2), seed: int = 7) -> MetricsCollector:
    """
    Walk a simulated user through the demo building.

    Returns:
        Metrics collected during the run
    """
    registry, graph, landmarks = create_demo_building()
    service_section = app_config.SERVICE_CONFIG
    controller_config, metrics_config = app_config.build_navigation_configs()
    service = PositioningService(
        registry,
        graph,
        landmarks=landmarks,
        config=ServiceConfig(
            tick_interval_s=service_section["tick_interval_s"],
            summary_interval_s=service_section["summary_interval_s"],
        ),
        fusion_config=app_config.build_fusion_config(),
        recovery_config=app_config.build_recovery_config(),
        controller_config=controller_config,
        metrics_calculator=NavigationMetricsCalculator(metrics_config),
    )
    simulator = SignalSimulator(registry, rng_seed=seed)
    calc = service.controller.metrics_calculator

    def log_progress(progress: NavigationProgress):
        if progress.arrived:
            logger.info("Arrived at destination")
        elif progress.current_instruction is not None:
            logger.info(
                f"{progress.current_instruction.text} | "
                f"{calc.format_distance(progress.remaining_distance_m)} left, "
                f"ETA {calc.format_eta(progress.eta_s)}"
            )

    def log_recovery(event: RecoveryEvent):
        logger.warning(f"Recovery event: {event}")

    service.controller.progress_channel.subscribe(log_progress)
    service.tracker.add_listener(log_recovery)

    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    true_position = Position(1.0, 1.0, 0)
    walking_speed = metrics_config.walking_speed_mps
    started = time.time()
    walk_start: Optional[float] = None
    waypoints: List[Position] = []

    service.start()
    try:
        while not stop_requested.is_set() and time.time() - started < duration_s:
            now = time.time()
            if not service.controller.is_navigating and walk_start is None:
                if service.current_position() is not None and service.navigate_to(destination_id):
                    waypoints = [n.position for n in service.controller.current_path]
                    walk_start = now
            if walk_start is not None and waypoints:
                true_position = _point_along(waypoints, (now - walk_start) * walking_speed)

            service.engine.submit_ble_readings(simulator.ble_readings(true_position, now))
            service.engine.submit_wifi_scan(simulator.wifi_scan(true_position, now))
            stop_requested.wait(service.config.tick_interval_s)
    finally:
        service.stop()

    logger.info(f"Final position: {service.current_position()}")
    return service.metrics


def main():
    parser = argparse.ArgumentParser(description='Indoor positioning and navigation demo')
    parser.add_argument('--duration', '-t', type=float, default=10.0,
                        help='Demo duration in seconds')
    parser.add_argument('--destination', type=str, default=grid_node_id(1, 2, 2),
                        help='Destination node id')
    parser.add_argument('--seed', type=int, default=7,
                        help='Simulator random seed')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()
    app_config.configure_logging("DEBUG" if args.debug else None)

    metrics = run_demo(args.duration, destination_id=args.destination, seed=args.seed)
    metrics.print_summary()


if __name__ == "__main__":
    main()
