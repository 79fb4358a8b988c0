"""
Navigation Controller.

Owns the active route and keeps it valid while the user walks:

1. start_navigation(): route from the closest graph node to the destination
2. check_position_and_reroute(): if the fused position drifts more than
   off_path_threshold_m from the route and the cooldown has elapsed,
   replace the route from the current position
3. update_progress(): remaining distance, ETA, current instruction, arrival

The two thresholds keep transient position noise from causing reroute
thrashing:
    - checks run at most once per check_interval_s
    - reroutes run at most once per min_reroute_interval_s
"""

from typing import Callable, Dict, List, Optional
from dataclasses import dataclass
import logging
import threading
import time

from indoornav_core.proto.position import Position
from indoornav_core.proto.navigation import (
    InstructionType,
    NavigationInstruction,
    NavigationProgress,
    Path,
    RerouteEvent,
)
from indoornav_core.navigation.graph import NavGraph, NavNode
from indoornav_core.navigation.path_calculator import PathCalculator
from indoornav_core.navigation.instructions import InstructionGenerator
from indoornav_core.navigation.metrics_calculator import NavigationMetricsCalculator
from indoornav_core.io.channel import BoundedEventQueue, LatestValueChannel
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class NavigationControllerConfig:
    """
    Configuration for the navigation controller.

    Attributes:
        off_path_threshold_m: Deviation that makes a reroute eligible (m)
        min_reroute_interval_s: Cooldown between route computations (s)
        check_interval_s: Minimum spacing of position checks (s)
        floor_mismatch_penalty_m: Added to distances across floors (m)
        arrival_threshold_m: Distance to destination counted as arrival (m)
        event_queue_size: Capacity of the reroute event queue
    """

    off_path_threshold_m: float = 5.0
    min_reroute_interval_s: float = 15.0
    check_interval_s: float = 1.0
    floor_mismatch_penalty_m: float = 50.0
    arrival_threshold_m: float = 2.0
    event_queue_size: int = 50

    def __post_init__(self):
        """Validate configuration."""
        if self.off_path_threshold_m <= 0:
            raise ValueError("off_path_threshold must be positive")
        if self.min_reroute_interval_s < 0 or self.check_interval_s < 0:
            raise ValueError("Intervals cannot be negative")
        if self.floor_mismatch_penalty_m < 0:
            raise ValueError("floor_mismatch_penalty cannot be negative")
        if self.arrival_threshold_m < 0:
            raise ValueError("arrival_threshold cannot be negative")
        if self.event_queue_size <= 0:
            raise ValueError("event_queue_size must be positive")


class NavigationController:
    """
    Route ownership, deviation checks and progress publishing.

    Usage:
        controller = NavigationController(graph, metrics=metrics)
        controller.path_channel.subscribe(draw_route)
        controller.reroutes.add_listener(lambda ev: log_reroute(ev))

        if controller.start_navigation("room_101", fused_position):
            controller.start_monitoring(lambda: position_channel.latest().position)
        ...
        controller.stop_monitoring()
        controller.stop_navigation()

    Notes:
        - clock is injectable (default time.monotonic) so cadence and
          cooldown can be driven deterministically
        - The reroute cooldown runs from the last successful reroute;
          the first reroute after start may happen immediately
        - State is guarded by an RLock; the monitor thread and callers
          may interleave
    """

    def __init__(
        self,
        graph: NavGraph,
        path_calculator: Optional[PathCalculator] = None,
        instruction_generator: Optional[InstructionGenerator] = None,
        metrics_calculator: Optional[NavigationMetricsCalculator] = None,
        config: Optional[NavigationControllerConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or NavigationControllerConfig()
        self.metrics = metrics or MetricsCollector()
        self.graph = graph
        self.path_calculator = path_calculator or PathCalculator(graph, metrics=self.metrics)
        self.instruction_generator = instruction_generator or InstructionGenerator()
        self.metrics_calculator = metrics_calculator or NavigationMetricsCalculator()
        self._clock = clock

        self.path_channel: LatestValueChannel[Path] = LatestValueChannel(name='path')
        self.instruction_channel: LatestValueChannel[NavigationInstruction] = LatestValueChannel(name='instruction')
        self.progress_channel: LatestValueChannel[NavigationProgress] = LatestValueChannel(name='progress')
        self.reroutes: BoundedEventQueue[RerouteEvent] = BoundedEventQueue(
            maxsize=self.config.event_queue_size, metrics=self.metrics)

        self._lock = threading.RLock()
        self._current_path: List[NavNode] = []
        self._instructions: List[NavigationInstruction] = []
        self._destination_id: Optional[str] = None
        self._is_navigating = False
        self._is_paused = False
        self._last_check: Optional[float] = None
        self._last_route_time: Optional[float] = None
        self._reroute_count = 0

        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_navigating(self) -> bool:
        with self._lock:
            return self._is_navigating

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._is_paused

    @property
    def destination_id(self) -> Optional[str]:
        with self._lock:
            return self._destination_id

    @property
    def current_path(self) -> List[NavNode]:
        with self._lock:
            return list(self._current_path)

    @property
    def instructions(self) -> List[NavigationInstruction]:
        with self._lock:
            return list(self._instructions)

    @property
    def reroute_count(self) -> int:
        with self._lock:
            return self._reroute_count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_navigation(self, destination_id: str, position: Position) -> bool:
        """
        Compute a route from the node closest to position and publish it.

        Returns:
            False if the destination is unknown or no route exists
        """
        if destination_id not in self.graph:
            logger.warning(f"Unknown destination node: {destination_id}")
            return False

        start = self.graph.find_closest_node(position, traversable_only=True)
        if start is None:
            logger.warning("Navigation graph is empty")
            return False

        nodes = self.path_calculator.calculate_path(start.id, destination_id)
        if not nodes:
            logger.warning(f"No route from {start.id} to {destination_id}")
            return False

        with self._lock:
            self._destination_id = destination_id
            self._is_navigating = True
            self._is_paused = False
            self._last_check = None
            self._last_route_time = None
            self._reroute_count = 0
            self._set_route(nodes)

        logger.info(f"Navigation started: {start.id} -> {destination_id} ({len(nodes)} nodes)")
        return True

    def stop_navigation(self):
        with self._lock:
            was_navigating = self._is_navigating
            self._is_navigating = False
            self._is_paused = False
            self._destination_id = None
            self._current_path = []
            self._instructions = []

        self.path_channel.publish(Path.empty())
        self.instruction_channel.clear()
        if was_navigating:
            logger.info("Navigation stopped")

    def pause(self):
        """Suspend deviation checks and progress updates."""
        with self._lock:
            if self._is_navigating:
                self._is_paused = True

    def resume(self):
        with self._lock:
            self._is_paused = False
            self._last_check = None

    # ------------------------------------------------------------------
    # Deviation and rerouting
    # ------------------------------------------------------------------

    def distance_to_path(self, position: Position) -> float:
        """Distance to the closest node of the active route (inf if none)."""
        with self._lock:
            nodes = list(self._current_path)
        if not nodes:
            return float('inf')
        penalty = self.config.floor_mismatch_penalty_m
        return min(position.distance_to(node.position, floor_penalty_m=penalty) for node in nodes)

    def check_position_and_reroute(
        self,
        position: Position,
        now: Optional[float] = None,
    ) -> Optional[RerouteEvent]:
        """
        Check deviation and reroute if eligible.

        Args:
            position: Latest fused position
            now: Time of the check (default: controller clock)

        Returns:
            RerouteEvent if the route was replaced, else None
        """
        now = self._clock() if now is None else now

        with self._lock:
            if not self._is_navigating or self._is_paused:
                return None
            if self._last_check is not None and now - self._last_check < self.config.check_interval_s:
                return None
            self._last_check = now
            destination_id = self._destination_id
            last_route_time = self._last_route_time

        deviation = self.distance_to_path(position)
        if deviation <= self.config.off_path_threshold_m:
            return None

        if last_route_time is not None and now - last_route_time < self.config.min_reroute_interval_s:
            logger.debug(f"Off path by {deviation:.1f}m, reroute on cooldown")
            self.metrics.increment('reroutes_suppressed')
            return None

        nodes = self.path_calculator.recalculate_from_position(position, destination_id)

        with self._lock:
            if not self._is_navigating or self._destination_id != destination_id:
                return None
            if not nodes:
                logger.warning(f"Reroute found no route to {destination_id}")
                return None
            self._last_route_time = now
            self._reroute_count += 1
            self._set_route(nodes)

        event = RerouteEvent(
            timestamp=now,
            distance_to_path_m=deviation,
            position=position,
            new_path=Path.from_nodes(nodes),
        )
        self.metrics.increment('reroutes')
        logger.info(f"Rerouted after {deviation:.1f}m deviation ({len(nodes)} nodes)")
        self.reroutes.put(event)
        return event

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def update_progress(self, position: Position) -> Optional[NavigationProgress]:
        """
        Publish progress for position; stops navigation on arrival.

        Returns:
            Progress, or None when not navigating
        """
        with self._lock:
            if not self._is_navigating or self._is_paused or not self._current_path:
                return None
            nodes = list(self._current_path)
            instructions = list(self._instructions)

        destination = nodes[-1].position
        arrived = (position.is_same_floor(destination) and
                   position.distance_2d(destination) <= self.config.arrival_threshold_m)

        calc = self.metrics_calculator
        index = calc.find_closest_node_index(nodes, position)

        if arrived:
            progress = NavigationProgress(
                remaining_distance_m=0.0,
                eta_s=0.0,
                current_instruction=None,
                closest_node_index=len(nodes) - 1,
                arrived=True,
            )
        else:
            instruction = self._instruction_for_index(nodes, instructions, index)
            progress = NavigationProgress(
                remaining_distance_m=calc.calculate_remaining_distance(nodes, position),
                eta_s=calc.calculate_remaining_eta(nodes, position),
                current_instruction=instruction,
                closest_node_index=index,
            )
            if instruction is not None and instruction != self.instruction_channel.latest():
                self.instruction_channel.publish(instruction)

        self.progress_channel.publish(progress)

        if arrived:
            logger.info(f"Arrived at {nodes[-1].id}")
            self.metrics.increment('arrivals')
            self.stop_navigation()
        return progress

    # ------------------------------------------------------------------
    # Background monitor
    # ------------------------------------------------------------------

    def start_monitoring(self, position_provider: Callable[[], Optional[Position]]):
        """
        Poll position_provider every check_interval_s on a daemon thread.

        Each poll runs the deviation check and a progress update.
        """
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            logger.warning("Navigation monitor already running")
            return

        self._monitor_stop.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            args=(position_provider,),
            name='nav-monitor',
            daemon=True,
        )
        self._monitor_thread.start()
        logger.debug("Navigation monitor started")

    def stop_monitoring(self, timeout: float = 2.0):
        self._monitor_stop.set()
        thread = self._monitor_thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Navigation monitor did not stop in time")
        self._monitor_thread = None

    def _monitor_loop(self, position_provider: Callable[[], Optional[Position]]):
        interval = max(self.config.check_interval_s, 0.01)
        while not self._monitor_stop.wait(interval):
            if not self.is_navigating:
                continue
            try:
                position = position_provider()
                if position is None:
                    continue
                self.check_position_and_reroute(position)
                self.update_progress(position)
            except Exception:
                logger.exception("Navigation monitor cycle failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_route(self, nodes: List[NavNode]):
        """Install a new route; caller holds the lock."""
        self._current_path = list(nodes)
        self._instructions = self.instruction_generator.generate_instructions(nodes)
        self.path_channel.publish(Path.from_nodes(nodes))
        if self._instructions:
            self.instruction_channel.publish(self._instructions[0])

    @staticmethod
    def _instruction_for_index(
        nodes: List[NavNode],
        instructions: List[NavigationInstruction],
        index: int,
    ) -> Optional[NavigationInstruction]:
        """First non-START instruction at or beyond path index."""
        positions: Dict[str, int] = {}
        for i, node in enumerate(nodes):
            positions.setdefault(node.id, i)
        for instruction in instructions:
            if instruction.type == InstructionType.START:
                continue
            if positions.get(instruction.node_id, -1) >= index:
                return instruction
        return None


def create_default_controller(
    graph: NavGraph,
    metrics: Optional[MetricsCollector] = None,
    clock: Callable[[], float] = time.monotonic,
) -> NavigationController:
    return NavigationController(graph, metrics=metrics, clock=clock)
