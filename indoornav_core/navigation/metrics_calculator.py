"""
Navigation Metrics Calculator.

ETA and remaining-distance computation along a node path.

ETA per segment:
    t = distance / walking_speed
    stairs:    t / stairs_speed_factor      (slower)
    escalator: t / escalator_speed_factor   (faster)
    elevator:  t + elevator_wait_s
"""

from typing import List, Optional
from dataclasses import dataclass
import logging

from indoornav_core.proto.position import Position
from indoornav_core.proto.navigation import TransitionType
from indoornav_core.navigation.graph import NavNode

logger = logging.getLogger(__name__)


@dataclass
class NavigationMetricsConfig:
    """
    Configuration for ETA and distance metrics.

    Attributes:
        walking_speed_mps: Average walking speed (m/s)
        stairs_speed_factor: Speed multiplier on stairs (< 1 is slower)
        escalator_speed_factor: Speed multiplier on escalators (> 1 is faster)
        elevator_wait_s: Fixed wait added per elevator segment (s)
        floor_penalty_m: Added to position distances across floors (m)
    """

    walking_speed_mps: float = 1.4
    stairs_speed_factor: float = 0.7
    escalator_speed_factor: float = 1.2
    elevator_wait_s: float = 15.0
    floor_penalty_m: float = 10.0

    def __post_init__(self):
        """Validate configuration."""
        if self.walking_speed_mps <= 0:
            raise ValueError("walking_speed must be positive")
        if self.stairs_speed_factor <= 0 or self.escalator_speed_factor <= 0:
            raise ValueError("Speed factors must be positive")
        if self.elevator_wait_s < 0:
            raise ValueError("elevator_wait cannot be negative")
        if self.floor_penalty_m < 0:
            raise ValueError("floor_penalty cannot be negative")


class NavigationMetricsCalculator:
    """
    Computes ETA, remaining distance and display strings.

    Usage:
        calc = NavigationMetricsCalculator()
        eta = calc.calculate_eta_seconds(path_nodes)
        remaining = calc.calculate_remaining_distance(path_nodes, position)
        print(calc.format_distance(remaining), calc.format_eta(eta))
    """

    def __init__(self, config: Optional[NavigationMetricsConfig] = None):
        self.config = config or NavigationMetricsConfig()

    def calculate_eta_seconds(self, nodes: List[NavNode]) -> float:
        """Total walking time along the path (s)."""
        total = 0.0
        for current, following in zip(nodes, nodes[1:]):
            total += self._segment_time(current, following)
        return total

    def calculate_remaining_distance(self, nodes: List[NavNode], position: Position) -> float:
        """
        Distance from position to the end of the path (m).

        Measured to the closest (or just-passed-to-next) path node, then
        along the remaining connections.
        """
        if not nodes:
            return 0.0
        index = self.find_closest_node_index(nodes, position)
        remaining = self._distance(position, nodes[index].position)
        for current, following in zip(nodes[index:], nodes[index + 1:]):
            remaining += self._segment_distance(current, following)
        return remaining

    def calculate_remaining_eta(self, nodes: List[NavNode], position: Position) -> float:
        """ETA from position: walk to the closest node, then the rest of the path."""
        if not nodes:
            return 0.0
        index = self.find_closest_node_index(nodes, position)
        approach = self._distance(position, nodes[index].position) / self.config.walking_speed_mps
        return approach + self.calculate_eta_seconds(nodes[index:])

    def find_closest_node_index(self, nodes: List[NavNode], position: Position) -> int:
        """
        Index of the path node the agent should measure from.

        If the agent is past the closest node (positive dot product with
        the next segment), the next index wins.
        """
        if not nodes:
            return 0

        closest = 0
        best = float('inf')
        for index, node in enumerate(nodes):
            distance = self._distance(position, node.position)
            if distance < best:
                best = distance
                closest = index

        if closest == len(nodes) - 1:
            return closest

        here = nodes[closest].position
        following = nodes[closest + 1].position
        dx, dy = following.x - here.x, following.y - here.y
        px, py = position.x - here.x, position.y - here.y
        if dx * px + dy * py > 0:
            return closest + 1
        return closest

    @staticmethod
    def format_eta(eta_seconds: float) -> str:
        minutes = int(eta_seconds // 60)
        seconds = int(eta_seconds % 60)
        if minutes > 0 and seconds > 0:
            return f"{minutes} min {seconds} sec"
        if minutes > 0:
            return f"{minutes} min"
        return f"{seconds} sec"

    @staticmethod
    def format_distance(distance_m: float) -> str:
        if distance_m < 1000:
            return f"{int(distance_m)} m"
        return f"{distance_m / 1000:.1f} km"

    def _segment_time(self, current: NavNode, following: NavNode) -> float:
        connection = current.connection_to(following.id)
        if connection is None:
            return self._distance(current.position, following.position) / self.config.walking_speed_mps

        seconds = connection.distance / self.config.walking_speed_mps
        if connection.is_floor_transition:
            if connection.transition_type == TransitionType.STAIRS:
                seconds /= self.config.stairs_speed_factor
            elif connection.transition_type == TransitionType.ESCALATOR:
                seconds /= self.config.escalator_speed_factor
            elif connection.transition_type == TransitionType.ELEVATOR:
                seconds += self.config.elevator_wait_s
        return seconds

    def _segment_distance(self, current: NavNode, following: NavNode) -> float:
        connection = current.connection_to(following.id)
        if connection is not None:
            return connection.distance
        return self._distance(current.position, following.position)

    def _distance(self, a: Position, b: Position) -> float:
        return a.distance_to(b, floor_penalty_m=self.config.floor_penalty_m)
