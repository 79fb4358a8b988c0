"""
Navigation Output Schemas.

Defines paths, turn-by-turn instructions, progress updates and reroute
events published by the navigation controller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .position import Position


class TransitionType(Enum):
    """How a floor-transition edge is traversed."""

    STAIRS = "stairs"
    ELEVATOR = "elevator"
    ESCALATOR = "escalator"


class InstructionType(Enum):
    START = "START"
    CONTINUE = "CONTINUE"
    TURN = "TURN"
    FLOOR_CHANGE = "FLOOR_CHANGE"
    DESTINATION = "DESTINATION"


class Direction(Enum):
    FORWARD = "FORWARD"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    SLIGHT_LEFT = "SLIGHT_LEFT"
    SLIGHT_RIGHT = "SLIGHT_RIGHT"
    TURN_AROUND = "TURN_AROUND"
    UP = "UP"
    DOWN = "DOWN"


@dataclass(frozen=True)
class Path:
    """
    Ordered route through the building.

    Attributes:
        start: First waypoint
        end: Last waypoint
        waypoints: Ordered positions, first == start, last == end
        node_ids: Graph node ids matching waypoints (may be empty)
    """

    start: Optional[Position]
    end: Optional[Position]
    waypoints: Tuple[Position, ...] = ()
    node_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        """Validate path shape."""
        if self.waypoints:
            if self.waypoints[0] != self.start or self.waypoints[-1] != self.end:
                raise ValueError("Path start/end must match first/last waypoint")
        if self.node_ids and len(self.node_ids) != len(self.waypoints):
            raise ValueError("node_ids must align with waypoints")

    @property
    def is_valid(self) -> bool:
        return len(self.waypoints) > 0

    def __len__(self) -> int:
        return len(self.waypoints)

    @property
    def floors(self) -> List[int]:
        """Distinct floors in visiting order."""
        seen: List[int] = []
        for p in self.waypoints:
            if not seen or seen[-1] != p.floor:
                seen.append(p.floor)
        return seen

    @classmethod
    def empty(cls) -> "Path":
        return cls(start=None, end=None)

    @classmethod
    def from_nodes(cls, nodes: list) -> "Path":
        """Build from an ordered list of NavNode (empty list gives empty path)."""
        if not nodes:
            return cls.empty()
        waypoints = tuple(n.position for n in nodes)
        return cls(
            start=waypoints[0],
            end=waypoints[-1],
            waypoints=waypoints,
            node_ids=tuple(n.id for n in nodes),
        )


@dataclass(frozen=True)
class NavigationInstruction:
    """
    One turn-by-turn instruction.

    Attributes:
        type: Instruction kind
        direction: Turn or vertical direction
        distance_m: Distance covered by this instruction (m)
        text: Human-readable text
        node_id: Graph node the instruction applies at
    """

    type: InstructionType
    direction: Direction
    distance_m: float
    text: str
    node_id: str

    @property
    def is_floor_change(self) -> bool:
        return self.type == InstructionType.FLOOR_CHANGE

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'direction': self.direction.value,
            'distance_m': self.distance_m,
            'text': self.text,
            'node_id': self.node_id,
        }


@dataclass(frozen=True)
class NavigationProgress:
    """
    Progress along the active route.

    Attributes:
        remaining_distance_m: Distance left to destination (m)
        eta_s: Estimated seconds to destination
        current_instruction: Next instruction to follow (None at arrival)
        closest_node_index: Index of closest node on path
        arrived: True once within arrival threshold of destination
    """

    remaining_distance_m: float
    eta_s: float
    current_instruction: Optional[NavigationInstruction]
    closest_node_index: int
    arrived: bool = False


@dataclass(frozen=True)
class RerouteEvent:
    """
    Active path was replaced after deviation.

    Attributes:
        timestamp: Monotonic time of the reroute (s)
        distance_to_path_m: Deviation that triggered it (m)
        position: Agent position at reroute time
        new_path: Replacement path
    """

    timestamp: float
    distance_to_path_m: float
    position: Position
    new_path: Path = field(default_factory=Path.empty)
