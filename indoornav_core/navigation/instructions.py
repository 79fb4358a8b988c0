"""
Turn-by-turn Instruction Generator.

Converts an ordered node path into START / CONTINUE / TURN /
FLOOR_CHANGE / DESTINATION instructions.

Turn angle at node i is the signed angle between segments (i-1 -> i)
and (i -> i+1):
    angle = atan2(v1 x v2, v1 . v2)
Positive angles are right turns in floor-plan coordinates (y grows
downwards on the plan image).
"""

from typing import List, Optional
from dataclasses import dataclass
import logging
import math

from indoornav_core.proto.position import Position
from indoornav_core.proto.navigation import (
    Direction,
    InstructionType,
    NavigationInstruction,
    TransitionType,
)
from indoornav_core.navigation.graph import NavNode

logger = logging.getLogger(__name__)


DIRECTION_TEXT = {
    Direction.FORWARD: "Continue straight",
    Direction.LEFT: "Turn left",
    Direction.RIGHT: "Turn right",
    Direction.SLIGHT_LEFT: "Bear slightly left",
    Direction.SLIGHT_RIGHT: "Bear slightly right",
    Direction.TURN_AROUND: "Make a U-turn",
    Direction.UP: "Go up",
    Direction.DOWN: "Go down",
}


@dataclass
class InstructionConfig:
    """
    Configuration for instruction generation.

    Attributes:
        turn_around_deg: |angle| above this is a U-turn
        turn_deg: |angle| above this is a full left/right turn
        slight_turn_deg: |angle| above this is a slight turn
        min_continue_distance_m: Segments longer than this get a CONTINUE
        default_transition_distance_m: Floor-change distance when no connection is known
        default_transition_type: Assumed transition type when unknown
    """

    turn_around_deg: float = 150.0
    turn_deg: float = 45.0
    slight_turn_deg: float = 20.0
    min_continue_distance_m: float = 5.0
    default_transition_distance_m: float = 5.0
    default_transition_type: TransitionType = TransitionType.STAIRS

    def __post_init__(self):
        """Validate configuration."""
        if not 0 <= self.slight_turn_deg <= self.turn_deg <= self.turn_around_deg <= 180:
            raise ValueError("Turn thresholds must satisfy 0 <= slight <= turn <= turn_around <= 180")
        if self.min_continue_distance_m < 0:
            raise ValueError("min_continue_distance cannot be negative")


def turn_angle_degrees(previous: Position, current: Position, following: Position) -> float:
    """
    Signed turn angle at current, in degrees within [-180, 180].

    Returns 0.0 when either segment has zero length.
    """
    v1x, v1y = current.x - previous.x, current.y - previous.y
    v2x, v2y = following.x - current.x, following.y - current.y
    if (v1x == 0 and v1y == 0) or (v2x == 0 and v2y == 0):
        return 0.0
    cross = v1x * v2y - v1y * v2x
    dot = v1x * v2x + v1y * v2y
    return math.degrees(math.atan2(cross, dot))


def classify_turn(angle_deg: float, config: Optional[InstructionConfig] = None) -> Direction:
    """Map a signed turn angle to a Direction."""
    config = config or InstructionConfig()
    if abs(angle_deg) > config.turn_around_deg:
        return Direction.TURN_AROUND
    if angle_deg > config.turn_deg:
        return Direction.RIGHT
    if angle_deg < -config.turn_deg:
        return Direction.LEFT
    if angle_deg > config.slight_turn_deg:
        return Direction.SLIGHT_RIGHT
    if angle_deg < -config.slight_turn_deg:
        return Direction.SLIGHT_LEFT
    return Direction.FORWARD


def format_instruction_distance(distance_m: float) -> str:
    """Spoken distance: exact under 10 m, then rounded down to 5 m, then to 10 m."""
    if distance_m < 10:
        return f"{int(distance_m)} meters"
    if distance_m < 100:
        return f"{int(distance_m / 5) * 5} meters"
    return f"{int(distance_m / 10) * 10} meters"


class InstructionGenerator:
    """
    Builds instructions for a node path.

    Usage:
        generator = InstructionGenerator()
        instructions = generator.generate_instructions(path_nodes)
        for instruction in instructions:
            print(instruction.text)

    Notes:
        - An empty path yields no instructions
        - A single-node path yields START and DESTINATION at that node
        - Turns are only evaluated when all three nodes share a floor
    """

    def __init__(self, config: Optional[InstructionConfig] = None):
        self.config = config or InstructionConfig()

    def generate_instructions(self, nodes: List[NavNode]) -> List[NavigationInstruction]:
        if not nodes:
            return []

        instructions = [NavigationInstruction(
            type=InstructionType.START,
            direction=Direction.FORWARD,
            distance_m=0.0,
            text="Start navigation",
            node_id=nodes[0].id,
        )]

        for i in range(len(nodes) - 1):
            current = nodes[i]
            following = nodes[i + 1]

            if current.floor_id != following.floor_id:
                instructions.append(self._floor_change(current, following))
                continue

            segment = self._segment_distance(current, following)
            if segment > self.config.min_continue_distance_m and i > 0:
                instructions.append(NavigationInstruction(
                    type=InstructionType.CONTINUE,
                    direction=Direction.FORWARD,
                    distance_m=segment,
                    text=f"Continue for {format_instruction_distance(segment)}",
                    node_id=following.id,
                ))

            if i + 2 < len(nodes):
                after = nodes[i + 2]
                if after.floor_id == following.floor_id:
                    turn = self._turn(current, following, after)
                    if turn is not None:
                        instructions.append(turn)

        instructions.append(NavigationInstruction(
            type=InstructionType.DESTINATION,
            direction=Direction.FORWARD,
            distance_m=0.0,
            text="You have reached your destination",
            node_id=nodes[-1].id,
        ))

        logger.debug(f"Generated {len(instructions)} instructions for {len(nodes)} nodes")
        return instructions

    def _turn(self, previous: NavNode, current: NavNode, following: NavNode) -> Optional[NavigationInstruction]:
        angle = turn_angle_degrees(previous.position, current.position, following.position)
        direction = classify_turn(angle, self.config)
        if direction == Direction.FORWARD:
            return None
        return NavigationInstruction(
            type=InstructionType.TURN,
            direction=direction,
            distance_m=0.0,
            text=DIRECTION_TEXT[direction],
            node_id=current.id,
        )

    def _floor_change(self, current: NavNode, following: NavNode) -> NavigationInstruction:
        connection = current.connection_to(following.id)
        transition = self.config.default_transition_type
        distance = self.config.default_transition_distance_m
        if connection is not None:
            distance = connection.distance
            if connection.transition_type is not None:
                transition = connection.transition_type

        going_up = following.floor_id > current.floor_id
        direction = Direction.UP if going_up else Direction.DOWN
        text = f"Take the {transition.value} {'up' if going_up else 'down'} to floor {following.floor_id}"

        return NavigationInstruction(
            type=InstructionType.FLOOR_CHANGE,
            direction=direction,
            distance_m=distance,
            text=text,
            node_id=current.id,
        )

    @staticmethod
    def _segment_distance(current: NavNode, following: NavNode) -> float:
        connection = current.connection_to(following.id)
        if connection is not None:
            return connection.distance
        return current.position.distance_2d(following.position)


def create_default_generator(config: Optional[InstructionConfig] = None) -> InstructionGenerator:
    return InstructionGenerator(config)
