"""
Navigation Module: Graph, routing, instructions and deviation handling.

Key classes:
- NavGraph: Building graph with A* path search and import/export
- PathCalculator: Memoized path search with suffix splicing
- InstructionGenerator: Turn-by-turn instructions from a node path
- NavigationMetricsCalculator: ETA and remaining distance
- NavigationController: Active route, rerouting and progress channels
"""

from .graph import (
    NavGraph,
    NavNode,
    NavNodeConnection,
    GraphConfig,
    grid_node_id,
)
from .path_calculator import PathCalculator
from .instructions import (
    InstructionGenerator,
    InstructionConfig,
    classify_turn,
    turn_angle_degrees,
    format_instruction_distance,
    create_default_generator,
)
from .metrics_calculator import (
    NavigationMetricsCalculator,
    NavigationMetricsConfig,
)
from .controller import (
    NavigationController,
    NavigationControllerConfig,
    create_default_controller,
)

__all__ = [
    # Graph
    'NavGraph',
    'NavNode',
    'NavNodeConnection',
    'GraphConfig',
    'grid_node_id',
    'PathCalculator',
    # Instructions and metrics
    'InstructionGenerator',
    'InstructionConfig',
    'classify_turn',
    'turn_angle_degrees',
    'format_instruction_distance',
    'create_default_generator',
    'NavigationMetricsCalculator',
    'NavigationMetricsConfig',
    # Controller
    'NavigationController',
    'NavigationControllerConfig',
    'create_default_controller',
]
