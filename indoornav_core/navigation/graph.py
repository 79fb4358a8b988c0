"""
Navigation Graph and Path Search.

Weighted graph of walkable nodes. Same-floor edges cost their length;
floor-transition edges carry their own distance scaled by a traversal
cost factor (stairs, elevator, escalator). Shortest paths use A* with a
planar Euclidean heuristic.

Graph description format (import/export):
    {"nodes": [{"id": "n1", "x": 0.0, "y": 0.0, "floor": 0,
                "connections": ["n2"],
                "connection_details": [{"target": "n2", "distance": 4.0,
                                        "transition_type": null}]}]}
connection_details is optional; without it distances are recomputed
from positions.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import heapq
import itertools
import json
import logging
import math

from indoornav_core.proto.position import Position
from indoornav_core.proto.navigation import TransitionType
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavNodeConnection:
    """
    Directed half of an edge.

    Attributes:
        target_node_id: Node this connection leads to
        distance: Walking distance (m)
        is_floor_transition: True if the endpoints are on different floors
        transition_type: How the floor change is made (None = unknown)
    """

    target_node_id: str
    distance: float
    is_floor_transition: bool = False
    transition_type: Optional[TransitionType] = None


@dataclass
class NavNode:
    """
    Walkable point in the building.

    Attributes:
        id: Node identifier
        position: Node location (floor included)
        connections: Outgoing connections
        is_traversable: False for closed areas (skipped unless an endpoint)
    """

    id: str
    position: Position
    connections: List[NavNodeConnection] = field(default_factory=list)
    is_traversable: bool = True

    @property
    def floor_id(self) -> int:
        return self.position.floor

    def connection_to(self, node_id: str) -> Optional[NavNodeConnection]:
        for connection in self.connections:
            if connection.target_node_id == node_id:
                return connection
        return None

    def is_connected_to(self, node_id: str) -> bool:
        return self.connection_to(node_id) is not None

    @property
    def connected_node_ids(self) -> List[str]:
        return [c.target_node_id for c in self.connections]


@dataclass
class GraphConfig:
    """
    Configuration for the navigation graph.

    Attributes:
        closest_node_floor_penalty_m: Added to distance for nodes on another floor
        default_transition_distance_m: Distance of a floor transition if not given
        floor_transition_cost: Base multiplier for floor-transition edges
        accessible_transition_cost: Base multiplier when preferring accessible routes
        transition_type_factors: Extra multiplier per transition type
        unknown_transition_factor: Multiplier when the type is unknown
        preferred_transition_factor: Multiplier for the preferred type
        prefer_accessible_routes: Penalize floor changes more heavily
        preferred_transition_type: Transition type to favour (None = no preference)
    """

    closest_node_floor_penalty_m: float = 100.0
    default_transition_distance_m: float = 5.0
    floor_transition_cost: float = 5.0
    accessible_transition_cost: float = 10.0
    transition_type_factors: Dict[TransitionType, float] = field(default_factory=lambda: {
        TransitionType.STAIRS: 1.0,
        TransitionType.ELEVATOR: 1.5,
        TransitionType.ESCALATOR: 1.2,
    })
    unknown_transition_factor: float = 1.5
    preferred_transition_factor: float = 0.8
    prefer_accessible_routes: bool = False
    preferred_transition_type: Optional[TransitionType] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.closest_node_floor_penalty_m < 0:
            raise ValueError("closest_node_floor_penalty cannot be negative")
        if self.default_transition_distance_m <= 0:
            raise ValueError("default_transition_distance must be positive")
        if self.floor_transition_cost < 1.0 or self.accessible_transition_cost < 1.0:
            raise ValueError("Transition costs must be >= 1 to keep the heuristic admissible")


class NavGraph:
    """
    Building navigation graph.

    Usage:
        graph = NavGraph()
        graph.add_node("A", Position(0, 0, 0))
        graph.add_node("B", Position(10, 0, 0))
        graph.connect_nodes("A", "B")

        nodes = graph.find_path("A", "B")      # [NavNode A, NavNode B]
        closest = graph.find_closest_node(Position(9, 1, 0))

        data = graph.export_to_json()
        graph.import_from_json(data)

    Notes:
        - Invalid operations return False and leave the graph unmodified
        - version increments on every mutation (path caches key on it)
    """

    def __init__(
        self,
        config: Optional[GraphConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or GraphConfig()
        self.metrics = metrics or MetricsCollector()
        self._nodes: Dict[str, NavNode] = {}
        self._version = 0

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Optional[NavNode]:
        return self._nodes.get(node_id)

    @property
    def nodes(self) -> List[NavNode]:
        return list(self._nodes.values())

    def nodes_on_floor(self, floor: int) -> List[NavNode]:
        return [n for n in self._nodes.values() if n.floor_id == floor]

    def add_node(self, node_id: str, position: Position, is_traversable: bool = True) -> NavNode:
        """Add a node, replacing any node with the same id."""
        if not node_id:
            raise ValueError("Node id cannot be empty")
        node = NavNode(node_id, position, is_traversable=is_traversable)
        self._nodes[node_id] = node
        self._bump()
        return node

    def set_traversable(self, node_id: str, traversable: bool) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        node.is_traversable = traversable
        self._bump()
        return True

    def connect_nodes(
        self,
        node_id_a: str,
        node_id_b: str,
        distance: Optional[float] = None,
        transition_type: Optional[TransitionType] = None,
        bidirectional: bool = True,
    ) -> bool:
        """
        Connect two nodes (replacing an existing connection between them).

        Args:
            node_id_a: Source node
            node_id_b: Target node
            distance: Edge length (default: planar distance, or the default
                transition distance across floors)
            transition_type: Stairs/elevator/escalator for floor changes
            bidirectional: Also add the reverse connection

        Returns:
            False if either node is unknown, ids are equal or distance < 0
        """
        node_a = self._nodes.get(node_id_a)
        node_b = self._nodes.get(node_id_b)
        if node_a is None or node_b is None or node_id_a == node_id_b:
            return False
        if distance is not None and (distance < 0 or not math.isfinite(distance)):
            return False

        is_transition = node_a.floor_id != node_b.floor_id
        if distance is None:
            if is_transition:
                distance = self.config.default_transition_distance_m
            else:
                distance = node_a.position.distance_2d(node_b.position)

        self._set_connection(node_a, NavNodeConnection(
            node_id_b, distance, is_transition, transition_type if is_transition else None
        ))
        if bidirectional:
            self._set_connection(node_b, NavNodeConnection(
                node_id_a, distance, is_transition, transition_type if is_transition else None
            ))
        self._bump()
        return True

    def remove_connection(self, node_id_a: str, node_id_b: str) -> bool:
        """
        Remove the connection between two nodes in both directions.

        Returns:
            False if either node is unknown
        """
        node_a = self._nodes.get(node_id_a)
        node_b = self._nodes.get(node_id_b)
        if node_a is None or node_b is None:
            return False
        node_a.connections = [c for c in node_a.connections if c.target_node_id != node_id_b]
        node_b.connections = [c for c in node_b.connections if c.target_node_id != node_id_a]
        self._bump()
        return True

    def remove_node(self, node_id: str) -> bool:
        """Remove a node and every connection that references it."""
        if node_id not in self._nodes:
            return False
        del self._nodes[node_id]
        for node in self._nodes.values():
            node.connections = [c for c in node.connections if c.target_node_id != node_id]
        self._bump()
        return True

    def clear(self):
        self._nodes.clear()
        self._bump()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_closest_node(self, position: Position, traversable_only: bool = False) -> Optional[NavNode]:
        """
        Nearest node by planar distance plus a penalty for other floors.

        Returns:
            Closest node, or None if the graph is empty
        """
        best: Optional[NavNode] = None
        best_distance = math.inf
        for node in self._nodes.values():
            if traversable_only and not node.is_traversable:
                continue
            distance = position.distance_to(node.position, self.config.closest_node_floor_penalty_m)
            if distance < best_distance:
                best, best_distance = node, distance
        return best

    def edge_cost(self, connection: NavNodeConnection) -> float:
        """Search cost of traversing a connection."""
        if not connection.is_floor_transition:
            return connection.distance

        base = (self.config.accessible_transition_cost if self.config.prefer_accessible_routes
                else self.config.floor_transition_cost)
        if connection.transition_type is None:
            factor = self.config.unknown_transition_factor
        else:
            factor = self.config.transition_type_factors.get(
                connection.transition_type, self.config.unknown_transition_factor
            )
        if (self.config.preferred_transition_type is not None and
                connection.transition_type == self.config.preferred_transition_type):
            factor *= self.config.preferred_transition_factor

        return connection.distance * base * factor

    def find_path(self, start_id: str, end_id: str) -> List[NavNode]:
        """
        Weighted shortest path (A*).

        Args:
            start_id: Start node id
            end_id: Destination node id

        Returns:
            Ordered nodes start..end, or [] if unknown ids or no route
        """
        start = self._nodes.get(start_id)
        end = self._nodes.get(end_id)
        if start is None or end is None:
            return []
        if start_id == end_id:
            return [start]

        self.metrics.increment('path_searches')

        counter = itertools.count()
        open_heap: List[Tuple[float, int, str]] = [(self._heuristic(start, end), next(counter), start_id)]
        g_score: Dict[str, float] = {start_id: 0.0}
        came_from: Dict[str, str] = {}
        closed = set()

        while open_heap:
            _, _, current_id = heapq.heappop(open_heap)
            if current_id == end_id:
                return self._reconstruct(came_from, end_id)
            if current_id in closed:
                continue
            closed.add(current_id)

            current = self._nodes[current_id]
            for connection in current.connections:
                neighbour = self._nodes.get(connection.target_node_id)
                if neighbour is None or neighbour.id in closed:
                    continue
                if not neighbour.is_traversable and neighbour.id != end_id:
                    continue

                tentative = g_score[current_id] + self.edge_cost(connection)
                if tentative < g_score.get(neighbour.id, math.inf):
                    g_score[neighbour.id] = tentative
                    came_from[neighbour.id] = current_id
                    heapq.heappush(
                        open_heap,
                        (tentative + self._heuristic(neighbour, end), next(counter), neighbour.id),
                    )

        self.metrics.increment_drop('no_route')
        logger.info(f"No route from {start_id} to {end_id}")
        return []

    def path_length(self, nodes: List[NavNode]) -> float:
        """Sum of connection distances along a node path."""
        total = 0.0
        for current, following in zip(nodes, nodes[1:]):
            connection = current.connection_to(following.id)
            if connection is not None:
                total += connection.distance
            else:
                total += current.position.distance_2d(following.position)
        return total

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_to_dict(self) -> dict:
        nodes = []
        for node in self._nodes.values():
            nodes.append({
                'id': node.id,
                'x': node.position.x,
                'y': node.position.y,
                'floor': node.position.floor,
                'connections': node.connected_node_ids,
                'connection_details': [
                    {
                        'target': c.target_node_id,
                        'distance': c.distance,
                        'transition_type': c.transition_type.value if c.transition_type else None,
                    }
                    for c in node.connections
                ],
                'traversable': node.is_traversable,
            })
        return {'nodes': nodes}

    def export_to_json(self, indent: int = 2) -> str:
        return json.dumps(self.export_to_dict(), indent=indent)

    def import_from_dict(self, data: dict) -> bool:
        """
        Replace the graph from a description (two passes: nodes, then connections).

        Returns:
            False on malformed input; the current graph is then left unchanged
        """
        try:
            nodes: Dict[str, NavNode] = {}
            for row in data['nodes']:
                node_id = str(row['id'])
                position = Position(float(row['x']), float(row['y']), int(row.get('floor', 0)))
                nodes[node_id] = NavNode(node_id, position, is_traversable=bool(row.get('traversable', True)))

            for row in data['nodes']:
                node = nodes[str(row['id'])]
                details = {str(d['target']): d for d in row.get('connection_details', [])}
                for target_id in row.get('connections', []):
                    target_id = str(target_id)
                    target = nodes.get(target_id)
                    if target is None:
                        raise ValueError(f"Connection to unknown node {target_id}")
                    is_transition = node.floor_id != target.floor_id
                    detail = details.get(target_id, {})
                    distance = detail.get('distance')
                    if distance is None:
                        distance = (self.config.default_transition_distance_m if is_transition
                                    else node.position.distance_2d(target.position))
                    transition = detail.get('transition_type')
                    node.connections.append(NavNodeConnection(
                        target_id,
                        float(distance),
                        is_transition,
                        TransitionType(transition) if transition else None,
                    ))
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Graph import failed: {e}")
            return False

        self._nodes = nodes
        self._bump()
        logger.info(f"Imported graph with {len(nodes)} nodes")
        return True

    def import_from_json(self, text: str) -> bool:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Graph import failed: invalid JSON ({e})")
            return False
        if not isinstance(data, dict):
            logger.error("Graph import failed: top level must be an object")
            return False
        return self.import_from_dict(data)

    def create_grid_graph(
        self,
        rows: int,
        cols: int,
        floor: int,
        width: float,
        height: float,
        origin: Tuple[float, float] = (0.0, 0.0),
    ) -> List[NavNode]:
        """
        Add a rows x cols grid of 4-connected nodes covering width x height.

        Node ids are node_{floor}_{row}_{col}.

        Returns:
            Created nodes in row-major order
        """
        if rows < 1 or cols < 1:
            raise ValueError("Grid needs at least one row and one column")

        dx = width / (cols - 1) if cols > 1 else 0.0
        dy = height / (rows - 1) if rows > 1 else 0.0
        created = []
        for r in range(rows):
            for c in range(cols):
                node_id = grid_node_id(floor, r, c)
                created.append(self.add_node(
                    node_id, Position(origin[0] + c * dx, origin[1] + r * dy, floor)
                ))

        for r in range(rows):
            for c in range(cols):
                if c + 1 < cols:
                    self.connect_nodes(grid_node_id(floor, r, c), grid_node_id(floor, r, c + 1))
                if r + 1 < rows:
                    self.connect_nodes(grid_node_id(floor, r, c), grid_node_id(floor, r + 1, c))
        return created

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bump(self):
        self._version += 1

    @staticmethod
    def _set_connection(node: NavNode, connection: NavNodeConnection):
        node.connections = [c for c in node.connections if c.target_node_id != connection.target_node_id]
        node.connections.append(connection)

    @staticmethod
    def _heuristic(node: NavNode, goal: NavNode) -> float:
        return node.position.distance_2d(goal.position)

    def _reconstruct(self, came_from: Dict[str, str], end_id: str) -> List[NavNode]:
        path = [self._nodes[end_id]]
        current = end_id
        while current in came_from:
            current = came_from[current]
            path.append(self._nodes[current])
        path.reverse()
        return path


def grid_node_id(floor: int, row: int, col: int) -> str:
    return f"node_{floor}_{row}_{col}"
