"""
Cached path calculation.

Memoizes the last computed route so repeated requests (and minor
position noise during navigation) do not re-run the graph search.
"""

from typing import List, Optional, Tuple
import logging
import time

from indoornav_core.proto.position import Position
from indoornav_core.navigation.graph import NavGraph, NavNode
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class PathCalculator:
    """
    Path search with a single-entry cache.

    Usage:
        calculator = PathCalculator(graph, metrics=metrics)
        nodes = calculator.calculate_path("lobby", "room_101")

        # During navigation, from the latest fused position
        nodes = calculator.recalculate_from_position(position, "room_101")

    Notes:
        - Cache key is (start_id, end_id, graph.version), so any graph
          mutation invalidates it
        - Empty results are never cached
    """

    def __init__(self, graph: NavGraph, metrics: Optional[MetricsCollector] = None):
        self.graph = graph
        self.metrics = metrics or MetricsCollector()
        self._cache_key: Optional[Tuple[str, str, int]] = None
        self._cached_path: List[NavNode] = []

    @property
    def cached_path(self) -> List[NavNode]:
        return list(self._cached_path)

    def calculate_path(self, start_id: str, end_id: str) -> List[NavNode]:
        """Shortest path, served from cache when the same route was last computed."""
        key = (start_id, end_id, self.graph.version)
        if key == self._cache_key and self._cached_path:
            self.metrics.increment('path_cache_hits')
            return list(self._cached_path)

        started = time.perf_counter()
        path = self.graph.find_path(start_id, end_id)
        self.metrics.record_histogram('path_search_ms', (time.perf_counter() - started) * 1000.0)

        if path:
            self._cache_key = key
            self._cached_path = list(path)
        return path

    def recalculate_from_position(self, position: Position, end_id: str) -> List[NavNode]:
        """
        Route from the node closest to position to end_id.

        If the closest node lies on the cached route to the same
        destination, the remaining suffix is reused; otherwise a full
        search runs from that node.

        Returns:
            Ordered nodes, or [] if no route
        """
        closest = self.graph.find_closest_node(position)
        if closest is None:
            return []

        if (self._cached_path and self._cache_key is not None and
                self._cache_key[1] == end_id and self._cache_key[2] == self.graph.version):
            for index, node in enumerate(self._cached_path):
                if node.id == closest.id:
                    self.metrics.increment('path_cache_splices')
                    return list(self._cached_path[index:])

        return self.calculate_path(closest.id, end_id)

    def invalidate_cache(self):
        self._cache_key = None
        self._cached_path = []
