"""Graph traversals for packet propagation and pruning.

TAG: [DATAFLOW] [ALGORITHMS]

This module provides the breadth-first traversals the packet store relies on:
- Downstream reachability (propagation fan-out)
- Upstream reachability (which producers can still reach a node)
- Disconnect impact (which nodes may hold packets that no longer reach them)

Every traversal keeps its visited set local to the call, so cycles are
harmless and concurrent traversals never interfere.

Time Complexity: O(V + E) for all traversals.
Space Complexity: O(V)
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from canvasflow.services.dataflow.graph import ConnectionGraph

# Predicate telling whether a node still exists on the canvas
NodeLiveness = Callable[[str], bool]


class GraphAlgorithms:
    """Collection of traversal algorithms over a ConnectionGraph.

    TAG: [DATAFLOW] [ALGORITHMS]

    Example:
        >>> graph = ConnectionGraph()
        >>> graph.add_connection("a", "b")
        >>> graph.add_connection("b", "c")
        >>> GraphAlgorithms.downstream_of(graph, "a")
        ['b', 'c']
    """

    @staticmethod
    def downstream_of(
        graph: ConnectionGraph,
        source: str,
        is_live: NodeLiveness | None = None,
    ) -> list[str]:
        """Every node reachable from ``source``, in breadth-first order.

        The visited set is seeded with ``source`` so the source never
        appears in the result, even when a cycle leads back to it. Each
        reachable node appears once regardless of how many paths reach it.

        Args:
            graph: The connection graph.
            source: The producing node.
            is_live: Optional liveness check. A node that fails it is not
                visited and nothing beyond it is explored through that path.

        Returns:
            Node ids in the order the traversal first reached them.

        Time Complexity: O(V + E)
        Space Complexity: O(V)

        Example:
            >>> # a -> b, b -> a, b -> c
            >>> GraphAlgorithms.downstream_of(graph, "a")
            ['b', 'c']
        """
        visited: set[str] = {source}
        order: list[str] = []
        queue: deque[str] = deque(graph.successors(source))

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            if is_live is not None and not is_live(current):
                # Stale graph entry: prune this branch
                continue

            order.append(current)
            for successor in graph.successors(current):
                if successor not in visited:
                    queue.append(successor)

        return order

    @staticmethod
    def upstream_of(graph: ConnectionGraph, node_id: str) -> set[str]:
        """Every node that can reach ``node_id``, excluding the node itself.

        Time Complexity: O(V + E)
        Space Complexity: O(V)
        """
        visited: set[str] = {node_id}
        queue: deque[str] = deque(graph.predecessors(node_id))
        upstream: set[str] = set()

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            upstream.add(current)

            for predecessor in graph.predecessors(current):
                if predecessor not in visited:
                    queue.append(predecessor)

        return upstream

    @staticmethod
    def affected_by_disconnect(graph: ConnectionGraph, node_ids: Iterable[str]) -> list[str]:
        """Nodes whose incoming packets may have lost their producer.

        After edges are removed, the nodes that lost an in-edge and every
        node downstream of them may still hold copies that can no longer
        reach them. Call this on the graph *after* the removal.

        Returns:
            The given nodes followed by their current downstream nodes,
            without repeats.
        """
        affected: list[str] = []
        seen: set[str] = set()
        for node_id in node_ids:
            for candidate in (node_id, *GraphAlgorithms.downstream_of(graph, node_id)):
                if candidate not in seen:
                    seen.add(candidate)
                    affected.append(candidate)
        return affected


__all__ = [
    "GraphAlgorithms",
    "NodeLiveness",
]
