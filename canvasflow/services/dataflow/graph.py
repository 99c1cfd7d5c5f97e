"""Directed connection graph between canvas nodes.

TAG: [DATAFLOW] [GRAPH]

This module owns the set of pin-qualified edges between node ids. It keeps
forward and reverse adjacency so both the propagation frontier (out-edges)
and upstream reachability (in-edges) are cheap to query.

Every operation is total: unknown node ids simply produce empty results,
and structural no-ops (duplicate edges, missing edges) return None/False.

Time Complexity:
- Edge addition: O(deg(source)) for the duplicate check
- Out/in-edge lookup: O(1)
- Node removal: O(E)

Space Complexity: O(V + E)
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator
from typing import Any

from pydantic import ValidationError

from canvasflow.core.logging import get_logger
from canvasflow.models.enums import ConnectionType, PinSide
from canvasflow.schemas.connection import Connection

logger = get_logger(__name__)


class ConnectionGraph:
    """Directed multigraph of canvas connections.

    TAG: [DATAFLOW] [GRAPH]

    No two connections may share the same (source, target, source_pin,
    target_pin) tuple, checked in both orientations, so a line drawn from B
    back to A on the same pins is rejected as a duplicate of A -> B.
    Cycles are allowed.

    Example:
        >>> graph = ConnectionGraph()
        >>> graph.add_connection("a", "b")
        Connection(source='a', target='b', ...)
        >>> graph.add_connection("b", "a", PinSide.LEFT, PinSide.RIGHT) is None
        True
    """

    __slots__ = ("_connections", "_incoming", "_outgoing")

    def __init__(self) -> None:
        """Initialize an empty graph."""
        self._connections: list[Connection] = []
        self._outgoing: defaultdict[str, list[Connection]] = defaultdict(list)
        self._incoming: defaultdict[str, list[Connection]] = defaultdict(list)

    @property
    def edge_count(self) -> int:
        """Get the number of connections in the graph."""
        return len(self._connections)

    @property
    def node_count(self) -> int:
        """Get the number of nodes touched by at least one connection."""
        return len(self.node_ids())

    def node_ids(self) -> set[str]:
        """Get every node id that appears as a source or target."""
        nodes: set[str] = set()
        for conn in self._connections:
            nodes.add(conn.source)
            nodes.add(conn.target)
        return nodes

    def find_equivalent(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str,
        target_pin: PinSide | str,
    ) -> Connection | None:
        """Find a stored connection equal to the given one in either orientation.

        Only the adjacency of the two endpoints is scanned.
        """
        source, target = str(source), str(target)
        for conn in self._outgoing.get(source, []):
            if conn.matches(source, target, source_pin, target_pin):
                return conn
        for conn in self._outgoing.get(target, []):
            if conn.matches(source, target, source_pin, target_pin):
                return conn
        return None

    def add_connection(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str = PinSide.RIGHT,
        target_pin: PinSide | str = PinSide.LEFT,
        connection_type: ConnectionType | str = ConnectionType.CURVED,
        color: str | None = None,
    ) -> Connection | None:
        """Create a connection unless an equivalent one already exists.

        Args:
            source: Producer node id.
            target: Consumer node id.
            source_pin: Pin on the source node.
            target_pin: Pin on the target node.
            connection_type: Rendering style.
            color: Optional stroke color.

        Returns:
            The new Connection, or None if it duplicates an existing edge or
            the arguments are not a valid connection.
        """
        try:
            connection = Connection(
                source=source,
                target=target,
                source_pin=source_pin,
                target_pin=target_pin,
                connection_type=connection_type,
                color=color,
            )
        except ValidationError as e:
            logger.warning(f"Rejected invalid connection {source} -> {target}: {e.error_count()} errors")
            return None
        return self.add(connection)

    def add(self, connection: Connection) -> Connection | None:
        """Insert an already-built connection, applying duplicate rejection."""
        if self.find_equivalent(*connection.key) is not None:
            logger.debug(f"Duplicate connection ignored: {connection.source} -> {connection.target}")
            return None

        self._connections.append(connection)
        self._outgoing[connection.source].append(connection)
        self._incoming[connection.target].append(connection)
        return connection

    def remove_connection(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str = PinSide.RIGHT,
        target_pin: PinSide | str = PinSide.LEFT,
    ) -> Connection | None:
        """Remove the connection equal to the given one in either orientation.

        Returns:
            The removed Connection, or None if no such edge exists.
        """
        connection = self.find_equivalent(source, target, source_pin, target_pin)
        if connection is None:
            return None
        self._discard(connection)
        return connection

    def remove_connections_for_node(self, node_id: str) -> list[str]:
        """Remove every connection where the node is source or target.

        Args:
            node_id: The node being destroyed or detached.

        Returns:
            The opposite endpoints of the removed connections, in removal
            order and without repeats. The node itself is never included.
        """
        node_id = str(node_id)
        removed = [c for c in self._connections if c.touches(node_id)]
        affected: list[str] = []
        for conn in removed:
            self._discard(conn)
            other = conn.opposite(node_id)
            if other != node_id and other not in affected:
                affected.append(other)
        return affected

    def _discard(self, connection: Connection) -> None:
        self._connections = [c for c in self._connections if c is not connection]
        for index, key in ((self._outgoing, connection.source), (self._incoming, connection.target)):
            remaining = [c for c in index.get(key, []) if c is not connection]
            if remaining:
                index[key] = remaining
            else:
                index.pop(key, None)

    def connections_from(self, node_id: str) -> list[Connection]:
        """Get direct out-edges of a node. Empty list for unknown nodes."""
        return list(self._outgoing.get(str(node_id), []))

    def connections_to(self, node_id: str) -> list[Connection]:
        """Get direct in-edges of a node. Empty list for unknown nodes."""
        return list(self._incoming.get(str(node_id), []))

    def successors(self, node_id: str) -> list[str]:
        """Get direct downstream node ids, in edge insertion order."""
        return [c.target for c in self._outgoing.get(str(node_id), [])]

    def predecessors(self, node_id: str) -> list[str]:
        """Get direct upstream node ids, in edge insertion order."""
        return [c.source for c in self._incoming.get(str(node_id), [])]

    def find_connection(self, source: str, target: str) -> Connection | None:
        """Get the first connection stored as source -> target, any pins."""
        for conn in self._outgoing.get(str(source), []):
            if conn.target == str(target):
                return conn
        return None

    def set_connection_type(
        self, connection: Connection, connection_type: ConnectionType | str
    ) -> bool:
        """Change a connection's rendering style in place.

        Never triggers propagation: the type is a rendering hint, not data.

        Returns:
            True if the type was applied, False for an unknown type value.
        """
        try:
            connection.connection_type = ConnectionType(connection_type).value
        except ValueError:
            logger.warning(f"Unknown connection type ignored: {connection_type!r}")
            return False
        return True

    def rebuild_from_external_state(self, items: Iterable[Connection | dict[str, Any]]) -> int:
        """Replace the entire edge set with connections restored from project data.

        Malformed entries are skipped with a warning and duplicates are
        dropped, so the restored graph satisfies the same invariants as one
        built incrementally.

        Returns:
            The number of connections in the rebuilt graph.
        """
        self.clear()
        skipped = 0
        for item in items:
            try:
                connection = (
                    item.model_copy() if isinstance(item, Connection) else Connection.model_validate(item)
                )
            except ValidationError as e:
                skipped += 1
                logger.warning(f"Skipping malformed connection entry: {e.error_count()} errors")
                continue
            if self.add(connection) is None:
                skipped += 1
        if skipped:
            logger.debug(f"Rebuild skipped {skipped} connection entries")
        return self.edge_count

    def connections(self) -> list[Connection]:
        """Get all connections in insertion order (copy of the list)."""
        return list(self._connections)

    def clear(self) -> None:
        """Remove every connection."""
        self._connections = []
        self._outgoing.clear()
        self._incoming.clear()

    def __contains__(self, node_id: object) -> bool:
        """Check if a node is an endpoint of any connection."""
        return str(node_id) in self._outgoing or str(node_id) in self._incoming

    def __iter__(self) -> Iterator[Connection]:
        """Iterate over a snapshot of the connections."""
        return iter(list(self._connections))

    def __len__(self) -> int:
        """Get the number of connections."""
        return len(self._connections)

    def __repr__(self) -> str:
        """Return string representation of the graph."""
        return f"ConnectionGraph(nodes={self.node_count}, edges={self.edge_count})"


__all__ = ["ConnectionGraph"]
