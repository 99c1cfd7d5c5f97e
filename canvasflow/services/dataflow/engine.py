"""Per-project dataflow engine.

TAG: [DATAFLOW] [ENGINE]

DataflowEngine wires the connection graph, the packet store, the subscriber
registry, the external content upgrader and the sync channel together. One
engine is constructed per open project and passed to whatever needs it.

Locally originated mutations are published on the channel; messages
received from peers are applied through ``apply_remote`` and never
published again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from canvasflow.core.config import Settings, get_settings
from canvasflow.core.logging import get_logger
from canvasflow.models.enums import AddMode, ConnectionType, Direction, PacketOrigin, PinSide
from canvasflow.schemas.connection import Connection
from canvasflow.schemas.packet import DataPacket
from canvasflow.schemas.snapshot import ProjectState, StoreSnapshot
from canvasflow.schemas.sync import (
    ConnectionCreateMessage,
    ConnectionDeleteMessage,
    ConnectionTypeChangeMessage,
    PacketUpdateMessage,
    SyncMessage,
    sync_message_adapter,
)
from canvasflow.services.dataflow.algorithms import GraphAlgorithms, NodeLiveness
from canvasflow.services.dataflow.content import (
    ContentStore,
    ExternalContentUpgrader,
    FileContentStore,
)
from canvasflow.services.dataflow.graph import ConnectionGraph
from canvasflow.services.dataflow.store import PacketStore, TitleResolver
from canvasflow.services.dataflow.subscribers import Subscriber, SubscriberRegistry, Unsubscribe
from canvasflow.services.dataflow.sync import BroadcastChannel

logger = get_logger(__name__)


class DataflowEngine:
    """Graph, packet store and peer sync for one open project.

    TAG: [DATAFLOW] [ENGINE]

    Args:
        config: Settings for this engine. Defaults to the cached settings.
        content_store: Out-of-band storage for large payloads. Defaults to a
            FileContentStore rooted at ``EXTERNAL_CONTENT_ROOT``.
        title_resolver: Returns a node's display title.
        node_exists: Liveness check used to prune stale graph branches.
        channel: Channel to publish sync messages on.

    Example:
        >>> engine = DataflowEngine()
        >>> engine.connect("n1", "n2")
        >>> engine.connect("n2", "n3")
        >>> packet = engine.add_packet("n1", {"type": "text", "content": "hello"})
        >>> [p.id for p in engine.get_incoming("n3")] == [packet.id]
        True
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        content_store: ContentStore | None = None,
        title_resolver: TitleResolver | None = None,
        node_exists: NodeLiveness | None = None,
        channel: BroadcastChannel | None = None,
    ) -> None:
        self.config = config or get_settings()
        self.graph = ConnectionGraph()
        self.subscribers = SubscriberRegistry()
        self.store = PacketStore(
            self.graph,
            self.subscribers,
            title_resolver=title_resolver,
            node_exists=node_exists,
        )
        self.channel = channel or BroadcastChannel(self.config.BROADCAST_QUEUE_SIZE)

        self.upgrader: ExternalContentUpgrader | None = None
        if self.config.EXTERNAL_CONTENT_ENABLED:
            self.upgrader = ExternalContentUpgrader(
                self.store,
                content_store or FileContentStore(self.config.EXTERNAL_CONTENT_ROOT),
                self.config.EXTERNAL_TEXT_THRESHOLD_BYTES,
            )

        self._pending_upgrades: set[asyncio.Task[bool]] = set()
        self.store.on_store_update(self._publish_packet)

    # =========================================================================
    # Connections
    # =========================================================================

    def connect(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str = PinSide.RIGHT,
        target_pin: PinSide | str = PinSide.LEFT,
        connection_type: ConnectionType | str = ConnectionType.CURVED,
        color: str | None = None,
    ) -> Connection | None:
        """Connect two nodes and deliver the source's current packets.

        Returns:
            The new Connection, or None for a duplicate or invalid edge.
        """
        return self._connect(source, target, source_pin, target_pin, connection_type, color, publish=True)

    def _connect(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str,
        target_pin: PinSide | str,
        connection_type: ConnectionType | str,
        color: str | None,
        *,
        publish: bool,
    ) -> Connection | None:
        connection = self.graph.add_connection(
            str(source), str(target), source_pin, target_pin, connection_type, color
        )
        if connection is None:
            return None

        logger.info(f"Connected {connection.source} -> {connection.target}")
        self.store.repropagate_outputs(connection.source)

        if publish:
            self.channel.publish(
                ConnectionCreateMessage(
                    source_node_id=connection.source,
                    target_node_id=connection.target,
                    source_pin=connection.source_pin,
                    target_pin=connection.target_pin,
                    connection_type=connection.connection_type,
                    color=connection.color,
                )
            )
        return connection

    def disconnect(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str = PinSide.RIGHT,
        target_pin: PinSide | str = PinSide.LEFT,
    ) -> bool:
        """Remove a connection and drop packets that can no longer arrive.

        Returns:
            True if a connection was removed.
        """
        return self._disconnect(source, target, source_pin, target_pin, publish=True)

    def _disconnect(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str,
        target_pin: PinSide | str,
        *,
        publish: bool,
    ) -> bool:
        connection = self.graph.remove_connection(str(source), str(target), source_pin, target_pin)
        if connection is None:
            return False

        logger.info(f"Disconnected {connection.source} -> {connection.target}")
        self.store.prune_unreachable([connection.target])

        if publish:
            self.channel.publish(
                ConnectionDeleteMessage(
                    source_node_id=connection.source,
                    target_node_id=connection.target,
                    source_pin=connection.source_pin,
                    target_pin=connection.target_pin,
                )
            )
        return True

    def set_connection_type(
        self, source: str, target: str, connection_type: ConnectionType | str
    ) -> bool:
        """Change the rendering style of the connection ``source -> target``."""
        return self._set_connection_type(source, target, connection_type, publish=True)

    def _set_connection_type(
        self,
        source: str,
        target: str,
        connection_type: ConnectionType | str,
        *,
        publish: bool,
    ) -> bool:
        connection = self.graph.find_connection(str(source), str(target))
        if connection is None or not self.graph.set_connection_type(connection, connection_type):
            return False

        if publish:
            self.channel.publish(
                ConnectionTypeChangeMessage(
                    source_node_id=connection.source,
                    target_node_id=connection.target,
                    connection_type=connection.connection_type,
                )
            )
        return True

    def remove_node(self, node_id: str) -> list[str]:
        """Forget a destroyed node: its edges, its packets and their copies.

        Returns:
            The nodes that were connected to it.
        """
        node_id = str(node_id)
        affected = self.graph.remove_connections_for_node(node_id)
        self.store.clear_node(node_id)
        self.store.prune_unreachable(affected)
        logger.info(f"Removed node {node_id} ({len(affected)} neighbours)")
        return affected

    def downstream_of(self, node_id: str) -> list[str]:
        """Nodes that currently receive packets produced by ``node_id``."""
        return GraphAlgorithms.downstream_of(self.graph, str(node_id))

    # =========================================================================
    # Packets
    # =========================================================================

    def add_packet(
        self,
        node_id: str,
        payload: Mapping[str, Any] | Any,
        *,
        mode: AddMode | str = AddMode.APPEND,
        replace_id: str | None = None,
    ) -> DataPacket | None:
        """Add a locally produced packet and propagate it.

        Propagation completes before this returns. When the payload
        qualifies for external storage and an event loop is running, the
        upgrade is scheduled afterwards; until it finishes the packet is
        inline.
        """
        packet = self.store.add_packet(
            node_id, payload, origin=PacketOrigin.LOCAL, mode=mode, replace_id=replace_id
        )
        if packet is not None:
            self._schedule_upgrade(str(node_id), packet)
        return packet

    def replace_packet(
        self, node_id: str, packet_id: str, new_data: Mapping[str, Any]
    ) -> DataPacket | None:
        """Merge new fields into a packet, keeping its id, and propagate it."""
        packet = self.store.replace_packet(str(node_id), packet_id, new_data)
        if packet is not None:
            self._schedule_upgrade(str(node_id), packet)
        return packet

    def remove_packet(
        self,
        node_id: str,
        packet_id: str,
        direction: Direction | str = Direction.OUTGOING,
    ) -> bool:
        """Remove a packet; outgoing removals cascade to every copy."""
        return self.store.remove_packet(node_id, packet_id, direction)

    def get_outgoing(self, node_id: str) -> list[DataPacket]:
        """Packets produced by a node."""
        return self.store.get_outgoing(node_id)

    def get_incoming(self, node_id: str) -> list[DataPacket]:
        """Packets received by a node."""
        return self.store.get_incoming(node_id)

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a ``(node_id, packet, event_kind)`` callback."""
        return self.subscribers.subscribe(callback)

    def _publish_packet(self, packet: DataPacket) -> None:
        self.channel.publish(PacketUpdateMessage(packet=packet.model_copy()))

    # =========================================================================
    # External content
    # =========================================================================

    @property
    def pending_upgrades(self) -> int:
        """Number of upgrades scheduled and not yet finished."""
        return len(self._pending_upgrades)

    def _schedule_upgrade(self, node_id: str, packet: DataPacket) -> None:
        if self.upgrader is None or not self.upgrader.wants(packet):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, packet {packet.id} stays inline")
            return

        task = loop.create_task(self.upgrader.upgrade(node_id, packet))
        self._pending_upgrades.add(task)
        task.add_done_callback(self._upgrade_done)

    def _upgrade_done(self, task: asyncio.Task[bool]) -> None:
        self._pending_upgrades.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("External content upgrade crashed", exc_info=error)

    async def drain_upgrades(self) -> int:
        """Wait for every scheduled upgrade, including ones scheduled meanwhile.

        Returns:
            Number of upgrades that attached a reference.
        """
        attached = 0
        while self._pending_upgrades:
            tasks = list(self._pending_upgrades)
            results = await asyncio.gather(*tasks, return_exceptions=True)
            self._pending_upgrades.difference_update(tasks)
            attached += sum(1 for result in results if result is True)
        return attached

    # =========================================================================
    # Peer sync
    # =========================================================================

    def apply_remote(self, message: SyncMessage | Mapping[str, Any] | str | bytes) -> bool:
        """Apply a message received from a peer without publishing it again.

        Accepts a validated message, its dict form or raw JSON. Malformed
        messages are logged and ignored.

        Returns:
            True if the message changed the graph or the store.
        """
        if isinstance(message, (str, bytes)):
            try:
                message = sync_message_adapter.validate_json(message)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed sync message: {e.error_count()} errors")
                return False
        elif isinstance(message, Mapping):
            try:
                message = sync_message_adapter.validate_python(dict(message))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed sync message: {e.error_count()} errors")
                return False

        match message:
            case PacketUpdateMessage(packet=packet):
                stored = self.store.add_packet(
                    packet.source_node_id, packet, origin=PacketOrigin.REMOTE
                )
                return stored is not None
            case ConnectionCreateMessage():
                created = self._connect(
                    message.source_node_id,
                    message.target_node_id,
                    message.source_pin,
                    message.target_pin,
                    message.connection_type,
                    message.color,
                    publish=False,
                )
                return created is not None
            case ConnectionDeleteMessage():
                return self._disconnect(
                    message.source_node_id,
                    message.target_node_id,
                    message.source_pin,
                    message.target_pin,
                    publish=False,
                )
            case ConnectionTypeChangeMessage():
                return self._set_connection_type(
                    message.source_node_id,
                    message.target_node_id,
                    message.connection_type,
                    publish=False,
                )
            case _:
                logger.warning(f"Ignoring unsupported sync message: {type(message).__name__}")
                return False

    # =========================================================================
    # Project state
    # =========================================================================

    def export_state(self) -> ProjectState:
        """Connections and packets for project save."""
        return ProjectState(connections=self.graph.connections(), packets=self.store.serialize())

    def import_state(self, state: ProjectState | Mapping[str, Any] | None) -> None:
        """Replace the graph and the store with a saved project.

        Restored incoming lists are taken as saved; nothing is propagated.
        Malformed entries are skipped.
        """
        if state is None:
            self.reset()
            return

        if isinstance(state, ProjectState):
            connections: Any = state.connections
            packets: Any = state.packets
        elif not isinstance(state, Mapping):
            logger.warning(f"Ignoring project state of type {type(state).__name__}")
            return
        else:
            connections = state.get("connections") or []
            packets = state.get("packets", state.get("dataCardStore"))

        if not isinstance(connections, list):
            logger.warning("Ignoring connections entry that is not a list")
            connections = []
        if packets is not None and not isinstance(packets, (Mapping, StoreSnapshot)):
            logger.warning("Ignoring packets entry that is not an object")
            packets = None

        edge_count = self.graph.rebuild_from_external_state(connections)
        packet_count = self.store.deserialize(packets)
        if packets is None:
            self.store.reset()
        logger.info(f"Loaded project with {edge_count} connections and {packet_count} packets")

    def reset(self) -> None:
        """Clear the graph and the store, e.g. when switching projects."""
        self.graph.clear()
        self.store.reset()
        logger.info("Dataflow engine reset")

    def __repr__(self) -> str:
        """Return string representation of the engine."""
        return f"DataflowEngine(graph={self.graph!r}, store={self.store!r})"


__all__ = ["DataflowEngine"]
