"""Packet store and propagation.

TAG: [DATAFLOW] [STORE] [PROPAGATION]

This module owns, per node id, an ordered list of outgoing packets (produced
by that node) and an ordered list of incoming packets (received from
upstream producers), and fans every produced packet out to all nodes
reachable through the connection graph.

Invariants maintained here:
- A packet id is shared by the producer's outgoing entry and every incoming
  copy of it; each incoming list holds at most one copy per id.
- A node never holds its own packet in its incoming list.
- Each propagation pass visits a reachable node once, cycles included.
- Removing a packet from its producer removes every incoming copy.

All public operations are total: invalid input is logged and ignored.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from canvasflow.core.logging import get_logger
from canvasflow.models.enums import AddMode, Direction, EventKind, PacketOrigin
from canvasflow.schemas.base import now_ms
from canvasflow.schemas.packet import UNKNOWN_NODE_TITLE, DataPacket, ExternalRef, PayloadBase
from canvasflow.schemas.snapshot import StoreSnapshot
from canvasflow.services.dataflow.algorithms import GraphAlgorithms, NodeLiveness
from canvasflow.services.dataflow.exceptions import InvalidPacketError
from canvasflow.services.dataflow.graph import ConnectionGraph
from canvasflow.services.dataflow.subscribers import Subscriber, SubscriberRegistry, Unsubscribe

logger = get_logger(__name__)

TitleResolver = Callable[[str], str | None]
StoreUpdateCallback = Callable[[DataPacket], None]

# Python attribute name -> persisted key, for merging partial updates
_PACKET_KEYS: dict[str, str] = {
    name: (field.alias or name) for name, field in DataPacket.model_fields.items()
}


def _to_packet_keys(values: Mapping[str, Any]) -> dict[str, Any]:
    return {_PACKET_KEYS.get(key, key): value for key, value in values.items()}


def _payload_has_tag(data: Any) -> bool:
    if isinstance(data, PayloadBase):
        return True
    return isinstance(data, Mapping) and bool(data.get("type"))


class PacketStore:
    """Per-node outgoing/incoming packet lists with graph propagation.

    TAG: [DATAFLOW] [STORE]

    Args:
        graph: Connection graph consulted for reachability on every propagation.
        subscribers: Registry notified on every mutation. A private one is
            created when omitted.
        title_resolver: Returns a node's display title; used to fill
            ``source_title`` on new packets.
        node_exists: Liveness check for nodes. A node that fails it is
            skipped during propagation together with everything reached
            only through it.

    Example:
        >>> graph = ConnectionGraph()
        >>> store = PacketStore(graph)
        >>> graph.add_connection("n1", "n2")
        >>> packet = store.add_packet("n1", {"type": "text", "content": "hello"})
        >>> store.get_incoming("n2")[0].id == packet.id
        True
    """

    def __init__(
        self,
        graph: ConnectionGraph,
        subscribers: SubscriberRegistry | None = None,
        *,
        title_resolver: TitleResolver | None = None,
        node_exists: NodeLiveness | None = None,
    ) -> None:
        self._graph = graph
        self._subscribers = subscribers if subscribers is not None else SubscriberRegistry()
        self._title_resolver = title_resolver
        self._node_exists = node_exists
        self._outgoing: dict[str, list[DataPacket]] = {}
        self._incoming: dict[str, list[DataPacket]] = {}
        self._store_update_callback: StoreUpdateCallback | None = None

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @property
    def subscribers(self) -> SubscriberRegistry:
        """The registry this store notifies."""
        return self._subscribers

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a ``(node_id, packet, event_kind)`` callback."""
        return self._subscribers.subscribe(callback)

    def on_store_update(self, callback: StoreUpdateCallback | None) -> None:
        """Register the transport hook called after every local add or replace.

        Only one hook is kept; passing None removes it. Packets injected with
        ``origin=REMOTE`` never reach the hook.
        """
        self._store_update_callback = callback

    def _emit_local_update(self, packet: DataPacket) -> None:
        if self._store_update_callback is None:
            return
        try:
            self._store_update_callback(packet)
        except Exception:
            logger.exception(
                "Store update callback failed",
                extra={"context": {"packet_id": packet.id}},
            )

    # =========================================================================
    # Creation and insertion
    # =========================================================================

    def create_packet(self, node_id: str, payload: Mapping[str, Any] | Any) -> DataPacket:
        """Build a new packet produced by ``node_id``.

        Raises:
            ValidationError: If the payload cannot be interpreted.
        """
        title = self._title_resolver(node_id) if self._title_resolver else None
        return DataPacket(
            source_node_id=node_id,
            source_title=title or UNKNOWN_NODE_TITLE,
            data=payload,
        )

    def _accept_remote(self, node_id: str, payload: DataPacket | Mapping[str, Any]) -> DataPacket:
        try:
            if isinstance(payload, DataPacket):
                packet = payload.model_copy(update={"received_at": None})
            else:
                packet = DataPacket.model_validate(payload)
        except ValidationError as e:
            raise InvalidPacketError(f"{e.error_count()} validation errors") from e

        if packet.source_node_id != node_id:
            raise InvalidPacketError(
                f"packet source {packet.source_node_id} does not match node {node_id}"
            )
        packet.received_at = None
        return packet

    def add_packet(
        self,
        node_id: str,
        payload: Mapping[str, Any] | DataPacket | Any,
        *,
        origin: PacketOrigin | str = PacketOrigin.LOCAL,
        mode: AddMode | str = AddMode.APPEND,
        replace_id: str | None = None,
    ) -> DataPacket | None:
        """Add or update a packet produced by ``node_id`` and propagate it.

        Args:
            node_id: The producing node.
            payload: Raw payload for local packets; the complete packet as
                received from a peer for remote ones.
            origin: LOCAL packets are created here and reported to the
                transport hook. REMOTE packets keep their id; one whose id
                is already present replaces that entry in place.
            mode: APPEND pushes a new card. REPLACE overwrites the packet
                ``replace_id`` in place, keeping its id (appends when the id
                is unknown). LIVE_UPDATE overwrites the first packet of the
                same type, keeping its id.
            replace_id: Target id for REPLACE.

        Returns:
            The stored packet, or None when the payload was rejected.
        """
        node_id = str(node_id)
        try:
            origin = PacketOrigin(origin)
            mode = AddMode(mode)
            if origin is PacketOrigin.REMOTE:
                packet = self._accept_remote(node_id, payload)
            else:
                packet = self.create_packet(node_id, payload)
        except (ValidationError, InvalidPacketError, ValueError) as e:
            logger.warning(f"Rejected packet for {node_id}: {e}")
            return None

        outgoing = self._outgoing.setdefault(node_id, [])
        index: int | None = None

        if origin is PacketOrigin.REMOTE:
            index = self._index_of(outgoing, packet.id)
        elif mode is AddMode.REPLACE:
            if replace_id is None:
                logger.warning(f"Replace requested on {node_id} without a packet id; appending")
            else:
                index = self._index_of(outgoing, replace_id)
        elif mode is AddMode.LIVE_UPDATE:
            index = next((i for i, p in enumerate(outgoing) if p.type == packet.type), None)

        if index is not None:
            packet.id = outgoing[index].id
            outgoing[index] = packet
            logger.debug(f"Replaced {packet.type} packet {packet.id} on {node_id} ({mode})")
        else:
            outgoing.append(packet)
            logger.debug(f"Added {packet.type} packet {packet.id} on {node_id} ({origin})")

        self.propagate(packet, node_id)
        self._subscribers.notify(node_id, packet, EventKind.UPDATE)

        if origin is PacketOrigin.LOCAL:
            self._emit_local_update(packet)

        return packet

    @staticmethod
    def _index_of(packets: list[DataPacket], packet_id: str) -> int | None:
        return next((i for i, p in enumerate(packets) if p.id == packet_id), None)

    # =========================================================================
    # Propagation
    # =========================================================================

    def propagate(self, packet: DataPacket, source_node_id: str) -> list[str]:
        """Fan a packet out to every node reachable from its source.

        Returns:
            The node ids that received the packet, in arrival order.
        """
        targets = GraphAlgorithms.downstream_of(
            self._graph, source_node_id, is_live=self._node_exists
        )
        for target in targets:
            self.add_incoming_packet(target, packet)
        if targets:
            logger.debug(f"Propagated {packet.id} from {source_node_id} to {len(targets)} nodes")
        return targets

    def add_incoming_packet(self, node_id: str, packet: DataPacket) -> DataPacket | None:
        """Store a copy of ``packet`` in a node's incoming list.

        An existing copy with the same id is overwritten in place, keeping
        its arrival position; otherwise the copy is appended.

        Returns:
            The stored copy, or None when the node produced the packet itself.
        """
        node_id = str(node_id)
        if packet.source_node_id == node_id:
            return None

        copy = packet.received_copy()
        incoming = self._incoming.setdefault(node_id, [])
        index = self._index_of(incoming, packet.id)
        if index is not None:
            incoming[index] = copy
        else:
            incoming.append(copy)

        self._subscribers.notify(node_id, copy, EventKind.UPDATE)
        return copy

    def repropagate_outputs(self, node_id: str) -> int:
        """Replay propagation for every packet a node currently produces.

        Used after a new connection is formed so the new downstream nodes
        receive the producer's current state immediately.

        Returns:
            Number of packets replayed.
        """
        outgoing = list(self._outgoing.get(str(node_id), []))
        for packet in outgoing:
            self.propagate(packet, str(node_id))
        return len(outgoing)

    # =========================================================================
    # Replacement and removal
    # =========================================================================

    def replace_packet(
        self, node_id: str, packet_id: str, new_data: Mapping[str, Any]
    ) -> DataPacket | None:
        """Merge new fields into an outgoing packet, keeping its id.

        The timestamp is refreshed, subscribers see an ``update`` for the
        same id, and the result is propagated downstream. The packet type
        follows a tagged replacement payload and is kept otherwise. Replacing
        the payload drops a stale external reference unless a new one is given.

        Returns:
            The updated packet, or None if the packet does not exist or the
            merged fields are invalid.
        """
        node_id = str(node_id)
        packets = self._outgoing.get(node_id, [])
        index = self._index_of(packets, packet_id)
        if index is None:
            return None

        old = packets[index]
        changes = _to_packet_keys(new_data)
        merged = old.model_dump(by_alias=True, exclude={"received_at"})
        if "data" in changes and "type" not in changes and _payload_has_tag(changes["data"]):
            merged.pop("type", None)
        if "data" in changes and "externalRef" not in changes:
            merged["externalRef"] = None
        merged.update(changes)
        merged["id"] = old.id
        merged["sourceNodeId"] = old.source_node_id
        merged["timestamp"] = now_ms()

        try:
            packet = DataPacket.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Rejected replacement for {packet_id} on {node_id}: {e.error_count()} errors")
            return None

        packets[index] = packet
        self._subscribers.notify(node_id, packet, EventKind.UPDATE)
        logger.debug(f"Replaced packet {packet_id} on {node_id}")

        self.propagate(packet, node_id)
        self._emit_local_update(packet)
        return packet

    def remove_packet(
        self,
        node_id: str,
        packet_id: str,
        direction: Direction | str = Direction.OUTGOING,
    ) -> bool:
        """Remove a packet from one of a node's lists.

        Removing from the outgoing list also removes every incoming copy of
        that id across the graph.

        Returns:
            True if a packet was removed, False for an unknown id.
        """
        node_id = str(node_id)
        try:
            direction = Direction(direction)
        except ValueError:
            logger.warning(f"Unknown packet direction ignored: {direction!r}")
            return False

        lists = self._outgoing if direction is Direction.OUTGOING else self._incoming
        packets = lists.get(node_id, [])
        index = self._index_of(packets, packet_id)
        if index is None:
            return False

        removed = packets.pop(index)
        logger.debug(f"Removed packet {packet_id} from {node_id} ({direction})")
        self._subscribers.notify(node_id, removed, EventKind.REMOVE)

        if direction is Direction.OUTGOING:
            self.cascade_remove(packet_id)
        return True

    def cascade_remove(self, packet_id: str) -> list[str]:
        """Strip every incoming copy of a packet id.

        Returns:
            The node ids that held a copy.
        """
        affected: list[str] = []
        for node_id, packets in self._incoming.items():
            index = self._index_of(packets, packet_id)
            if index is None:
                continue
            removed = packets.pop(index)
            affected.append(node_id)
            self._subscribers.notify(node_id, removed, EventKind.REMOVE)
        if affected:
            logger.debug(f"Cascade removed {packet_id} from {len(affected)} nodes")
        return affected

    def clear_node(self, node_id: str) -> None:
        """Forget a destroyed node.

        Drops both of its lists and strips the packets it produced from every
        other node's incoming list.
        """
        node_id = str(node_id)
        self._outgoing.pop(node_id, None)
        self._incoming.pop(node_id, None)

        for target, packets in self._incoming.items():
            kept = [p for p in packets if p.source_node_id != node_id]
            if len(kept) == len(packets):
                continue
            self._incoming[target] = kept
            for removed in (p for p in packets if p.source_node_id == node_id):
                self._subscribers.notify(target, removed, EventKind.REMOVE)
        logger.debug(f"Cleared packets for {node_id}")

    def prune_unreachable(self, node_ids: Iterable[str]) -> int:
        """Drop incoming packets whose producer can no longer reach the node.

        Checks the given nodes and everything downstream of them. Packets
        whose producer is still upstream through another path are kept.

        Returns:
            Number of incoming copies removed.
        """
        removed_count = 0
        for node_id in GraphAlgorithms.affected_by_disconnect(self._graph, node_ids):
            packets = self._incoming.get(node_id)
            if not packets:
                continue
            upstream = GraphAlgorithms.upstream_of(self._graph, node_id)
            kept = [p for p in packets if p.source_node_id in upstream]
            if len(kept) == len(packets):
                continue
            self._incoming[node_id] = kept
            for removed in (p for p in packets if p.source_node_id not in upstream):
                removed_count += 1
                self._subscribers.notify(node_id, removed, EventKind.REMOVE)
        if removed_count:
            logger.debug(f"Pruned {removed_count} unreachable incoming packets")
        return removed_count

    # =========================================================================
    # External content
    # =========================================================================

    def attach_external_ref(self, node_id: str, packet: DataPacket, ref: ExternalRef) -> bool:
        """Attach an external content reference to a packet and its copies.

        The packet keeps its id; subscribers see an ``update`` for the
        producer and for every node holding a copy.

        Returns:
            False when ``packet`` is no longer the stored packet for its id
            (removed or replaced while the content was being written).
        """
        node_id = str(node_id)
        outgoing = self._outgoing.get(node_id, [])
        index = self._index_of(outgoing, packet.id)
        if index is None or outgoing[index] is not packet:
            logger.debug(f"Skipping stale external reference for {packet.id}")
            return False

        packet.external_ref = ref
        self._subscribers.notify(node_id, packet, EventKind.UPDATE)

        for target, packets in self._incoming.items():
            copy_index = self._index_of(packets, packet.id)
            if copy_index is None:
                continue
            copy = packets[copy_index]
            copy.external_ref = ref
            self._subscribers.notify(target, copy, EventKind.UPDATE)

        self._emit_local_update(packet)
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get_outgoing(self, node_id: str) -> list[DataPacket]:
        """Packets produced by a node, in card order (copy of the list)."""
        return list(self._outgoing.get(str(node_id), []))

    def get_incoming(self, node_id: str) -> list[DataPacket]:
        """Packets received by a node, in arrival order (copy of the list)."""
        return list(self._incoming.get(str(node_id), []))

    def find_packet(self, packet_id: str) -> tuple[str, DataPacket] | None:
        """Locate a packet by id among the producers' outgoing lists."""
        for node_id, packets in self._outgoing.items():
            index = self._index_of(packets, packet_id)
            if index is not None:
                return node_id, packets[index]
        return None

    def node_ids(self) -> set[str]:
        """Node ids holding at least one list, empty or not."""
        return set(self._outgoing) | set(self._incoming)

    # =========================================================================
    # Persistence
    # =========================================================================

    def serialize(self) -> StoreSnapshot:
        """Snapshot both maps for project save."""
        return StoreSnapshot(
            outgoing={node: list(packets) for node, packets in self._outgoing.items()},
            incoming={node: list(packets) for node, packets in self._incoming.items()},
        )

    def deserialize(self, snapshot: StoreSnapshot | Mapping[str, Any] | None) -> int:
        """Replace the store contents with a saved snapshot.

        Malformed packets are skipped with a warning; duplicate ids within a
        list and self-received incoming packets are dropped. ``None`` leaves
        the store untouched.

        Returns:
            Number of packets restored.
        """
        if snapshot is None:
            return 0
        if isinstance(snapshot, StoreSnapshot):
            raw_outgoing: Any = snapshot.outgoing
            raw_incoming: Any = snapshot.incoming
        elif isinstance(snapshot, Mapping):
            raw_outgoing = snapshot.get("outgoing") or {}
            raw_incoming = snapshot.get("incoming") or {}
        else:
            logger.warning(f"Ignoring packet snapshot of type {type(snapshot).__name__}")
            return 0

        self._outgoing.clear()
        self._incoming.clear()

        restored = 0
        for target, raw, incoming in (
            (self._outgoing, raw_outgoing, False),
            (self._incoming, raw_incoming, True),
        ):
            if not isinstance(raw, Mapping):
                direction = "incoming" if incoming else "outgoing"
                logger.warning(f"Skipping {direction} packets: not a mapping of node ids")
                continue
            for node_id, entries in raw.items():
                packets = self._restore_list(str(node_id), entries, incoming=incoming)
                target[str(node_id)] = packets
                restored += len(packets)

        logger.info(f"Restored {restored} packets for {len(self.node_ids())} nodes")
        return restored

    def _restore_list(self, node_id: str, entries: Any, *, incoming: bool) -> list[DataPacket]:
        if not isinstance(entries, list):
            logger.warning(f"Skipping packet list for {node_id}: not a list")
            return []
        packets: list[DataPacket] = []
        seen: set[str] = set()
        for entry in entries:
            try:
                packet = (
                    entry.model_copy()
                    if isinstance(entry, DataPacket)
                    else DataPacket.model_validate(entry)
                )
            except ValidationError as e:
                logger.warning(f"Skipping malformed packet for {node_id}: {e.error_count()} errors")
                continue
            if packet.id in seen or (incoming and packet.source_node_id == node_id):
                continue
            seen.add(packet.id)
            packets.append(packet)
        return packets

    def reset(self) -> None:
        """Clear both maps."""
        self._outgoing.clear()
        self._incoming.clear()
        logger.info("Packet store reset")

    def __repr__(self) -> str:
        """Return string representation of the store."""
        outgoing = sum(len(p) for p in self._outgoing.values())
        incoming = sum(len(p) for p in self._incoming.values())
        return f"PacketStore(outgoing={outgoing}, incoming={incoming})"


__all__ = [
    "PacketStore",
    "StoreUpdateCallback",
    "TitleResolver",
]
