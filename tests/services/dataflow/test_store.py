"""Tests for the packet store and propagation.

TAG: [DATAFLOW] [STORE] [PROPAGATION]

Covers transitive reach, cycle safety, self-receipt suppression, add modes,
cascade delete, replacement, pruning after disconnect, external references
and snapshot save/load.
"""

import logging

import pytest

from canvasflow.models.enums import AddMode, Direction, EventKind, PacketOrigin, PinSide
from canvasflow.schemas.packet import DataPacket, ExternalRef, ImagePayload, TextPayload
from canvasflow.schemas.snapshot import StoreSnapshot
from canvasflow.services.dataflow.graph import ConnectionGraph
from canvasflow.services.dataflow.store import PacketStore
from canvasflow.services.dataflow.subscribers import SubscriberRegistry


def text(content: str) -> dict:
    return {"type": "text", "content": content}


class TestPropagation:
    """Tests for fan-out through the connection graph."""

    def test_transitive_reach(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that a packet from n1 reaches n3 through n2."""
        packet = store.add_packet("n1", text("hello"))

        incoming = store.get_incoming("n3")
        assert len(incoming) == 1
        assert incoming[0].id == packet.id
        assert incoming[0].source_node_id == "n1"
        assert incoming[0].data == packet.data
        assert incoming[0].data.content == "hello"

    def test_cycle_safety(self, store: PacketStore, graph: ConnectionGraph) -> None:
        """Test that A->B->A terminates with exactly one copy at B."""
        graph.add_connection("A", "B")
        graph.add_connection("B", "A")

        packet = store.add_packet("A", text("loop"))

        assert [p.id for p in store.get_incoming("B")] == [packet.id]

    def test_no_self_receipt(self, store: PacketStore, graph: ConnectionGraph) -> None:
        """Test that the producer never holds its own packet as incoming."""
        graph.add_connection("A", "B")
        graph.add_connection("B", "A")
        graph.add_connection("A", "A", PinSide.LEFT, PinSide.RIGHT)

        store.add_packet("A", text("mine"))

        assert store.get_incoming("A") == []

    def test_add_incoming_refuses_own_packet(self, store: PacketStore) -> None:
        """Test that a direct self-delivery is ignored."""
        packet = DataPacket(source_node_id="A", data=text("x"))
        assert store.add_incoming_packet("A", packet) is None
        assert store.get_incoming("A") == []

    def test_diamond_delivers_once(self, store: PacketStore, graph: ConnectionGraph) -> None:
        """Test that a node reached by two paths holds one copy."""
        graph.add_connection("a", "b")
        graph.add_connection("a", "c")
        graph.add_connection("b", "d")
        graph.add_connection("c", "d")

        store.add_packet("a", text("x"))

        assert len(store.get_incoming("d")) == 1

    def test_incoming_copy_is_stamped(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that incoming copies carry received_at and the producer's packet does not."""
        packet = store.add_packet("n1", text("x"))
        copy = store.get_incoming("n2")[0]

        assert packet.received_at is None
        assert copy.received_at is not None
        assert copy is not packet

    def test_incoming_keeps_arrival_order(self, store: PacketStore, graph: ConnectionGraph) -> None:
        """Test that packets from several producers queue in arrival order."""
        graph.add_connection("a", "c")
        graph.add_connection("b", "c", PinSide.RIGHT, PinSide.RIGHT)
        first = store.add_packet("a", text("1"))
        second = store.add_packet("b", text("2"))
        store.replace_packet("a", first.id, {"data": text("1b")})

        incoming = store.get_incoming("c")
        assert [p.id for p in incoming] == [first.id, second.id]
        assert incoming[0].data.content == "1b"

    def test_stale_node_is_pruned(self, graph: ConnectionGraph, subscribers: SubscriberRegistry) -> None:
        """Test that a node that no longer exists blocks propagation through it."""
        store = PacketStore(graph, subscribers, node_exists=lambda node: node != "n2")
        graph.add_connection("n1", "n2")
        graph.add_connection("n2", "n3")

        store.add_packet("n1", text("x"))

        assert store.get_incoming("n2") == []
        assert store.get_incoming("n3") == []

    def test_propagation_notifies_each_target(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that every receiving node and then the producer get an update."""
        packet = store.add_packet("n1", text("x"))

        assert recorder.events == [
            ("n2", packet.id, EventKind.UPDATE),
            ("n3", packet.id, EventKind.UPDATE),
            ("n1", packet.id, EventKind.UPDATE),
        ]

    def test_repropagate_after_new_edge(self, store: PacketStore, graph: ConnectionGraph) -> None:
        """Test that a new downstream node receives existing packets on demand."""
        first = store.add_packet("A", text("1"))
        second = store.add_packet("A", text("2"))
        graph.add_connection("A", "B")
        assert store.get_incoming("B") == []

        assert store.repropagate_outputs("A") == 2

        assert [p.id for p in store.get_incoming("B")] == [first.id, second.id]

    def test_repropagate_unknown_node(self, store: PacketStore) -> None:
        """Test that replaying a node with no packets does nothing."""
        assert store.repropagate_outputs("ghost") == 0


class TestAddModes:
    """Tests for append, replace-by-id and live-update placement."""

    def test_append_creates_new_cards(self, store: PacketStore) -> None:
        """Test that append always adds a new packet."""
        first = store.add_packet("n1", text("1"))
        second = store.add_packet("n1", text("2"))
        assert first.id != second.id
        assert [p.id for p in store.get_outgoing("n1")] == [first.id, second.id]

    def test_replace_by_id_preserves_identity(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that replace mode keeps the target id and position."""
        first = store.add_packet("n1", text("1"))
        store.add_packet("n1", text("2"))
        recorder.clear()

        replaced = store.add_packet("n1", text("new"), mode=AddMode.REPLACE, replace_id=first.id)

        assert replaced.id == first.id
        outgoing = store.get_outgoing("n1")
        assert outgoing[0].id == first.id
        assert outgoing[0].data.content == "new"
        assert len(outgoing) == 2
        assert ("n1", first.id, EventKind.UPDATE) in recorder.events
        assert store.get_incoming("n3")[0].data.content == "new"
        assert len(store.get_incoming("n3")) == 2

    def test_replace_with_unknown_id_appends(self, store: PacketStore) -> None:
        """Test that replacing a missing id falls back to append."""
        store.add_packet("n1", text("1"))
        packet = store.add_packet("n1", text("2"), mode="replace", replace_id="packet-missing")
        assert packet.id != "packet-missing"
        assert len(store.get_outgoing("n1")) == 2

    def test_replace_without_id_appends(self, store: PacketStore) -> None:
        """Test that replace mode without a target id appends."""
        store.add_packet("n1", text("1"))
        store.add_packet("n1", text("2"), mode=AddMode.REPLACE)
        assert len(store.get_outgoing("n1")) == 2

    def test_live_update_overwrites_same_type(self, store: PacketStore) -> None:
        """Test that live update reuses the first packet of the same type."""
        color = store.add_packet("n1", {"type": "color", "value": "#000"})
        tick = store.add_packet("n1", text("1"), mode=AddMode.LIVE_UPDATE)
        tock = store.add_packet("n1", text("2"), mode=AddMode.LIVE_UPDATE)

        assert tock.id == tick.id
        outgoing = store.get_outgoing("n1")
        assert [p.id for p in outgoing] == [color.id, tick.id]
        assert outgoing[1].data.content == "2"

    def test_invalid_mode_is_rejected(self, store: PacketStore) -> None:
        """Test that an unknown mode returns None without raising."""
        assert store.add_packet("n1", text("x"), mode="sideways") is None
        assert store.get_outgoing("n1") == []

    def test_title_resolver(self, graph: ConnectionGraph) -> None:
        """Test that source_title comes from the resolver with a fallback."""
        titles = {"n1": "Prompt"}
        store = PacketStore(graph, title_resolver=titles.get)

        assert store.add_packet("n1", text("x")).source_title == "Prompt"
        assert store.add_packet("n2", text("x")).source_title == "Unknown Node"

    def test_payload_model_is_accepted(self, store: PacketStore) -> None:
        """Test that a payload variant instance can be added directly."""
        packet = store.add_packet("n1", TextPayload(content="typed"))
        assert packet.type == "text"
        assert packet.data.content == "typed"

    def test_unknown_type_is_opaque(self, store: PacketStore) -> None:
        """Test that an unknown tag is carried untouched."""
        packet = store.add_packet("n1", {"type": "chart", "series": [1, 2]})
        assert packet.type == "chart"
        assert packet.data.type == "chart"
        assert packet.data.model_extra == {"series": [1, 2]}


class TestRemoteOrigin:
    """Tests for packets injected by a peer transport."""

    def test_remote_packet_keeps_id_and_skips_callback(
        self, store: PacketStore, chain: ConnectionGraph
    ) -> None:
        """Test that a remote packet is stored as sent and not echoed back."""
        published = []
        store.on_store_update(published.append)
        remote = DataPacket(id="packet-remote", source_node_id="n1", data=text("peer"))

        stored = store.add_packet("n1", remote.to_wire(), origin=PacketOrigin.REMOTE)

        assert stored.id == "packet-remote"
        assert store.get_incoming("n3")[0].id == "packet-remote"
        assert published == []

    def test_remote_packet_with_known_id_replaces(self, store: PacketStore) -> None:
        """Test that a repeated remote id overwrites in place."""
        remote = DataPacket(id="packet-remote", source_node_id="n1", data=text("v1"))
        store.add_packet("n1", remote, origin="remote")
        update = remote.model_copy(update={"data": TextPayload(content="v2")})
        store.add_packet("n1", update, origin="remote")

        outgoing = store.get_outgoing("n1")
        assert len(outgoing) == 1
        assert outgoing[0].data.content == "v2"

    def test_remote_packet_for_other_node_is_rejected(self, store: PacketStore) -> None:
        """Test that a packet whose source differs from the node is refused."""
        remote = DataPacket(source_node_id="n9", data=text("x"))
        assert store.add_packet("n1", remote, origin=PacketOrigin.REMOTE) is None

    def test_malformed_remote_packet_is_rejected(
        self, store: PacketStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that an invalid remote packet is logged and ignored."""
        with caplog.at_level(logging.WARNING, logger="canvasflow"):
            result = store.add_packet("n1", {"id": "", "data": "nope"}, origin="remote")
        assert result is None
        assert "Rejected packet" in caplog.text

    def test_local_add_calls_store_update(self, store: PacketStore) -> None:
        """Test that local adds reach the transport hook."""
        published = []
        store.on_store_update(published.append)
        packet = store.add_packet("n1", text("x"))
        assert published == [packet]

    def test_store_update_hook_failure_is_absorbed(self, store: PacketStore) -> None:
        """Test that a failing transport hook does not break the add."""

        def broken(packet: DataPacket) -> None:
            raise ConnectionError("peer gone")

        store.on_store_update(broken)
        assert store.add_packet("n1", text("x")) is not None


class TestRemoval:
    """Tests for remove_packet and cascade delete."""

    def test_scenario_add_then_remove(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test the n1 -> n2 -> n3 add and cascade remove round."""
        packet = store.add_packet("n1", {"type": "text", "content": "hello"})
        incoming = store.get_incoming("n3")
        assert len(incoming) == 1
        assert incoming[0].data.content == "hello"
        assert incoming[0].source_node_id == "n1"

        assert store.remove_packet("n1", packet.id, "outgoing") is True

        assert packet.id not in [p.id for p in store.get_incoming("n2")]
        assert packet.id not in [p.id for p in store.get_incoming("n3")]
        assert store.get_outgoing("n1") == []

    def test_cascade_notifies_remove_per_node(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that every holder and the producer get a remove event."""
        packet = store.add_packet("n1", text("x"))
        recorder.clear()

        store.remove_packet("n1", packet.id)

        assert recorder.events == [
            ("n1", packet.id, EventKind.REMOVE),
            ("n2", packet.id, EventKind.REMOVE),
            ("n3", packet.id, EventKind.REMOVE),
        ]

    def test_remove_incoming_does_not_cascade(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that dismissing a received copy leaves other copies alone."""
        packet = store.add_packet("n1", text("x"))

        assert store.remove_packet("n2", packet.id, Direction.INCOMING) is True

        assert store.get_incoming("n2") == []
        assert len(store.get_incoming("n3")) == 1
        assert len(store.get_outgoing("n1")) == 1

    def test_remove_unknown_packet_is_noop(self, store: PacketStore, recorder) -> None:
        """Test that removing a missing id changes nothing."""
        store.add_packet("n1", text("x"))
        recorder.clear()
        assert store.remove_packet("n1", "packet-missing") is False
        assert store.remove_packet("ghost", "packet-missing") is False
        assert recorder.events == []

    def test_remove_with_invalid_direction(self, store: PacketStore) -> None:
        """Test that an unknown direction is ignored."""
        packet = store.add_packet("n1", text("x"))
        assert store.remove_packet("n1", packet.id, "sideways") is False
        assert len(store.get_outgoing("n1")) == 1

    def test_cascade_remove_reports_nodes(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that cascade_remove returns the nodes that held a copy."""
        packet = store.add_packet("n1", text("x"))
        assert store.cascade_remove(packet.id) == ["n2", "n3"]
        assert store.cascade_remove(packet.id) == []


class TestReplacePacket:
    """Tests for merging new fields into an existing packet."""

    def test_replace_preserves_id_and_refreshes_timestamp(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that replacement keeps identity and propagates."""
        packet = store.add_packet("n1", text("old"))
        packet.timestamp = 0
        recorder.clear()

        updated = store.replace_packet("n1", packet.id, {"data": text("new")})

        assert updated.id == packet.id
        assert updated.timestamp > 0
        assert store.get_outgoing("n1")[0].data.content == "new"
        assert store.get_incoming("n3")[0].data.content == "new"
        assert recorder.events[0] == ("n1", packet.id, EventKind.UPDATE)
        assert {kind for _, _, kind in recorder.events} == {EventKind.UPDATE}

    def test_replace_accepts_camel_case_fields(self, store: PacketStore) -> None:
        """Test that persisted key spelling works for partial updates."""
        packet = store.add_packet("n1", text("x"))
        updated = store.replace_packet("n1", packet.id, {"sourceTitle": "Renamed"})
        assert updated.source_title == "Renamed"
        assert updated.data.content == "x"

    def test_replace_cannot_change_id_or_source(self, store: PacketStore) -> None:
        """Test that identity fields in the update are ignored."""
        packet = store.add_packet("n1", text("x"))
        updated = store.replace_packet("n1", packet.id, {"id": "packet-other", "source_node_id": "n9"})
        assert updated.id == packet.id
        assert updated.source_node_id == "n1"

    def test_replace_payload_changes_type(self, store: PacketStore) -> None:
        """Test that a new payload of another kind updates the packet type."""
        packet = store.add_packet("n1", text("x"))
        updated = store.replace_packet("n1", packet.id, {"data": {"type": "url", "url": "https://a.b"}})
        assert updated.type == "url"
        assert updated.data.url == "https://a.b"

    def test_replace_untagged_payload_keeps_type(self, store: PacketStore) -> None:
        """Test that new data without a tag keeps the packet kind."""
        packet = store.add_packet("n1", {"type": "image", "dataUrl": "data:,a"})
        updated = store.replace_packet("n1", packet.id, {"data": {"dataUrl": "data:,b"}})

        assert updated.type == "image"
        assert isinstance(updated.data, ImagePayload)
        assert updated.data.data_url == "data:,b"

    def test_replace_payload_drops_stale_external_ref(self, store: PacketStore) -> None:
        """Test that new content invalidates a previous external reference."""
        packet = store.add_packet("n1", text("x"))
        store.attach_external_ref("n1", packet, ExternalRef(path="assets/text/a.txt", size=1))
        updated = store.replace_packet("n1", packet.id, {"data": text("y")})
        assert updated.external_ref is None

    def test_replace_missing_packet(self, store: PacketStore) -> None:
        """Test that replacing an unknown id returns None."""
        assert store.replace_packet("n1", "packet-missing", {"data": text("x")}) is None

    def test_replace_with_invalid_fields(self, store: PacketStore) -> None:
        """Test that an invalid merge leaves the packet untouched."""
        packet = store.add_packet("n1", text("x"))
        assert store.replace_packet("n1", packet.id, {"timestamp": "soon", "external_ref": {"path": ""}}) is None
        assert store.get_outgoing("n1")[0] is packet


class TestNodeCleanup:
    """Tests for clear_node and prune_unreachable."""

    def test_clear_node_strips_its_packets_everywhere(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that a destroyed node's packets vanish from every incoming list."""
        packet = store.add_packet("n1", text("x"))
        store.add_packet("n2", text("y"))
        recorder.clear()

        store.clear_node("n1")

        assert store.get_outgoing("n1") == []
        assert [p.source_node_id for p in store.get_incoming("n3")] == ["n2"]
        assert ("n3", packet.id, EventKind.REMOVE) in recorder.events

    def test_prune_after_disconnect(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that packets whose producer is no longer upstream are dropped."""
        from_n1 = store.add_packet("n1", text("1"))
        from_n2 = store.add_packet("n2", text("2"))
        chain.remove_connection("n1", "n2")

        removed = store.prune_unreachable(["n2"])

        assert removed == 2
        assert store.get_incoming("n2") == []
        assert [p.id for p in store.get_incoming("n3")] == [from_n2.id]
        assert from_n1.id not in [p.id for p in store.get_incoming("n3")]

    def test_prune_keeps_packets_with_another_path(
        self, store: PacketStore, graph: ConnectionGraph
    ) -> None:
        """Test that a producer still reaching the node by another path keeps its packet."""
        graph.add_connection("a", "b")
        graph.add_connection("a", "c")
        graph.add_connection("c", "b", PinSide.RIGHT, PinSide.RIGHT)
        store.add_packet("a", text("x"))
        graph.remove_connection("a", "b")

        assert store.prune_unreachable(["b"]) == 0
        assert len(store.get_incoming("b")) == 1


class TestExternalRef:
    """Tests for attaching external content references."""

    def test_attach_updates_packet_and_copies(
        self, store: PacketStore, chain: ConnectionGraph, recorder
    ) -> None:
        """Test that the ref lands on the producer's packet and every copy with the same id."""
        packet = store.add_packet("n1", text("x"))
        recorder.clear()
        ref = ExternalRef(path="assets/text/p.txt", size=1)

        assert store.attach_external_ref("n1", packet, ref) is True

        assert store.get_outgoing("n1")[0].external_ref == ref
        assert store.get_incoming("n2")[0].external_ref == ref
        assert store.get_incoming("n3")[0].external_ref == ref
        assert recorder.events == [
            ("n1", packet.id, EventKind.UPDATE),
            ("n2", packet.id, EventKind.UPDATE),
            ("n3", packet.id, EventKind.UPDATE),
        ]

    def test_attach_skips_removed_packet(self, store: PacketStore) -> None:
        """Test that a packet removed meanwhile is not resurrected."""
        packet = store.add_packet("n1", text("x"))
        store.remove_packet("n1", packet.id)
        assert store.attach_external_ref("n1", packet, ExternalRef(path="a", size=0)) is False

    def test_attach_skips_replaced_packet(self, store: PacketStore) -> None:
        """Test that a packet replaced meanwhile keeps its new content."""
        packet = store.add_packet("n1", text("x"))
        store.replace_packet("n1", packet.id, {"data": text("y")})
        assert store.attach_external_ref("n1", packet, ExternalRef(path="a", size=0)) is False
        assert store.get_outgoing("n1")[0].external_ref is None


class TestSerialization:
    """Tests for snapshot save and load."""

    def test_serialize_round_trip(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that a saved snapshot restores identical lists."""
        packet = store.add_packet("n1", text("x"))
        snapshot = store.serialize().to_wire()

        other = PacketStore(ConnectionGraph())
        assert other.deserialize(snapshot) == 3

        assert [p.id for p in other.get_outgoing("n1")] == [packet.id]
        assert [p.id for p in other.get_incoming("n3")] == [packet.id]
        assert other.get_incoming("n3")[0].received_at is not None

    def test_serialize_uses_camel_case(self, store: PacketStore) -> None:
        """Test the persisted key spelling."""
        store.add_packet("n1", text("x"))
        wire = store.serialize().to_wire()
        entry = wire["outgoing"]["n1"][0]
        assert entry["sourceNodeId"] == "n1"
        assert entry["sourceTitle"] == "Unknown Node"
        assert entry["data"] == {"type": "text", "content": "x"}

    def test_deserialize_skips_malformed_packets(self, store: PacketStore) -> None:
        """Test that bad entries are skipped without losing good ones."""
        restored = store.deserialize(
            {
                "outgoing": {
                    "n1": [
                        {"id": "p1", "sourceNodeId": "n1", "type": "text", "data": {"content": "ok"}},
                        {"id": "p2"},
                        {"id": "p1", "sourceNodeId": "n1", "data": {"type": "text"}},
                    ],
                    "n2": "not a list",
                },
                "incoming": {
                    "n2": [{"id": "p1", "sourceNodeId": "n1", "data": {"type": "text"}}],
                    "n1": [{"id": "p1", "sourceNodeId": "n1", "data": {"type": "text"}}],
                },
            }
        )

        assert restored == 2
        assert [p.id for p in store.get_outgoing("n1")] == ["p1"]
        assert store.get_outgoing("n1")[0].data.content == "ok"
        assert store.get_incoming("n1") == []

    def test_deserialize_accepts_numeric_node_ids(self, store: PacketStore) -> None:
        """Test that older snapshots with numeric source ids load."""
        store.deserialize({"outgoing": {"7": [{"id": "p", "sourceNodeId": 7, "data": {"type": "text"}}]}})
        assert store.get_outgoing("7")[0].source_node_id == "7"

    def test_deserialize_none_is_noop(self, store: PacketStore) -> None:
        """Test that a missing snapshot leaves the store untouched."""
        store.add_packet("n1", text("x"))
        assert store.deserialize(None) == 0
        assert len(store.get_outgoing("n1")) == 1

    @pytest.mark.parametrize(
        "snapshot",
        [
            {"outgoing": ["x"], "incoming": {}},
            {"outgoing": {"n1": []}, "incoming": "bad"},
        ],
    )
    def test_deserialize_skips_maps_that_are_not_objects(
        self, store: PacketStore, snapshot: dict, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a list or string in place of a node map loads as empty."""
        store.add_packet("n1", text("x"))
        with caplog.at_level(logging.WARNING, logger="canvasflow"):
            assert store.deserialize(snapshot) == 0
        assert store.get_outgoing("n1") == []
        assert "not a mapping" in caplog.text

    def test_deserialize_ignores_non_mapping_snapshot(
        self, store: PacketStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a snapshot of the wrong type leaves the store untouched."""
        store.add_packet("n1", text("x"))
        with caplog.at_level(logging.WARNING, logger="canvasflow"):
            assert store.deserialize(["not", "a", "snapshot"]) == 0
        assert len(store.get_outgoing("n1")) == 1
        assert "Ignoring packet snapshot" in caplog.text

    def test_deserialize_snapshot_model_copies_packets(self, store: PacketStore) -> None:
        """Test that a StoreSnapshot is not aliased by the store."""
        packet = DataPacket(source_node_id="n1", data=text("x"))
        store.deserialize(StoreSnapshot(outgoing={"n1": [packet]}))
        assert store.get_outgoing("n1")[0] is not packet
        assert store.find_packet(packet.id)[0] == "n1"

    def test_reset(self, store: PacketStore, chain: ConnectionGraph) -> None:
        """Test that reset empties both maps."""
        store.add_packet("n1", text("x"))
        store.reset()
        assert store.node_ids() == set()
        assert store.serialize().packet_count == 0
