"""pytest configuration and fixtures for the dataflow engine.

TAG: [TESTING] [PYTEST] [FIXTURES]

Fixtures build fresh engine components per test. Nothing here touches the
module-level settings instance; every engine gets its own Settings with a
content root under ``tmp_path``.
"""

from pathlib import Path
import pytest

from canvasflow.core.config import Settings
from canvasflow.models.enums import EventKind
from canvasflow.schemas.packet import DataPacket
from canvasflow.services.dataflow.engine import DataflowEngine
from canvasflow.services.dataflow.graph import ConnectionGraph
from canvasflow.services.dataflow.store import PacketStore
from canvasflow.services.dataflow.subscribers import SubscriberRegistry

# =============================================================================
# HELPERS
# =============================================================================


class EventRecorder:
    """Subscriber that records every notification it receives."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, EventKind]] = []
        self.packets: list[DataPacket] = []

    def __call__(self, node_id: str, packet: DataPacket, event_kind: EventKind) -> None:
        self.events.append((node_id, packet.id, event_kind))
        self.packets.append(packet)

    def for_node(self, node_id: str) -> list[tuple[str, EventKind]]:
        """Events delivered for one node as (packet_id, kind) pairs."""
        return [(pid, kind) for nid, pid, kind in self.events if nid == node_id]

    def clear(self) -> None:
        self.events.clear()
        self.packets.clear()


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment's content root."""
    return Settings(
        EXTERNAL_CONTENT_ENABLED=True,
        EXTERNAL_TEXT_THRESHOLD_BYTES=64,
        EXTERNAL_CONTENT_ROOT=tmp_path / "content",
        BROADCAST_QUEUE_SIZE=8,
    )


@pytest.fixture
def graph() -> ConnectionGraph:
    return ConnectionGraph()


@pytest.fixture
def subscribers() -> SubscriberRegistry:
    return SubscriberRegistry()


@pytest.fixture
def store(graph: ConnectionGraph, subscribers: SubscriberRegistry) -> PacketStore:
    return PacketStore(graph, subscribers)


@pytest.fixture
def recorder(subscribers: SubscriberRegistry) -> EventRecorder:
    """Recorder already subscribed to the store fixture's registry."""
    rec = EventRecorder()
    subscribers.subscribe(rec)
    return rec


@pytest.fixture
def engine(settings: Settings) -> DataflowEngine:
    return DataflowEngine(settings)


@pytest.fixture
def engine_recorder(engine: DataflowEngine) -> EventRecorder:
    """Recorder subscribed to the engine fixture."""
    rec = EventRecorder()
    engine.subscribe(rec)
    return rec


@pytest.fixture
def chain(graph: ConnectionGraph) -> ConnectionGraph:
    """Graph with n1 -> n2 -> n3."""
    graph.add_connection("n1", "n2")
    graph.add_connection("n2", "n3")
    return graph
