"""Dataflow engine: connection graph, packet store and propagation.

TAG: [DATAFLOW]

This package provides:
- ConnectionGraph: pin-qualified directed edges between nodes
- GraphAlgorithms: BFS traversals used for propagation and pruning
- PacketStore: per-node outgoing/incoming packet lists
- SubscriberRegistry: change notifications for presentation code
- ExternalContentUpgrader: out-of-band storage for large payloads
- BroadcastChannel: outbound sync messages for a peer transport
- DataflowEngine: the per-project facade over all of the above
"""

from canvasflow.services.dataflow.algorithms import GraphAlgorithms, NodeLiveness
from canvasflow.services.dataflow.content import (
    ContentStore,
    ExternalContentUpgrader,
    FileContentStore,
    content_for_storage,
    should_externalize,
)
from canvasflow.services.dataflow.engine import DataflowEngine
from canvasflow.services.dataflow.exceptions import (
    ContentNotFoundError,
    ContentStoreError,
    ContentWriteError,
    DataflowError,
    InvalidPacketError,
)
from canvasflow.services.dataflow.graph import ConnectionGraph
from canvasflow.services.dataflow.store import PacketStore
from canvasflow.services.dataflow.subscribers import Subscriber, SubscriberRegistry, Unsubscribe
from canvasflow.services.dataflow.sync import BroadcastChannel

__all__ = [
    # Graph
    "ConnectionGraph",
    "GraphAlgorithms",
    "NodeLiveness",
    # Store
    "PacketStore",
    "Subscriber",
    "SubscriberRegistry",
    "Unsubscribe",
    # External content
    "ContentStore",
    "ExternalContentUpgrader",
    "FileContentStore",
    "content_for_storage",
    "should_externalize",
    # Sync
    "BroadcastChannel",
    # Engine
    "DataflowEngine",
    # Exceptions
    "ContentNotFoundError",
    "ContentStoreError",
    "ContentWriteError",
    "DataflowError",
    "InvalidPacketError",
]
