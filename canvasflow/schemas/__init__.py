"""Pydantic schemas for engine data.

TAG: [SCHEMAS]

Exports all schemas for convenient importing.
"""

from canvasflow.schemas.base import BaseSchema, NodeId, now_ms
from canvasflow.schemas.connection import Connection, ConnectionKey
from canvasflow.schemas.packet import (
    UNKNOWN_NODE_TITLE,
    ColorPayload,
    DataPacket,
    ExternalRef,
    FilePayload,
    HtmlPayload,
    ImagePayload,
    OpaquePayload,
    Payload,
    SvgPayload,
    TextPayload,
    UrlPayload,
    new_packet_id,
)
from canvasflow.schemas.snapshot import ProjectState, StoreSnapshot
from canvasflow.schemas.sync import (
    ConnectionCreateMessage,
    ConnectionDeleteMessage,
    ConnectionTypeChangeMessage,
    PacketUpdateMessage,
    SyncMessage,
    sync_message_adapter,
)

__all__ = [
    # Base
    "BaseSchema",
    "NodeId",
    "now_ms",
    # Connection
    "Connection",
    "ConnectionKey",
    # Packet
    "UNKNOWN_NODE_TITLE",
    "ColorPayload",
    "DataPacket",
    "ExternalRef",
    "FilePayload",
    "HtmlPayload",
    "ImagePayload",
    "OpaquePayload",
    "Payload",
    "SvgPayload",
    "TextPayload",
    "UrlPayload",
    "new_packet_id",
    # Snapshot
    "ProjectState",
    "StoreSnapshot",
    # Sync
    "ConnectionCreateMessage",
    "ConnectionDeleteMessage",
    "ConnectionTypeChangeMessage",
    "PacketUpdateMessage",
    "SyncMessage",
    "sync_message_adapter",
]
