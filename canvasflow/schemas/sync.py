"""Pydantic schemas for peer synchronization messages.

TAG: [SCHEMAS] [SYNC]

These are the messages the engine publishes after local mutations and
accepts from a transport collaborator. The transport decides how they
travel; the engine only produces and consumes these shapes.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import Field, TypeAdapter

from canvasflow.models.enums import ConnectionType, PinSide
from canvasflow.schemas.base import BaseSchema, NodeId
from canvasflow.schemas.packet import DataPacket


class PacketUpdateMessage(BaseSchema):
    """A locally produced packet was added or replaced."""

    type: Literal["data-card-update"] = "data-card-update"
    packet: DataPacket


class ConnectionCreateMessage(BaseSchema):
    """A connection was created."""

    type: Literal["connection-create"] = "connection-create"
    source_node_id: NodeId
    target_node_id: NodeId
    source_pin: PinSide = PinSide.RIGHT
    target_pin: PinSide = PinSide.LEFT
    connection_type: ConnectionType = ConnectionType.CURVED
    color: str | None = None


class ConnectionDeleteMessage(BaseSchema):
    """A connection was removed."""

    type: Literal["connection-delete"] = "connection-delete"
    source_node_id: NodeId
    target_node_id: NodeId
    source_pin: PinSide = PinSide.RIGHT
    target_pin: PinSide = PinSide.LEFT


class ConnectionTypeChangeMessage(BaseSchema):
    """A connection's rendering style changed."""

    type: Literal["connection-type-change"] = "connection-type-change"
    source_node_id: NodeId
    target_node_id: NodeId
    connection_type: ConnectionType


SyncMessage = Annotated[
    PacketUpdateMessage
    | ConnectionCreateMessage
    | ConnectionDeleteMessage
    | ConnectionTypeChangeMessage,
    Field(discriminator="type"),
]

sync_message_adapter: TypeAdapter[SyncMessage] = TypeAdapter(SyncMessage)


__all__ = [
    "ConnectionCreateMessage",
    "ConnectionDeleteMessage",
    "ConnectionTypeChangeMessage",
    "PacketUpdateMessage",
    "SyncMessage",
    "sync_message_adapter",
]
