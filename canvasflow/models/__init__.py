"""Domain enums.

TAG: [DATAFLOW] [MODELS]
"""

from canvasflow.models.enums import (
    AddMode,
    ConnectionType,
    Direction,
    EventKind,
    PacketOrigin,
    PacketType,
    PinSide,
)

__all__ = [
    "AddMode",
    "ConnectionType",
    "Direction",
    "EventKind",
    "PacketOrigin",
    "PacketType",
    "PinSide",
]
