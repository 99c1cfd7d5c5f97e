"""Domain enum definitions for canvasflow.

TAG: [DATAFLOW] [ENUMS]

This module defines all enum types used across the engine for
type-safe representation of domain-specific values.
"""

from enum import Enum


class PinSide(str, Enum):
    """Side of a node a connection is attached to."""

    LEFT = "left"
    RIGHT = "right"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class ConnectionType(str, Enum):
    """Rendering style of a connection.

    A rendering hint only; changing it never moves data.
    """

    CURVED = "curved"
    STRAIGHT = "straight"
    SINGLE_ELBOW = "single-elbow"
    MULTI_ELBOW = "multi-elbow"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class PacketType(str, Enum):
    """Known payload variants.

    Packets may carry any other tag; those are kept as opaque payloads.
    """

    TEXT = "text"
    IMAGE = "image"
    SVG = "svg"
    HTML = "html"
    FILE = "file"
    COLOR = "color"
    URL = "url"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class EventKind(str, Enum):
    """Kind of store mutation delivered to subscribers."""

    UPDATE = "update"
    REMOVE = "remove"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class AddMode(str, Enum):
    """How add_packet places a packet in the producer's outgoing list.

    APPEND always creates a new card. REPLACE overwrites the packet with a
    given id. LIVE_UPDATE overwrites the first packet of the same type.
    """

    APPEND = "append"
    REPLACE = "replace"
    LIVE_UPDATE = "live_update"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class PacketOrigin(str, Enum):
    """Where an added packet came from."""

    LOCAL = "local"
    REMOTE = "remote"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value


class Direction(str, Enum):
    """Which per-node packet list an operation targets."""

    OUTGOING = "outgoing"
    INCOMING = "incoming"

    def __str__(self) -> str:
        """Return the string value for serialization."""
        return self.value
