"""Pydantic schema for canvas connections.

TAG: [SCHEMAS] [CONNECTION]

A Connection is a directed, pin-qualified edge between two canvas nodes.
Cycles are allowed at the data level; propagation handles them.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field

from canvasflow.models.enums import ConnectionType, PinSide
from canvasflow.schemas.base import BaseSchema, NodeId

# (source, target, source_pin, target_pin)
ConnectionKey = tuple[str, str, str, str]


class Connection(BaseSchema):
    """Directed edge between two nodes.

    Older project files wrote the pins as ``startPin``/``endPin``; both
    spellings are accepted on load and ``sourcePin``/``targetPin`` is written.
    """

    source: NodeId = Field(..., description="Producer node id", examples=["node-1"])
    target: NodeId = Field(..., description="Consumer node id", examples=["node-2"])
    source_pin: PinSide = Field(
        default=PinSide.RIGHT,
        validation_alias=AliasChoices("sourcePin", "startPin", "source_pin"),
        serialization_alias="sourcePin",
        description="Pin on the source node",
    )
    target_pin: PinSide = Field(
        default=PinSide.LEFT,
        validation_alias=AliasChoices("targetPin", "endPin", "target_pin"),
        serialization_alias="targetPin",
        description="Pin on the target node",
    )
    connection_type: ConnectionType = Field(
        default=ConnectionType.CURVED,
        description="Rendering style hint",
    )
    color: str | None = Field(default=None, description="Stroke color override")

    @property
    def key(self) -> ConnectionKey:
        """Identity tuple of this edge in its stored orientation."""
        return (self.source, self.target, str(self.source_pin), str(self.target_pin))

    @property
    def reversed_key(self) -> ConnectionKey:
        """Identity tuple of the visually identical edge drawn the other way."""
        return (self.target, self.source, str(self.target_pin), str(self.source_pin))

    def matches(
        self,
        source: str,
        target: str,
        source_pin: PinSide | str,
        target_pin: PinSide | str,
    ) -> bool:
        """Check whether this edge equals the given one in either orientation."""
        candidate = (source, target, str(source_pin), str(target_pin))
        return candidate in (self.key, self.reversed_key)

    def is_equivalent(self, other: Connection) -> bool:
        """Check whether two edges would render as the same line."""
        return self.matches(other.source, other.target, other.source_pin, other.target_pin)

    def touches(self, node_id: str) -> bool:
        """Check whether the node is either endpoint."""
        return node_id in (self.source, self.target)

    def opposite(self, node_id: str) -> str:
        """Return the endpoint that is not ``node_id``."""
        return self.target if self.source == node_id else self.source


__all__ = [
    "Connection",
    "ConnectionKey",
]
