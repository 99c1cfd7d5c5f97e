"""Pydantic schemas for persisted project state.

TAG: [SCHEMAS] [SNAPSHOT]

Project file fragment::

    {
      "connections": [{"source": "n1", "target": "n2", "sourcePin": "right", ...}],
      "packets": {
        "outgoing": {"n1": [<DataPacket>, ...]},
        "incoming": {"n2": [<DataPacket>, ...]}
      }
    }
"""

from __future__ import annotations

from pydantic import AliasChoices, Field

from canvasflow.schemas.base import BaseSchema
from canvasflow.schemas.connection import Connection
from canvasflow.schemas.packet import DataPacket


class StoreSnapshot(BaseSchema):
    """Serialized packet store: two maps keyed by node id."""

    outgoing: dict[str, list[DataPacket]] = Field(default_factory=dict)
    incoming: dict[str, list[DataPacket]] = Field(default_factory=dict)

    @property
    def packet_count(self) -> int:
        """Number of packets across both maps."""
        return sum(len(p) for p in self.outgoing.values()) + sum(
            len(p) for p in self.incoming.values()
        )


class ProjectState(BaseSchema):
    """Connections and packets of one project.

    Older project files stored the packets under ``dataCardStore``.
    """

    connections: list[Connection] = Field(default_factory=list)
    packets: StoreSnapshot = Field(
        default_factory=StoreSnapshot,
        validation_alias=AliasChoices("packets", "dataCardStore"),
    )


__all__ = [
    "ProjectState",
    "StoreSnapshot",
]
