"""Pydantic schemas for data packets and their payloads.

TAG: [SCHEMAS] [PACKET]

A DataPacket is the unit of data exchanged between nodes. Its ``data``
field is a tagged union keyed by the payload ``type``: the known tags map
to dedicated variants and every other tag falls back to OpaquePayload, so
consumers can ``match`` on the variant class without a catch-all guess.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, ConfigDict, Discriminator, Field, Tag, model_validator

from canvasflow.models.enums import PacketType
from canvasflow.schemas.base import BaseSchema, NodeId, now_ms

UNKNOWN_NODE_TITLE = "Unknown Node"

_KNOWN_TAGS = frozenset(t.value for t in PacketType)


def new_packet_id() -> str:
    """Generate a globally unique packet id."""
    return f"packet-{uuid4().hex}"


# =============================================================================
# Payload variants
# =============================================================================


class PayloadBase(BaseSchema):
    """Common configuration for payload variants.

    Producer-specific keys the variant does not model are kept verbatim.
    """

    model_config = ConfigDict(extra="allow")


class TextPayload(PayloadBase):
    """Plain text card."""

    type: Literal["text"] = "text"
    content: str = Field(default="", validation_alias=AliasChoices("content", "value"))


class ImagePayload(PayloadBase):
    """Raster image, inline as a data URL or referenced by URL."""

    type: Literal["image"] = "image"
    data_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("dataUrl", "data_url", "value"),
        serialization_alias="dataUrl",
    )
    url: str | None = None


class SvgPayload(PayloadBase):
    """Vector graphic markup."""

    type: Literal["svg"] = "svg"
    content: str = Field(default="", validation_alias=AliasChoices("content", "value"))


class HtmlPayload(PayloadBase):
    """HTML fragment."""

    type: Literal["html"] = "html"
    content: str = Field(
        default="", validation_alias=AliasChoices("content", "html", "value")
    )


class FilePayload(PayloadBase):
    """Arbitrary file; ``content`` is text or a base64 data URL."""

    type: Literal["file"] = "file"
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "fileName"))
    mime_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("mimeType", "mime_type"),
        serialization_alias="mimeType",
    )
    content: str | None = None
    extension: str | None = None


class ColorPayload(PayloadBase):
    """Color swatch value such as ``#ff8800``."""

    type: Literal["color"] = "color"
    value: str = ""


class UrlPayload(PayloadBase):
    """Link card."""

    type: Literal["url"] = "url"
    url: str = Field(default="", validation_alias=AliasChoices("url", "value"))


class OpaquePayload(PayloadBase):
    """Payload with a tag outside the known set; carried untouched."""

    type: str


def _payload_tag(value: Any) -> str:
    if isinstance(value, dict):
        tag = value.get("type") or PacketType.TEXT.value
    else:
        tag = getattr(value, "type", PacketType.TEXT.value)
    return tag if tag in _KNOWN_TAGS else "opaque"


Payload = Annotated[
    Annotated[TextPayload, Tag("text")]
    | Annotated[ImagePayload, Tag("image")]
    | Annotated[SvgPayload, Tag("svg")]
    | Annotated[HtmlPayload, Tag("html")]
    | Annotated[FilePayload, Tag("file")]
    | Annotated[ColorPayload, Tag("color")]
    | Annotated[UrlPayload, Tag("url")]
    | Annotated[OpaquePayload, Tag("opaque")],
    Discriminator(_payload_tag),
]


# =============================================================================
# Packet
# =============================================================================


class ExternalRef(BaseSchema):
    """Reference to payload content persisted outside the project file."""

    path: str = Field(..., min_length=1, description="Path relative to the content root")
    size: int = Field(..., ge=0, description="Stored size in bytes")


class DataPacket(BaseSchema):
    """Unit of data flowing from a producer node to its consumers.

    Identity is ``id``; propagated copies carry the same id. ``received_at``
    is only set on copies held in incoming lists.
    """

    id: str = Field(default_factory=new_packet_id, min_length=1)
    source_node_id: NodeId
    source_title: str = UNKNOWN_NODE_TITLE
    type: str = PacketType.TEXT.value
    timestamp: int = Field(default_factory=now_ms)
    data: Payload
    external_ref: ExternalRef | None = None
    received_at: int | None = None

    @model_validator(mode="before")
    @classmethod
    def sync_type_with_payload(cls, values: Any) -> Any:
        """Default the packet type from the payload tag and vice versa."""
        if not isinstance(values, dict):
            return values
        data = values.get("data")
        packet_type = values.get("type")
        if isinstance(data, dict):
            if packet_type is None:
                values = {**values, "type": data.get("type") or PacketType.TEXT.value}
            elif "type" not in data:
                values = {**values, "data": {**data, "type": packet_type}}
        elif packet_type is None and isinstance(data, PayloadBase):
            values = {**values, "type": data.type}
        return values

    @property
    def is_external(self) -> bool:
        """True once the payload has been persisted out of band."""
        return self.external_ref is not None

    def received_copy(self, received_at: int | None = None) -> DataPacket:
        """Shallow copy stamped with an arrival time, for incoming lists."""
        return self.model_copy(
            update={"received_at": received_at if received_at is not None else now_ms()}
        )


__all__ = [
    "UNKNOWN_NODE_TITLE",
    "ColorPayload",
    "DataPacket",
    "ExternalRef",
    "FilePayload",
    "HtmlPayload",
    "ImagePayload",
    "OpaquePayload",
    "Payload",
    "PayloadBase",
    "SvgPayload",
    "TextPayload",
    "UrlPayload",
    "new_packet_id",
]
