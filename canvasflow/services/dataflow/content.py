"""External content upgrade for large or binary packet payloads.

TAG: [DATAFLOW] [CONTENT]

Packets are always added inline first. For payloads that are inherently
binary (image, svg, file) or text larger than a threshold, the upgrader then
writes the content out of band and attaches an ExternalRef to the same
packet, keeping its id. A failed write leaves the packet inline.

File layout under the content root:
    assets/images/<packet_id>.png
    assets/text/<packet_id>.txt
    assets/files/<packet_id>.bin
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote_to_bytes

from canvasflow.core.logging import get_logger
from canvasflow.models.enums import PacketType
from canvasflow.schemas.packet import (
    DataPacket,
    ExternalRef,
    FilePayload,
    HtmlPayload,
    ImagePayload,
    Payload,
    SvgPayload,
    TextPayload,
)
from canvasflow.services.dataflow.exceptions import (
    ContentNotFoundError,
    ContentStoreError,
    ContentWriteError,
)

if TYPE_CHECKING:
    from canvasflow.services.dataflow.store import PacketStore

logger = get_logger(__name__)

ASSETS_DIR = "assets"

_FOLDERS: dict[str, str] = {
    PacketType.IMAGE.value: "images",
    PacketType.SVG.value: "images",
    PacketType.TEXT.value: "text",
    PacketType.HTML.value: "text",
}

_EXTENSIONS: dict[str, str] = {
    PacketType.IMAGE.value: ".png",
    PacketType.SVG.value: ".svg",
    PacketType.TEXT.value: ".txt",
    PacketType.HTML.value: ".html",
}


def content_for_storage(payload: Payload) -> str | None:
    """Extract the content worth persisting from a payload.

    Returns:
        The text or data URL to store, or None when the payload carries
        nothing storable (an image given only by URL, a color swatch, ...).
    """
    match payload:
        case TextPayload(content=content) | SvgPayload(content=content) | HtmlPayload(content=content):
            return content or None
        case ImagePayload(data_url=data_url):
            return data_url or None
        case FilePayload(content=content):
            return content or None
        case _:
            return None


def should_externalize(packet: DataPacket | Payload, threshold: int) -> bool:
    """Decide whether a payload goes to external storage.

    Image, svg and file payloads always do; text and html only when their
    UTF-8 size is strictly above ``threshold`` bytes.
    """
    payload = packet.data if isinstance(packet, DataPacket) else packet
    content = content_for_storage(payload)
    if content is None:
        return False

    match payload:
        case ImagePayload() | SvgPayload() | FilePayload():
            return True
        case TextPayload() | HtmlPayload():
            return len(content.encode("utf-8")) > threshold
        case _:
            return False


def decode_content(content: str | bytes) -> bytes:
    """Turn stored content into bytes, decoding ``data:`` URLs.

    Raises:
        ValueError: If a base64 data URL is malformed.
    """
    if isinstance(content, bytes):
        return content
    if not content.startswith("data:"):
        return content.encode("utf-8")

    header, sep, body = content.partition(",")
    if not sep:
        raise ValueError("data URL without payload separator")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(body, validate=True)
        except binascii.Error as e:
            raise ValueError(f"invalid base64 data URL: {e}") from e
    return unquote_to_bytes(body)


class ContentStore(Protocol):
    """Out-of-band storage for packet content."""

    async def write(
        self,
        packet_id: str,
        packet_type: str,
        content: str | bytes,
        extension: str | None = None,
    ) -> ExternalRef:
        """Persist content and return a reference to it.

        Raises:
            ContentWriteError: If the content cannot be stored.
        """
        ...


class FileContentStore:
    """Content store writing under a project directory.

    Args:
        root: Base directory. ``ExternalRef.path`` values are relative to it.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @staticmethod
    def relative_path(packet_id: str, packet_type: str, extension: str | None = None) -> Path:
        """Relative location for a packet's content."""
        folder = _FOLDERS.get(packet_type, "files")
        if extension:
            suffix = extension if extension.startswith(".") else f".{extension}"
        else:
            suffix = _EXTENSIONS.get(packet_type, ".bin")
        return Path(ASSETS_DIR) / folder / f"{packet_id}{suffix}"

    def resolve(self, path: str | Path) -> Path:
        """Absolute path for a stored reference.

        Raises:
            ContentNotFoundError: If the path escapes the content root.
        """
        root = self.root.resolve()
        full = (root / path).resolve()
        if not full.is_relative_to(root):
            raise ContentNotFoundError(str(path))
        return full

    def exists(self, path: str | Path) -> bool:
        """Check whether a reference points to a stored file."""
        try:
            return self.resolve(path).is_file()
        except ContentNotFoundError:
            return False

    async def write(
        self,
        packet_id: str,
        packet_type: str,
        content: str | bytes,
        extension: str | None = None,
    ) -> ExternalRef:
        """Write content to ``assets/<folder>/<packet_id><ext>``.

        Raises:
            ContentWriteError: On undecodable content, a path outside the
                root, or any OS error.
        """
        relative = self.relative_path(packet_id, packet_type, extension)
        try:
            body = decode_content(content)
            target = self.resolve(relative)
            await asyncio.to_thread(self._write_bytes, target, body)
        except ContentNotFoundError as e:
            raise ContentWriteError(packet_id, f"path outside content root: {e.path}") from e
        except (ValueError, OSError) as e:
            raise ContentWriteError(packet_id, str(e)) from e

        logger.debug(f"Stored {len(body)} bytes for {packet_id} at {relative.as_posix()}")
        return ExternalRef(path=relative.as_posix(), size=len(body))

    @staticmethod
    def _write_bytes(target: Path, body: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(body)

    async def read(self, path: str | Path) -> bytes:
        """Read stored content.

        Raises:
            ContentNotFoundError: If nothing is stored at ``path``.
        """
        target = self.resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise ContentNotFoundError(str(path)) from e

    async def delete(self, path: str | Path) -> bool:
        """Delete stored content. Returns False if it did not exist."""
        try:
            target = self.resolve(path)
        except ContentNotFoundError:
            return False
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return False
        return True

    def __repr__(self) -> str:
        """Return string representation of the store."""
        return f"FileContentStore(root={str(self.root)!r})"


class ExternalContentUpgrader:
    """Second phase of a packet add: persist content, then attach the ref.

    Args:
        store: Packet store holding the packet.
        content_store: Where content is written.
        threshold: Text size, in UTF-8 bytes, above which text is externalized.
    """

    def __init__(self, store: PacketStore, content_store: ContentStore, threshold: int) -> None:
        self._store = store
        self._content_store = content_store
        self._threshold = threshold

    def wants(self, packet: DataPacket) -> bool:
        """True if the packet should be upgraded and has not been yet."""
        return not packet.is_external and should_externalize(packet, self._threshold)

    async def upgrade(self, node_id: str, packet: DataPacket) -> bool:
        """Persist a packet's content and attach the resulting reference.

        Returns:
            True when the reference was attached. False when the packet does
            not qualify, the write failed (the packet stays inline), or the
            packet was removed or replaced while the write was in flight.
        """
        if not self.wants(packet):
            return False

        content = content_for_storage(packet.data)
        if content is None:
            return False
        extension = packet.data.extension if isinstance(packet.data, FilePayload) else None

        try:
            ref = await self._content_store.write(packet.id, packet.type, content, extension)
        except ContentStoreError as e:
            logger.warning(
                f"External content write failed, keeping packet inline: {e.message}",
                extra={"context": {"node_id": node_id, **e.details}},
            )
            return False

        return self._store.attach_external_ref(node_id, packet, ref)


__all__ = [
    "ASSETS_DIR",
    "ContentStore",
    "ExternalContentUpgrader",
    "FileContentStore",
    "content_for_storage",
    "decode_content",
    "should_externalize",
]
