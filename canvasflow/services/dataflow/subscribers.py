"""Subscriber registry for packet store notifications.

TAG: [DATAFLOW] [SUBSCRIBERS]

Presentation code registers callbacks here instead of being called by the
store directly. Each callback receives ``(node_id, packet, event_kind)``.
The packet is the live object: subscribers read it and compare ids, they
never mutate it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from canvasflow.core.logging import get_logger
from canvasflow.models.enums import EventKind

if TYPE_CHECKING:
    from canvasflow.schemas.packet import DataPacket

logger = get_logger(__name__)

Subscriber = Callable[[str, "DataPacket", EventKind], None]
Unsubscribe = Callable[[], None]


class SubscriberRegistry:
    """Set of callbacks notified on every store mutation.

    A callback that raises is logged and skipped; the remaining callbacks
    still run and the mutation that triggered the notification is unaffected.

    Example:
        >>> registry = SubscriberRegistry()
        >>> unsubscribe = registry.subscribe(lambda node, packet, kind: print(node, kind))
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        """Number of registered callbacks."""
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a callback.

        Registering the same callable twice is a no-op.

        Returns:
            A function that removes the callback. Calling it more than once
            is harmless.
        """
        if callback not in self._subscribers:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def notify(self, node_id: str, packet: DataPacket, event_kind: EventKind) -> None:
        """Deliver one event to every callback registered at call time."""
        for callback in list(self._subscribers):
            try:
                callback(node_id, packet, event_kind)
            except Exception:
                logger.exception(
                    "Subscriber callback failed",
                    extra={"context": {"node_id": node_id, "packet_id": packet.id, "event": str(event_kind)}},
                )

    def clear(self) -> None:
        """Remove every callback."""
        self._subscribers.clear()


__all__ = [
    "Subscriber",
    "SubscriberRegistry",
    "Unsubscribe",
]
