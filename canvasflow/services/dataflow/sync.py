"""Fire-and-forget channel between the engine and a peer transport.

TAG: [DATAFLOW] [SYNC]

The engine publishes a SyncMessage after every locally originated mutation
and never waits for it to be consumed. A transport opens an outbox queue,
drains it at its own pace and ships the messages to peers. A slow transport
loses messages once its outbox is full; the engine is never blocked and its
invariants do not depend on anyone listening.
"""

from __future__ import annotations

import asyncio

from canvasflow.core.logging import get_logger
from canvasflow.schemas.sync import SyncMessage

logger = get_logger(__name__)


class BroadcastChannel:
    """Fan-out of sync messages to any number of bounded outbox queues.

    Args:
        maxsize: Bound of each outbox queue. 0 means unbounded.

    Example:
        >>> channel = BroadcastChannel(maxsize=16)
        >>> outbox = channel.open_outbox()
        >>> channel.publish(message)
        1
        >>> outbox.get_nowait() is message
        True
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._outboxes: list[asyncio.Queue[SyncMessage]] = []

    @property
    def outbox_count(self) -> int:
        """Number of open outboxes."""
        return len(self._outboxes)

    def open_outbox(self) -> asyncio.Queue[SyncMessage]:
        """Register a new outbox and return it."""
        queue: asyncio.Queue[SyncMessage] = asyncio.Queue(maxsize=self._maxsize)
        self._outboxes.append(queue)
        return queue

    def close_outbox(self, queue: asyncio.Queue[SyncMessage]) -> None:
        """Stop delivering to an outbox. Unknown queues are ignored."""
        self._outboxes = [q for q in self._outboxes if q is not queue]

    def publish(self, message: SyncMessage) -> int:
        """Enqueue a message on every outbox without waiting.

        Returns:
            Number of outboxes that accepted the message.
        """
        delivered = 0
        for queue in list(self._outboxes):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Outbox full, dropping {message.type} message")
        return delivered

    def close(self) -> None:
        """Drop every outbox."""
        self._outboxes.clear()


__all__ = ["BroadcastChannel"]
