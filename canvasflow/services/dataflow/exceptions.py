"""Dataflow engine custom exceptions.

TAG: [DATAFLOW] [EXCEPTIONS]

These are raised by the engine's collaborators (content store, packet
validation) and absorbed at the engine's public boundary, which logs and
degrades instead of propagating them.
"""

from typing import Any

from canvasflow.core.exceptions import CanvasflowError


class DataflowError(CanvasflowError):
    """Base exception for dataflow engine errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        details: Additional error context as dictionary.
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class InvalidPacketError(DataflowError):
    """Raised when a packet received from a peer or a file is malformed.

    Attributes:
        reason: Validation failure summary.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Invalid packet: {reason}",
            error_code="INVALID_PACKET",
            details={"reason": reason},
        )
        self.reason = reason


class ContentStoreError(DataflowError):
    """Base exception for external content storage failures."""


class ContentWriteError(ContentStoreError):
    """Raised when packet content cannot be persisted externally.

    Attributes:
        packet_id: Id of the packet whose content failed to write.
        reason: Underlying failure.
    """

    def __init__(self, packet_id: str, reason: str) -> None:
        super().__init__(
            message=f"Content write failed for {packet_id}: {reason}",
            error_code="CONTENT_WRITE_FAILED",
            details={"packet_id": packet_id, "reason": reason},
        )
        self.packet_id = packet_id
        self.reason = reason


class ContentNotFoundError(ContentStoreError):
    """Raised when a stored content path does not exist or escapes the root.

    Attributes:
        path: The relative path that was requested.
    """

    def __init__(self, path: str) -> None:
        super().__init__(
            message=f"Content not found: {path}",
            error_code="CONTENT_NOT_FOUND",
            details={"path": path},
        )
        self.path = path
