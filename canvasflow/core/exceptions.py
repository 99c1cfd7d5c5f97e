"""Common exception base.

TAG: [CORE] [EXCEPTIONS]

Every exception raised by canvasflow derives from CanvasflowError so an
embedding application can catch the whole family in one clause.
"""

from __future__ import annotations


class CanvasflowError(Exception):
    """Base exception for the package."""


__all__ = [
    "CanvasflowError",
]
