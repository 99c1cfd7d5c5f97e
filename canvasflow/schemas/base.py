"""Base Pydantic schemas with common patterns.

TAG: [SCHEMAS] [BASE]

Every persisted engine object uses camelCase keys on disk and on the wire
(``sourceNodeId``, ``externalRef``) and snake_case attributes in Python.
"""

from __future__ import annotations

import time
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _coerce_node_id(value: object) -> object:
    # Older project files stored numeric node ids
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


NodeId = Annotated[str, BeforeValidator(_coerce_node_id), Field(min_length=1)]


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


class BaseSchema(BaseModel):
    """Base schema with common configuration for all schemas.

    Payload text is never stripped or coerced, so whitespace in card content
    survives a save/load cycle untouched.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> dict:
        """Dump as JSON-compatible data with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "BaseSchema",
    "NodeId",
    "now_ms",
]
