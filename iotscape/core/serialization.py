"""
JSON payload serialization.

Envelopes are dumped by pydantic first, so what reaches orjson here is
mostly plain data. The fallbacks cover what handler results and definition
metadata still carry: pydantic models nested in ``Any`` fields, sets, and
dict keys that are not strings (NetsBlox only understands string keys).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import orjson
from pydantic import BaseModel

WIRE_OPTIONS = orjson.OPT_NON_STR_KEYS


def to_wire_value(obj: Any) -> Any:
    """orjson ``default`` hook for values it cannot encode natively."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


@dataclass(frozen=True, slots=True)
class JsonSerializer:
    """orjson encoder/decoder for datagram payloads."""

    options: int = WIRE_OPTIONS

    def serialize(self, data: Any) -> bytes:
        return orjson.dumps(data, default=to_wire_value, option=self.options)

    def deserialize(self, data: bytes | bytearray | memoryview | str) -> Any:
        return orjson.loads(data)
