"""
JSON helpers shared by the credential store and the bridge wire format.

Binary values travel as Baileys-style `{"type": "Buffer", "data": <base64>}`
objects so credential blobs written by the bridge round-trip unchanged.
"""

from __future__ import annotations

import base64
import dataclasses
import json
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(obj)).decode("ascii")}
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and isinstance(obj.get("data"), str):
        return base64.b64decode(obj["data"].encode("ascii"))
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    return json.dumps(obj, default=_default, indent=indent, sort_keys=True)


def dumps_frame(obj: dict[str, Any]) -> str:
    """Compact encoding for a single bridge frame."""

    return json.dumps(obj, default=_default, separators=(",", ":"), ensure_ascii=False)


def loads(data: str | bytes) -> Any:
    return json.loads(data, object_hook=_object_hook)


def loads_object(data: str | bytes) -> dict[str, Any]:
    """Decode a frame that must be a JSON object."""

    obj = loads(data)
    if not isinstance(obj, dict):
        raise TypeError(f"expected a JSON object, got {type(obj).__name__}")
    return obj
