"""
Buffer-aware JSON for the auth directory.

`creds.json` and every `keys/*.json` file store binary fields as
`{"type": "Buffer", "data": ...}` objects. This is the format the protocol
library writes itself, so a directory restored from the database can be
handed to it as is and a directory it wrote can be archived unchanged.
Folders written by the Node Baileys bot carry `data` as a list of byte
values instead of base64; both forms are read, only base64 is written.
"""

from __future__ import annotations

import base64
import json
from typing import Any


def _encode_buffer(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(obj)).decode("ascii")}
    raise TypeError(f"{type(obj).__name__} cannot be stored in the auth directory")


def _decode_buffer(obj: dict[str, Any]) -> Any:
    if obj.get("type") != "Buffer":
        return obj
    data = obj.get("data")
    if isinstance(data, str):
        return base64.b64decode(data.encode("ascii"))
    if isinstance(data, list) and all(isinstance(b, int) for b in data):
        return bytes(data)
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    return json.dumps(obj, default=_encode_buffer, indent=indent, sort_keys=True)


def loads(data: str | bytes) -> Any:
    return json.loads(data, object_hook=_decode_buffer)
