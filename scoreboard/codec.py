"""
Serialization and compression for cache payloads.

Values are serialized by a pluggable codec, then framed with a marker
prefix so a reader can always tell how to reverse the encoding:

    raw:<serialized text>
    zlib:<base64 of zlib-compressed serialized text>
"""

import base64
import json
import zlib
from datetime import date, datetime
from typing import Any, Protocol

RAW_MARKER = "raw:"
ZLIB_MARKER = "zlib:"


class Codec(Protocol):
    def dumps(self, value: Any) -> str: ...

    def loads(self, text: str) -> Any: ...


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonCodec:
    """Default codec. Datetimes are written as ISO-8601 strings."""

    def dumps(self, value: Any) -> str:
        return json.dumps(value, default=_json_default, separators=(",", ":"))

    def loads(self, text: str) -> Any:
        return json.loads(text)


def frame_text(text: str, compress: bool = True, threshold: int = 1024) -> str:
    """Add the marker prefix to already-serialized text, compressing above ``threshold`` bytes."""
    raw = text.encode("utf-8")
    if compress and len(raw) > threshold:
        packed = base64.b64encode(zlib.compress(raw)).decode("ascii")
        return ZLIB_MARKER + packed
    return RAW_MARKER + text


def encode_payload(value: Any, codec: Codec, compress: bool = True, threshold: int = 1024) -> str:
    return frame_text(codec.dumps(value), compress, threshold)


def decode_payload(payload: str, codec: Codec) -> Any:
    if payload.startswith(ZLIB_MARKER):
        packed = payload[len(ZLIB_MARKER):]
        try:
            text = zlib.decompress(base64.b64decode(packed)).decode("utf-8")
        except (zlib.error, ValueError) as exc:
            raise ValueError(f"corrupt compressed payload: {exc}") from exc
        return codec.loads(text)
    if payload.startswith(RAW_MARKER):
        return codec.loads(payload[len(RAW_MARKER):])
    raise ValueError("unknown payload marker")
