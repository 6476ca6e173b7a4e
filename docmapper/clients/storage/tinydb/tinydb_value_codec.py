"""
JSON-safe encoding of the values TinyDB cannot store natively.

    datetime  ->  {"$date": "2024-01-31T12:00:00+00:00"}
    bytes     ->  {"$binary": "<base64>"}

User dicts with a key starting with "$" are wrapped as {"$literal": {...}} so they
are never mistaken for a tagged value.
"""

import base64
from datetime import date, datetime, time
from typing import Any

from docmapper.errors import StorageOperationError

_TAGS = ("$date", "$binary", "$literal")


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, date):
        return {"$date": datetime.combine(value, time.min).isoformat()}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"$binary": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        encoded = {key: encode_value(item) for key, item in value.items()}
        if any(str(key).startswith("$") for key in value):
            return {"$literal": encoded}
        return encoded
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def _decode_tag(tag: str, raw: Any) -> Any:
    try:
        if tag == "$date":
            return datetime.fromisoformat(raw)
        if tag == "$binary":
            return base64.b64decode(raw)
        return {key: decode_value(item) for key, item in raw.items()}
    except (TypeError, ValueError, AttributeError) as e:
        raise StorageOperationError(f"Corrupt TinyDB value {tag}: {raw!r}") from e


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1:
            (tag,) = value
            if tag in _TAGS:
                return _decode_tag(tag, value[tag])
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def encode_record(values: dict) -> dict:
    """Encodes the fields of a record. Top-level keys are never wrapped."""
    return {key: encode_value(item) for key, item in values.items()}


def decode_record(record: dict) -> dict:
    return {key: decode_value(item) for key, item in record.items()}
