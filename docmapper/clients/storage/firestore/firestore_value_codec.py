"""Conversion between python values and Firestore REST ``Value`` objects."""

import base64
import re
from collections.abc import Mapping
from datetime import date, datetime, time, timezone
from typing import Any

from docmapper.errors import StorageOperationError

_TIMESTAMP = re.compile(r"^(?P<base>[^.]+?)(?:\.(?P<fraction>\d+))?(?P<zone>Z|[+-]\d{2}:\d{2})?$")


def encode_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def decode_timestamp(raw: str) -> datetime:
    """Parses RFC 3339 timestamps. Nanosecond fractions are truncated to microseconds."""
    match = _TIMESTAMP.match(raw)
    if match is None:
        raise StorageOperationError(f"Invalid Firestore timestamp '{raw}'.")
    fraction = match.group("fraction")
    zone = match.group("zone") or "Z"
    text = match.group("base")
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    text += "+00:00" if zone == "Z" else zone
    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise StorageOperationError(f"Invalid Firestore timestamp '{raw}'.") from e


def encode_value(value: Any) -> dict:
    """
    Raises:
        StorageOperationError: If the value has no Firestore representation.
    """
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": encode_timestamp(value)}
    if isinstance(value, date):
        return {"timestampValue": encode_timestamp(datetime.combine(value, time.min))}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"bytesValue": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise StorageOperationError(f"Values of type {type(value).__name__} cannot be stored in Firestore.")


def encode_fields(values: Mapping[str, Any]) -> dict[str, dict]:
    return {str(key): encode_value(value) for key, value in values.items()}


def decode_value(raw: Mapping[str, Any]) -> Any:
    if "nullValue" in raw:
        return None
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "doubleValue" in raw:
        return float(raw["doubleValue"])
    if "stringValue" in raw:
        return raw["stringValue"]
    if "timestampValue" in raw:
        return decode_timestamp(raw["timestampValue"])
    if "bytesValue" in raw:
        return base64.b64decode(raw["bytesValue"])
    if "referenceValue" in raw:
        return raw["referenceValue"]
    if "geoPointValue" in raw:
        return dict(raw["geoPointValue"])
    if "mapValue" in raw:
        return decode_fields(raw["mapValue"].get("fields", {}))
    if "arrayValue" in raw:
        return [decode_value(item) for item in raw["arrayValue"].get("values", [])]
    raise StorageOperationError(f"Unknown Firestore value {dict(raw)!r}.")


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def document_id(name: str) -> str:
    """Last segment of a document resource name ``projects/p/databases/d/documents/coll/id``."""
    return name.rsplit("/", 1)[-1]


def decode_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Turns a REST ``Document`` into a record carrying its id under ``_id``."""
    return {"_id": document_id(document["name"]), **decode_fields(document.get("fields", {}))}
